from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, InvalidOperation
from math import ceil
from typing import Any, Iterable, Sequence
from uuid import UUID

WINNER_TAKE_ALL = "winner_take_all"
TOP3 = "top3"
PERCENTILE = "percentile"
PAYOUT_MODELS = (WINNER_TAKE_ALL, TOP3, PERCENTILE)

TOP3_SPLITS = (Decimal("0.6"), Decimal("0.3"), Decimal("0.1"))
PERCENTILE_FRACTION = Decimal("0.5")


@dataclass(frozen=True)
class Standing:
    player_id: UUID
    user_id: UUID
    score: int
    time_taken_ms: int | None = None
    joined_order: int = 0


@dataclass(frozen=True)
class PlayerPayout:
    player_id: UUID
    user_id: UUID
    placement: int
    result: str
    payout_cents: int


@dataclass(frozen=True)
class PayoutPlan:
    total_pot_cents: int
    rake_cents: int
    net_pot_cents: int
    payout_model: str
    payouts: tuple[PlayerPayout, ...]

    @property
    def distributed_cents(self) -> int:
        return sum(p.payout_cents for p in self.payouts)

    @property
    def unallocated_cents(self) -> int:
        # floor rounding remainder; kept by the platform, never redistributed
        return self.net_pot_cents - self.distributed_cents


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def compute_rake(total_pot_cents: int, rake_percent: Any) -> int:
    pct = Decimal(str(rake_percent or 0))
    return _floor(Decimal(total_pot_cents) * pct / Decimal(100))


def rank(standings: Iterable[Standing]) -> list[Standing]:
    """Score desc, then faster time first, then earlier join for a deterministic order."""
    return sorted(
        standings,
        key=lambda s: (-int(s.score), s.time_taken_ms if s.time_taken_ms is not None else 0, s.joined_order, str(s.player_id)),
    )


def _top3_splits(config: dict) -> tuple[Decimal, ...]:
    raw = (config or {}).get("splits")
    if not isinstance(raw, (list, tuple)) or not raw:
        return TOP3_SPLITS
    try:
        splits = tuple(Decimal(str(x)) for x in raw)
    except (InvalidOperation, ValueError):
        return TOP3_SPLITS
    if any(s < 0 for s in splits) or sum(splits) > 1:
        return TOP3_SPLITS
    return splits


def _percentile_fraction(config: dict) -> Decimal:
    raw = (config or {}).get("top_fraction")
    if raw is None:
        return PERCENTILE_FRACTION
    try:
        frac = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return PERCENTILE_FRACTION
    return frac if Decimal(0) < frac <= Decimal(1) else PERCENTILE_FRACTION


def _amounts(model: str, net_pot: int, n: int, config: dict) -> list[int]:
    if model == TOP3:
        splits = _top3_splits(config)
        return [_floor(Decimal(net_pot) * splits[i]) if i < len(splits) else 0 for i in range(n)]
    if model == PERCENTILE:
        winners = max(1, ceil(Decimal(n) * _percentile_fraction(config)))
        each = net_pot // winners
        return [each if i < winners else 0 for i in range(n)]
    # winner_take_all, and the fallback for unknown models
    return [net_pot if i == 0 else 0 for i in range(n)]


def _winner_slots(model: str, n: int, config: dict) -> int:
    if model == TOP3:
        return min(n, len(_top3_splits(config)))
    if model == PERCENTILE:
        return max(1, ceil(Decimal(n) * _percentile_fraction(config)))
    return 1


def calculate_payouts(
    standings: Sequence[Standing],
    *,
    total_pot_cents: int,
    rake_percent: Any,
    payout_model: str,
    payout_config: dict | None = None,
) -> PayoutPlan:
    """
    Pure: standings + payout model -> per-player payouts.

    net_pot = total_pot - floor(total_pot * rake_percent / 100)
      - winner_take_all: rank 1 gets net_pot
      - top3:            floor(net_pot * [0.6, 0.3, 0.1])
      - percentile:      top ceil(n/2) split net_pot evenly, floored
      - anything else:   winner_take_all
    Rounding leftovers stay with the platform (see PayoutPlan.unallocated_cents).
    """
    if total_pot_cents < 0:
        raise ValueError("total_pot_cents must be >= 0")
    model = payout_model if payout_model in PAYOUT_MODELS else WINNER_TAKE_ALL
    config = payout_config or {}
    rake = compute_rake(total_pot_cents, rake_percent)
    net_pot = total_pot_cents - rake

    ordered = rank(standings)
    n = len(ordered)
    amounts = _amounts(model, net_pot, n, config)
    slots = _winner_slots(model, n, config)

    payouts = tuple(
        PlayerPayout(
            player_id=s.player_id,
            user_id=s.user_id,
            placement=i + 1,
            result="win" if i < slots else "loss",
            payout_cents=max(0, int(amounts[i])),
        )
        for i, s in enumerate(ordered)
    )
    return PayoutPlan(
        total_pot_cents=int(total_pot_cents),
        rake_cents=int(rake),
        net_pot_cents=int(net_pot),
        payout_model=model,
        payouts=payouts,
    )
