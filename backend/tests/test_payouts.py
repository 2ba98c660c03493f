from __future__ import annotations
import uuid
from decimal import Decimal
import pytest
from app.services.payouts import Standing, calculate_payouts, compute_rake, rank


def _standings(scores, times=None):
    times = times or [None] * len(scores)
    return [
        Standing(player_id=uuid.uuid4(), user_id=uuid.uuid4(), score=s, time_taken_ms=t, joined_order=i)
        for i, (s, t) in enumerate(zip(scores, times))
    ]


def test_winner_take_all_four_players():
    st = _standings([900, 950, 880, 850])
    plan = calculate_payouts(st, total_pot_cents=2000, rake_percent=5, payout_model="winner_take_all")
    assert plan.rake_cents == 100
    assert plan.net_pot_cents == 1900
    first = plan.payouts[0]
    assert first.user_id == st[1].user_id
    assert first.payout_cents == 1900 and first.result == "win" and first.placement == 1
    assert [p.payout_cents for p in plan.payouts[1:]] == [0, 0, 0]
    assert all(p.result == "loss" for p in plan.payouts[1:])


@pytest.mark.parametrize(
    "model,n,pot,rake,expected",
    [
        ("top3", 5, 1000, 5, [570, 285, 95, 0, 0]),
        ("top3", 2, 1000, 0, [600, 300]),
        ("percentile", 4, 2000, 5, [950, 950, 0, 0]),
        ("percentile", 3, 1000, 0, [500, 500, 0]),
        ("percentile", 5, 999, 0, [333, 333, 333, 0, 0]),
        ("something_else", 3, 1500, 10, [1350, 0, 0]),
    ],
)
def test_models_floor_and_never_exceed_net_pot(model, n, pot, rake, expected):
    plan = calculate_payouts(_standings(list(range(100, 100 - n, -1))), total_pot_cents=pot,
                             rake_percent=rake, payout_model=model)
    assert [p.payout_cents for p in plan.payouts] == expected
    assert plan.distributed_cents <= plan.net_pot_cents
    assert plan.unallocated_cents == plan.net_pot_cents - sum(expected)


def test_unknown_model_falls_back_to_winner_take_all():
    plan = calculate_payouts(_standings([1, 2]), total_pot_cents=1000, rake_percent=0, payout_model="lottery")
    assert plan.payout_model == "winner_take_all"


def test_rake_is_floored_and_accepts_decimal():
    assert compute_rake(999, Decimal("5.00")) == 49
    assert compute_rake(1000, None) == 0
    assert compute_rake(333, 7.5) == 24


def test_ties_broken_by_time_then_join_order():
    st = _standings([500, 500, 500], times=[3000, 1000, 1000])
    ordered = rank(st)
    # equal scores and times: earlier joiner first
    assert [s.player_id for s in ordered] == [st[1].player_id, st[2].player_id, st[0].player_id]


def test_top3_custom_splits_and_bad_config_fallback():
    st = _standings([30, 20, 10])
    plan = calculate_payouts(st, total_pot_cents=1000, rake_percent=0, payout_model="top3",
                             payout_config={"splits": [0.5, 0.5]})
    assert [p.payout_cents for p in plan.payouts] == [500, 500, 0]
    assert [p.result for p in plan.payouts] == ["win", "win", "loss"]

    bad = calculate_payouts(st, total_pot_cents=1000, rake_percent=0, payout_model="top3",
                            payout_config={"splits": [0.9, 0.9]})
    assert [p.payout_cents for p in bad.payouts] == [600, 300, 100]


def test_percentile_top_fraction_override():
    plan = calculate_payouts(_standings([40, 30, 20, 10]), total_pot_cents=1000, rake_percent=0,
                             payout_model="percentile", payout_config={"top_fraction": 0.25})
    assert [p.payout_cents for p in plan.payouts] == [1000, 0, 0, 0]


def test_negative_pot_rejected():
    with pytest.raises(ValueError):
        calculate_payouts([], total_pot_cents=-1, rake_percent=0, payout_model="top3")
