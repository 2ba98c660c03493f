from __future__ import annotations
import secrets, string
from decimal import Decimal
from uuid import UUID
import structlog
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from app.errors import NotFound, StateConflict, Forbidden, ValidationError
from app.models.match import Match, MatchPlayer, Escrow
from app.models.user import User
from app.services import wallet
from app.services.alerts import record_audit
from app.services.payouts import PAYOUT_MODELS
from app.services.time_windows import utcnow

log = structlog.get_logger()

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_room_code(length: int = 6) -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))


async def get_match(session: AsyncSession, match_id: UUID, *, for_update: bool = False) -> Match:
    m = await session.get(Match, match_id, with_for_update=for_update, populate_existing=True)
    if not m:
        raise NotFound("Match not found")
    return m


async def match_players(session: AsyncSession, match_id: UUID) -> list[MatchPlayer]:
    return list((await session.execute(
        select(MatchPlayer).where(MatchPlayer.match_id == match_id).order_by(MatchPlayer.joined_at.asc(), MatchPlayer.id.asc())
        .execution_options(populate_existing=True)
    )).scalars().all())


async def get_escrow(session: AsyncSession, match_id: UUID) -> Escrow:
    e = await session.get(Escrow, match_id, populate_existing=True)
    if not e:
        raise NotFound("Escrow not found")
    return e


async def _collect_entry(session: AsyncSession, match: Match, user: User) -> MatchPlayer:
    """
    Entry Collector. Debit, ledger entry, player row and escrow growth are flushed in
    the caller's transaction; any failure rolls all four back together.
    """
    await wallet.debit(
        session,
        user_id=user.id,
        amount_cents=int(match.entry_fee_cents),
        entry_type="match_entry",
        match_id=match.id,
        note=f"Joined match {match.id}",
    )
    player = MatchPlayer(match_id=match.id, user_id=user.id)
    session.add(player)
    grown = await session.execute(
        update(Escrow)
        .where(Escrow.match_id == match.id, Escrow.status == "pending")
        .values(
            total_pot_cents=Escrow.total_pot_cents + int(match.entry_fee_cents),
            net_pot_cents=Escrow.total_pot_cents + int(match.entry_fee_cents),
        )
        .execution_options(synchronize_session=False)
    )
    if grown.rowcount != 1:
        raise StateConflict("Escrow is not accepting entries")
    try:
        await session.flush()
    except IntegrityError:
        raise StateConflict("Already joined this match")
    record_audit(session, "match_entry", actor=str(user.id), user_id=user.id, match_id=match.id,
                 amount_cents=int(match.entry_fee_cents))
    return player


async def create_match(
    session: AsyncSession,
    *,
    creator: User,
    entry_fee_cents: int,
    max_players: int,
    min_players: int = 2,
    payout_model: str = "winner_take_all",
    payout_config: dict | None = None,
    rake_percent: float | Decimal = 5.0,
    is_private: bool = False,
    room_code: str | None = None,
) -> Match:
    """Creator pays the entry fee and becomes player #1; escrow opens with that fee."""
    if entry_fee_cents <= 0:
        raise ValidationError("Invalid entry_fee_cents")
    if max_players < 2:
        raise ValidationError("max_players must be at least 2")
    if min_players < 2 or min_players > max_players:
        raise ValidationError("min_players must be between 2 and max_players")
    if payout_model not in PAYOUT_MODELS:
        log.warning("unknown_payout_model", payout_model=payout_model)

    if is_private and not room_code:
        room_code = generate_room_code()

    match = Match(
        creator_id=creator.id,
        entry_fee_cents=int(entry_fee_cents),
        min_players=int(min_players),
        max_players=int(max_players),
        player_count=1,
        payout_model=payout_model,
        payout_config=payout_config or {},
        rake_percent=Decimal(str(rake_percent)),
        is_private=is_private,
        room_code=room_code,
        status="waiting",
    )
    session.add(match)
    try:
        await session.flush()
    except IntegrityError:
        raise StateConflict("Room code already in use")
    session.add(Escrow(match_id=match.id, total_pot_cents=0, rake_cents=0, net_pot_cents=0, status="pending"))
    await session.flush()
    await _collect_entry(session, match, creator)
    log.info("match_created", match_id=str(match.id), creator_id=str(creator.id), entry_fee_cents=entry_fee_cents)
    return match


async def find_joinable(session: AsyncSession, *, match_id: UUID | None, room_code: str | None) -> Match:
    if match_id:
        return await get_match(session, match_id)
    if room_code:
        m = await session.scalar(select(Match).where(Match.room_code == room_code.upper()))
        if not m:
            raise NotFound("Match not found")
        return m
    raise ValidationError("Must provide match_id or room_code")


async def join_match(session: AsyncSession, match: Match, user: User) -> tuple[Match, int]:
    """Returns (match, player_count). Flips the match to `starting` when the last seat is taken."""
    if match.status != "waiting":
        raise StateConflict(f"Match is {match.status}, cannot join")
    already = await session.scalar(
        select(MatchPlayer.id).where(MatchPlayer.match_id == match.id, MatchPlayer.user_id == user.id)
    )
    if already:
        raise StateConflict("Already joined this match")

    # Claim a seat atomically; concurrent joins cannot push player_count past max_players.
    seat = (await session.execute(
        update(Match)
        .where(Match.id == match.id, Match.status == "waiting", Match.player_count < Match.max_players)
        .values(player_count=Match.player_count + 1)
        .returning(Match.player_count, Match.max_players)
        .execution_options(synchronize_session=False)
    )).one_or_none()
    if seat is None:
        raise StateConflict("Match is full")
    count, max_players = int(seat[0]), int(seat[1])

    await _collect_entry(session, match, user)

    if count >= max_players:
        await session.execute(
            update(Match).where(Match.id == match.id, Match.status == "waiting").values(status="starting")
            .execution_options(synchronize_session=False)
        )
    log.info("match_joined", match_id=str(match.id), user_id=str(user.id), player_count=count)
    return await get_match(session, match.id), count


async def start_match(session: AsyncSession, match: Match, user: User) -> Match:
    if match.creator_id != user.id:
        raise Forbidden("Only match creator can start the match")
    if match.status not in ("waiting", "starting"):
        raise StateConflict(f"Match is {match.status}, cannot start")
    count = await session.scalar(select(func.count()).select_from(MatchPlayer).where(MatchPlayer.match_id == match.id))
    if int(count or 0) < match.min_players:
        raise StateConflict(
            f"Need at least {match.min_players} players, only {int(count or 0)} joined",
            player_count=int(count or 0), min_players=match.min_players,
        )
    moved = await session.execute(
        update(Match)
        .where(Match.id == match.id, Match.status.in_(("waiting", "starting")))
        .values(status="active", started_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount != 1:
        raise StateConflict("Match state changed, cannot start")
    log.info("match_started", match_id=str(match.id), player_count=int(count or 0))
    return await get_match(session, match.id)


async def submit_score(
    session: AsyncSession, match: Match, user: User, *, score: int, time_taken_ms: int | None
) -> tuple[MatchPlayer, bool]:
    """
    Record a final score handed over by the match runtime.
    Returns (player, all_finished). When the last score lands on an active match
    the match is marked completed; settlement itself is the orchestrator's job.
    """
    if score < 0:
        raise ValidationError("score must be >= 0")
    if time_taken_ms is not None and time_taken_ms < 0:
        raise ValidationError("time_taken_ms must be >= 0")
    if match.status != "active":
        raise StateConflict(f"Match is {match.status}, cannot submit score")

    player = await session.scalar(
        select(MatchPlayer).where(MatchPlayer.match_id == match.id, MatchPlayer.user_id == user.id)
    )
    if not player:
        raise Forbidden("Not a player in this match")

    recorded = await session.execute(
        update(MatchPlayer)
        .where(MatchPlayer.id == player.id, MatchPlayer.score.is_(None))
        .values(score=int(score), time_taken_ms=time_taken_ms, finished_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if recorded.rowcount != 1:
        raise StateConflict("Score already submitted")

    pending = await session.scalar(
        select(func.count()).select_from(MatchPlayer).where(MatchPlayer.match_id == match.id, MatchPlayer.score.is_(None))
    )
    all_finished = int(pending or 0) == 0
    if all_finished:
        await session.execute(
            update(Match).where(Match.id == match.id, Match.status == "active")
            .values(status="completed", completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        log.info("match_completed", match_id=str(match.id))
    await session.refresh(player)
    return player, all_finished


async def complete_finished_matches(session: AsyncSession) -> list[UUID]:
    """Flip active matches whose players have all scored but never reached completed. Caller commits."""
    has_players = select(MatchPlayer.id).where(MatchPlayer.match_id == Match.id).correlate(Match).exists()
    unscored = (
        select(MatchPlayer.id).where(MatchPlayer.match_id == Match.id, MatchPlayer.score.is_(None)).correlate(Match).exists()
    )
    rows = await session.execute(
        update(Match)
        .where(Match.status == "active", has_players, ~unscored)
        .values(status="completed", completed_at=utcnow())
        .returning(Match.id)
        .execution_options(synchronize_session=False)
    )
    ids = [r[0] for r in rows.all()]
    if ids:
        log.warning("stranded_matches_completed", match_ids=[str(i) for i in ids])
    return ids
