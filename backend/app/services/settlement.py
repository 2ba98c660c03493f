from __future__ import annotations
from datetime import datetime, timedelta
from uuid import UUID, uuid4
import structlog
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from app.config import settings
from app.db import SessionLocal, upsert_insert
from app.errors import (
    EngineError, NotFound, StateConflict, SettlementLocked, SettlementFailed,
    ServiceUnavailable, AlreadyProcessed,
)
from app.models.match import Match, MatchPlayer, Escrow
from app.models.settlement import SettlementAttempt, SettlementLock
from app.services import wallet
from app.services.alerts import raise_alert, record_audit
from app.services.controls import PlatformControls, SETTLEMENT_ENABLED
from app.services.payouts import Standing, calculate_payouts
from app.services.time_windows import utcnow, linear_backoff

log = structlog.get_logger()

Factory = async_sessionmaker[AsyncSession]

# ---------- settlement lock (TTL + heartbeat + orphan sweep) ----------

async def acquire_settlement_lock(
    match_id: UUID, owner: str, *, session_factory: Factory = SessionLocal, ttl_seconds: int | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Exclusive per-match lock, committed on its own so every process sees it.
    A lock whose holder crashed is taken over once its TTL has passed.
    """
    now = now or utcnow()
    expires = now + timedelta(seconds=ttl_seconds or settings.settlement_lock_ttl_seconds)
    async with session_factory() as session:
        inserted = (await session.execute(
            upsert_insert(session, SettlementLock)
            .values(match_id=match_id, locked_by=owner, locked_at=now, expires_at=expires)
            .on_conflict_do_nothing(index_elements=["match_id"])
            .returning(SettlementLock.match_id)
        )).first()
        if inserted is not None:
            await session.commit()
            return True
        stolen = (await session.execute(
            update(SettlementLock)
            .where(SettlementLock.match_id == match_id, SettlementLock.expires_at < now)
            .values(locked_by=owner, locked_at=now, expires_at=expires)
            .returning(SettlementLock.match_id)
            .execution_options(synchronize_session=False)
        )).first()
        await session.commit()
    if stolen is not None:
        log.warning("settlement_lock_taken_over", match_id=str(match_id), owner=owner)
        return True
    return False


async def refresh_settlement_lock(
    match_id: UUID, owner: str, *, session_factory: Factory = SessionLocal, ttl_seconds: int | None = None,
) -> bool:
    """Heartbeat. False means the lock expired and someone else owns it now."""
    now = utcnow()
    async with session_factory() as session:
        res = await session.execute(
            update(SettlementLock)
            .where(SettlementLock.match_id == match_id, SettlementLock.locked_by == owner)
            .values(expires_at=now + timedelta(seconds=ttl_seconds or settings.settlement_lock_ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    return res.rowcount == 1


async def release_settlement_lock(match_id: UUID, owner: str, *, session_factory: Factory = SessionLocal) -> None:
    async with session_factory() as session:
        await session.execute(
            delete(SettlementLock).where(SettlementLock.match_id == match_id, SettlementLock.locked_by == owner)
            .execution_options(synchronize_session=False)
        )
        await session.commit()


async def sweep_expired_locks(*, session_factory: Factory = SessionLocal, now: datetime | None = None) -> int:
    async with session_factory() as session:
        res = await session.execute(
            delete(SettlementLock).where(SettlementLock.expires_at < (now or utcnow()))
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    if res.rowcount:
        log.warning("settlement_locks_swept", count=res.rowcount)
    return int(res.rowcount or 0)

# ---------- attempts ----------

async def _open_attempt(session_factory: Factory, match_id: UUID, triggered_by: str) -> int:
    async with session_factory() as session:
        last = await session.scalar(
            select(func.coalesce(func.max(SettlementAttempt.attempt_number), 0)).where(SettlementAttempt.match_id == match_id)
        )
        number = int(last or 0) + 1
        session.add(SettlementAttempt(match_id=match_id, attempt_number=number, status="pending", triggered_by=triggered_by))
        await session.commit()
    return number


async def _close_attempt(session_factory: Factory, match_id: UUID, number: int) -> None:
    async with session_factory() as session:
        await session.execute(
            update(SettlementAttempt)
            .where(SettlementAttempt.match_id == match_id, SettlementAttempt.attempt_number == number)
            .values(status="success", completed_at=utcnow())
        )
        await session.commit()


async def _abandon_attempt(session_factory: Factory, match_id: UUID, number: int, reason: str) -> None:
    """Lost the lock to another settler. Not a failure: no backoff, not counted toward the limit."""
    async with session_factory() as session:
        await session.execute(
            update(SettlementAttempt)
            .where(SettlementAttempt.match_id == match_id, SettlementAttempt.attempt_number == number)
            .values(status="abandoned", error_message=reason, completed_at=utcnow())
        )
        await session.commit()
    log.info("settlement_attempt_abandoned", match_id=str(match_id), attempt=number, reason=reason)


async def _fail_attempt(session_factory: Factory, match_id: UUID, number: int, error: str) -> tuple[datetime, bool]:
    """Record the failure and schedule the retry; after max failed attempts mark the match terminal."""
    now = utcnow()
    async with session_factory() as session:
        failures = 1 + int(await session.scalar(
            select(func.count()).select_from(SettlementAttempt)
            .where(SettlementAttempt.match_id == match_id, SettlementAttempt.status == "failed")
        ) or 0)
        next_retry = linear_backoff(failures, settings.settlement_backoff_seconds, now)
        terminal = failures >= settings.settlement_max_attempts
        await session.execute(
            update(SettlementAttempt)
            .where(SettlementAttempt.match_id == match_id, SettlementAttempt.attempt_number == number)
            .values(status="failed", error_message=error[:2000], completed_at=now, next_retry_at=None if terminal else next_retry)
        )
        if terminal:
            await session.execute(update(Match).where(Match.id == match_id).values(settlement_failed=True))
            raise_alert(
                session,
                alert_type="settlement_failure",
                severity="critical",
                message=f"Settlement failed after {failures} attempts for match {match_id}",
                match_id=match_id,
                metadata={"error": error, "attempts": failures},
            )
        await session.commit()
    log.warning("settlement_attempt_failed", match_id=str(match_id), attempt=number, failures=failures, error=error,
                next_retry_at=None if terminal else next_retry.isoformat(), terminal=terminal)
    return next_retry, terminal

# ---------- orchestrator ----------

def _summary(escrow: Escrow, status: str, players: list[MatchPlayer] | None = None) -> dict:
    out = {
        "status": status,
        "match_id": str(escrow.match_id),
        "total_pot_cents": int(escrow.total_pot_cents),
        "rake_cents": int(escrow.rake_cents),
        "net_pot_cents": int(escrow.net_pot_cents),
        "released_at": escrow.released_at.isoformat() if escrow.released_at else None,
    }
    if players is not None:
        out["payouts"] = [
            {
                "player_id": str(p.id),
                "user_id": str(p.user_id),
                "placement": p.placement,
                "result": p.result,
                "payout_cents": int(p.payout_cents or 0),
            } for p in sorted(players, key=lambda p: p.placement or 0)
        ]
    return out


async def _apply_payouts(session: AsyncSession, match_id: UUID, actor: str) -> dict:
    """One transaction: credit winners, stamp players, release escrow. Caller commits."""
    match = await session.get(Match, match_id, with_for_update=True, populate_existing=True)
    escrow = await session.get(Escrow, match_id, with_for_update=True, populate_existing=True)
    if escrow.status == "released":
        raise AlreadyProcessed("Match already settled")

    players = list((await session.execute(
        select(MatchPlayer).where(MatchPlayer.match_id == match_id).order_by(MatchPlayer.joined_at.asc(), MatchPlayer.id.asc())
    )).scalars().all())
    if not players:
        raise StateConflict("No players found")
    if any(p.score is None for p in players):
        raise StateConflict("Not all players have submitted scores")

    plan = calculate_payouts(
        [Standing(player_id=p.id, user_id=p.user_id, score=int(p.score), time_taken_ms=p.time_taken_ms, joined_order=i)
         for i, p in enumerate(players)],
        total_pot_cents=int(escrow.total_pot_cents),
        rake_percent=match.rake_percent,
        payout_model=match.payout_model,
        payout_config=match.payout_config,
    )

    by_id = {p.id: p for p in players}
    for po in plan.payouts:
        player = by_id[po.player_id]
        player.result = po.result
        player.payout_cents = po.payout_cents
        player.placement = po.placement
        if po.payout_cents > 0:
            await wallet.credit(
                session,
                user_id=po.user_id,
                amount_cents=po.payout_cents,
                entry_type="match_payout",
                match_id=match_id,
                note=f"Match {match_id} payout - Placement #{po.placement}",
            )

    now = utcnow()
    released = await session.execute(
        update(Escrow)
        .where(Escrow.match_id == match_id, Escrow.status == "pending")
        .values(status="released", rake_cents=plan.rake_cents, net_pot_cents=plan.net_pot_cents, released_at=now)
        .execution_options(synchronize_session=False)
    )
    if released.rowcount != 1:
        raise AlreadyProcessed("Match already settled")

    record_audit(
        session, "match_settled", actor=actor, match_id=match_id, amount_cents=plan.distributed_cents,
        metadata={
            "total_pot_cents": plan.total_pot_cents,
            "rake_cents": plan.rake_cents,
            "net_pot_cents": plan.net_pot_cents,
            "unallocated_cents": plan.unallocated_cents,
            "payout_model": plan.payout_model,
        },
    )
    await session.flush()
    await session.refresh(escrow)
    return _summary(escrow, "settled", players)


async def settle_match(
    match_id: UUID,
    *,
    triggered_by: str,
    controls: PlatformControls,
    session_factory: Factory = SessionLocal,
) -> dict:
    """
    The single entry point that settles a completed match, whoever triggers it
    (score submission, explicit settle call, auto-settlement job).

    Already released escrow => immediate success with no writes, kill switch or not.
    Lock held elsewhere     => SettlementLocked (also when lost mid-run; the attempt is abandoned, not failed).
    Failure                 => attempt recorded with linear backoff, SettlementFailed raised;
                               the failure that reaches the max marks the match terminal and alerts.
    """
    async with session_factory() as session:
        match = await session.get(Match, match_id)
        if not match:
            raise NotFound("Match not found")
        escrow = await session.get(Escrow, match_id)
        if not escrow:
            raise NotFound("Escrow not found")
        if escrow.status == "released":
            return _summary(escrow, "already_settled")
        if not await controls.is_enabled(SETTLEMENT_ENABLED):
            raise ServiceUnavailable("Match settlement is temporarily disabled")
        if match.status != "completed":
            raise StateConflict(f"Match not completed. Current state: {match.status}")
        if match.settlement_failed:
            raise StateConflict("Settlement marked failed for this match; operator action required")

    owner = f"{triggered_by}:{uuid4().hex[:12]}"
    if not await acquire_settlement_lock(match_id, owner, session_factory=session_factory):
        raise SettlementLocked()

    try:
        attempt = await _open_attempt(session_factory, match_id, triggered_by)
        try:
            if not await refresh_settlement_lock(match_id, owner, session_factory=session_factory):
                raise SettlementLocked("Settlement lock lost before applying payouts")
            async with session_factory() as session:
                result = await _apply_payouts(session, match_id, actor=triggered_by)
                await session.commit()
        except AlreadyProcessed:
            await _close_attempt(session_factory, match_id, attempt)
            async with session_factory() as session:
                return _summary(await session.get(Escrow, match_id), "already_settled")
        except SettlementLocked:
            await _abandon_attempt(session_factory, match_id, attempt, "settlement lock lost")
            raise
        except Exception as exc:
            reason = exc.reason if isinstance(exc, EngineError) else f"{type(exc).__name__}: {exc}"
            log.error("settlement_failed", match_id=str(match_id), attempt=attempt, error=reason, exc_info=not isinstance(exc, EngineError))
            next_retry, terminal = await _fail_attempt(session_factory, match_id, attempt, reason)
            raise SettlementFailed(
                f"Settlement failed: {reason}",
                attempt=attempt,
                terminal=terminal,
                next_retry_at=None if terminal else next_retry.isoformat(),
            ) from exc
        await _close_attempt(session_factory, match_id, attempt)
        log.info("settlement_succeeded", match_id=str(match_id), attempt=attempt, triggered_by=triggered_by,
                 net_pot_cents=result["net_pot_cents"], rake_cents=result["rake_cents"])
        return {**result, "attempt": attempt}
    finally:
        await release_settlement_lock(match_id, owner, session_factory=session_factory)
