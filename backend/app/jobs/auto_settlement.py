from __future__ import annotations
import asyncio
from uuid import UUID
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from app.config import settings
from app.db import SessionLocal, engine
from app.errors import SettlementLocked, SettlementFailed, EngineError
from app.models.match import Match, Escrow
from app.models.settlement import SettlementAttempt
from app.services.matches import complete_finished_matches
from app.services.controls import PlatformControls, SETTLEMENT_ENABLED
from app.services.settlement import settle_match, sweep_expired_locks
from app.services.time_windows import utcnow

log = structlog.get_logger()

JOB_OWNER = "auto-settlement-job"


async def due_matches(session: AsyncSession, *, limit: int) -> list[UUID]:
    """Completed, escrow still pending, not terminal, and not waiting out a retry backoff."""
    backing_off = (
        select(SettlementAttempt.id)
        .where(SettlementAttempt.match_id == Match.id, SettlementAttempt.next_retry_at > utcnow())
        .exists()
    )
    rows = await session.execute(
        select(Match.id)
        .join(Escrow, Escrow.match_id == Match.id)
        .where(
            Match.status == "completed",
            Escrow.status == "pending",
            Match.settlement_failed.is_(False),
            ~backing_off,
        )
        .order_by(Match.completed_at.asc())
        .limit(limit)
    )
    return [r[0] for r in rows.all()]


async def run_auto_settlement(
    *,
    controls: PlatformControls | None = None,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    batch_size: int | None = None,
) -> dict:
    controls = controls or PlatformControls(session_factory)
    if not await controls.is_enabled(SETTLEMENT_ENABLED):
        log.info("auto_settlement_disabled")
        return {"message": "Settlement disabled by kill switch", "processed": 0}

    swept = await sweep_expired_locks(session_factory=session_factory)
    async with session_factory() as session:
        await complete_finished_matches(session)
        await session.commit()
        match_ids = await due_matches(session, limit=batch_size or settings.settlement_batch_size)

    if not match_ids:
        return {"message": "No matches need settlement", "processed": 0, "locks_swept": swept}

    results = {"total": len(match_ids), "succeeded": 0, "failed": 0, "locked": 0, "details": []}
    for match_id in match_ids:
        try:
            outcome = await settle_match(match_id, triggered_by=JOB_OWNER, controls=controls, session_factory=session_factory)
        except SettlementLocked:
            results["locked"] += 1
            results["details"].append({"match_id": str(match_id), "status": "locked", "message": "Another process is settling this match"})
            continue
        except SettlementFailed as e:
            results["failed"] += 1
            results["details"].append({"match_id": str(match_id), "status": "failed", "error": e.reason, **e.extra})
            continue
        except EngineError as e:
            # kill switch flipped mid-run, or the match moved under us
            results["failed"] += 1
            results["details"].append({"match_id": str(match_id), "status": "error", "error": e.reason})
            continue
        results["succeeded"] += 1
        results["details"].append({
            "match_id": str(match_id),
            "status": "success",
            "payouts": len([p for p in outcome.get("payouts", []) if p["payout_cents"] > 0]),
            "settlement": outcome["status"],
        })

    log.info("auto_settlement_complete", total=results["total"], succeeded=results["succeeded"],
             failed=results["failed"], locked=results["locked"], locks_swept=swept)
    return {"message": "Auto-settlement job completed", "processed": results["total"], "locks_swept": swept, **results}


async def _run() -> dict:
    try:
        return await run_auto_settlement()
    finally:
        # each RQ job gets a fresh event loop; pooled connections cannot cross loops
        await engine.dispose()


def auto_settlement() -> dict:
    # RQ entry point (sync); run the async coroutine
    return asyncio.run(_run())
