from __future__ import annotations
import asyncio
from datetime import timedelta
from uuid import UUID
import structlog
from sqlalchemy import select, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from app.config import settings
from app.db import SessionLocal, engine
from app.errors import EngineError
from app.models.withdrawal import WithdrawalRequest
from app.services.controls import PlatformControls, WITHDRAWALS_ENABLED
from app.services.payments import StripeGateway, get_gateway
from app.services.time_windows import utcnow
from app.services.withdrawals import issue_payout

log = structlog.get_logger()

async def stalled_withdrawals(session: AsyncSession, *, older_than_seconds: int, limit: int = 50) -> list[UUID]:
    """
    Approved requests whose payout job never ran, and processing requests whose
    provider call ended with an unknown outcome (no payout id recorded).
    """
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)
    rows = await session.execute(
        select(WithdrawalRequest.id)
        .where(
            WithdrawalRequest.created_at <= cutoff,
            or_(
                WithdrawalRequest.status == "approved",
                and_(WithdrawalRequest.status == "processing", WithdrawalRequest.provider_payout_id.is_(None)),
            ),
        )
        .order_by(WithdrawalRequest.created_at.asc())
        .limit(limit)
    )
    return [r[0] for r in rows.all()]

async def retry_stalled_payouts(
    *,
    gateway: StripeGateway,
    controls: PlatformControls | None = None,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    older_than_seconds: int | None = None,
) -> dict:
    controls = controls or PlatformControls(session_factory)
    if not await controls.is_enabled(WITHDRAWALS_ENABLED):
        return {"message": "Withdrawals disabled by kill switch", "processed": 0}

    async with session_factory() as session:
        ids = await stalled_withdrawals(
            session,
            older_than_seconds=settings.payout_retry_after_seconds if older_than_seconds is None else older_than_seconds,
        )

    outcomes: dict[str, int] = {"initiated": 0, "unknown": 0, "rejected": 0, "error": 0}
    for withdrawal_id in ids:
        try:
            # same provider idempotency key as the first call, so a payout that did go through is returned, not repeated
            result = await issue_payout(withdrawal_id, gateway=gateway, controls=controls, actor="payout-retry",
                                        session_factory=session_factory)
        except EngineError as e:
            log.warning("payout_retry_skipped", withdrawal_id=str(withdrawal_id), code=e.code, reason=e.reason)
            outcomes["error"] += 1
            continue
        outcomes[result["outcome"]] += 1

    log.info("payout_retry_complete", processed=len(ids), **outcomes)
    return {"message": "Payout retry completed", "processed": len(ids), **outcomes}

async def _run(withdrawal_id: str) -> dict:
    try:
        return await issue_payout(UUID(withdrawal_id), gateway=get_gateway(), controls=PlatformControls(), actor="payout-worker")
    finally:
        await engine.dispose()

def process_withdrawal(withdrawal_id: str) -> dict:
    # RQ entry point (sync); run the async coroutine
    result = asyncio.run(_run(withdrawal_id))
    log.info("payout_job_done", withdrawal_id=withdrawal_id, status=result.get("status"), outcome=result.get("outcome"))
    return result

async def _run_retry() -> dict:
    try:
        return await retry_stalled_payouts(gateway=get_gateway())
    finally:
        await engine.dispose()

def retry_payouts() -> dict:
    # RQ entry point for the periodic sweep
    return asyncio.run(_run_retry())
