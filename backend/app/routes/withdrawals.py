from __future__ import annotations
from uuid import UUID
import structlog
from fastapi import APIRouter, Depends, Query
from rq import Queue
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth_deps import get_current_user
from app.db import get_session
from app.errors import NotFound
from app.jobs.payouts import process_withdrawal
from app.jobs.queue import get_job_queue
from app.models.user import User
from app.schemas.withdrawal import CreateWithdrawalRequest, WithdrawalPublic, WithdrawalResponse
from app.services import withdrawals as wd
from app.services.controls import PlatformControls, get_controls
from app.services.idempotency import require_idempotency_key, run_idempotent

log = structlog.get_logger()

router = APIRouter(prefix="/withdrawals", tags=["withdrawals"])

@router.post("", status_code=201, response_model=WithdrawalResponse)
async def request_withdrawal(
    payload: CreateWithdrawalRequest,
    key: str = Depends(require_idempotency_key),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    controls: PlatformControls = Depends(get_controls),
    queue: Queue = Depends(get_job_queue),
):
    result = await run_idempotent(
        session, key=key, user_id=user.id, route="withdrawals.create",
        handler=lambda: wd.request_withdrawal(
            session, user=user, amount_cents=payload.amount_cents, destination=payload.destination,
            idempotency_key=key, controls=controls,
        ),
    )
    # payout is enqueued once, after the request row is committed
    if not result.replayed and result.status_code == 201:
        wr = result.body["withdrawal_request"]
        if wr["status"] == "approved":
            queue.enqueue(process_withdrawal, wr["id"], job_timeout=120)
            log.info("withdrawal_payout_enqueued", withdrawal_id=wr["id"])
    return result.response()

@router.get("", response_model=list[WithdrawalPublic])
async def list_withdrawals(
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return [WithdrawalPublic.model_validate(w) for w in await wd.list_withdrawals(session, user.id, limit=limit)]

@router.get("/{withdrawal_id}", response_model=WithdrawalPublic)
async def get_withdrawal(withdrawal_id: UUID, session: AsyncSession = Depends(get_session), user: User = Depends(get_current_user)):
    w = await wd.get_withdrawal(session, withdrawal_id)
    if w.user_id != user.id and not user.is_admin:
        raise NotFound("Withdrawal request not found")
    return WithdrawalPublic.model_validate(w)
