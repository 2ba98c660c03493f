from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth_deps import require_admin, require_cron_or_admin
from app.db import get_session, upsert_insert
from app.errors import NotFound, ValidationError
from app.jobs.auto_settlement import run_auto_settlement
from app.jobs.payouts import retry_stalled_payouts
from app.models.ops import Alert
from app.models.user import User, UserEligibility
from app.models.withdrawal import WithdrawalRequest
from app.schemas.ops import AlertPublic, ControlUpdate, EligibilityUpdate
from app.schemas.withdrawal import ReviewWithdrawalRequest, WithdrawalPublic
from app.services import wallet
from app.services import withdrawals as wd
from app.services.alerts import record_audit
from app.services.controls import PlatformControls, get_controls, KILL_SWITCHES, LIMIT_DEFAULTS
from app.services.payments import StripeGateway, get_gateway
from app.services.settlement import sweep_expired_locks
from app.services.time_windows import utcnow

router = APIRouter(prefix="/admin", tags=["admin"])

# ---------- withdrawals ----------

@router.get("/withdrawals", response_model=list[WithdrawalPublic])
async def list_withdrawals(
    status: str | None = Query("pending"),
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    q = select(WithdrawalRequest).order_by(WithdrawalRequest.created_at.asc()).limit(limit)
    if status:
        q = q.where(WithdrawalRequest.status == status)
    return [WithdrawalPublic.model_validate(w) for w in (await session.execute(q)).scalars().all()]

@router.post("/withdrawals/{withdrawal_id}/review")
async def review_withdrawal(
    withdrawal_id: UUID,
    payload: ReviewWithdrawalRequest,
    session: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
    controls: PlatformControls = Depends(get_controls),
    gateway: StripeGateway = Depends(get_gateway),
):
    if payload.action == "reject":
        wr = await wd.reject_withdrawal(session, withdrawal_id=withdrawal_id, admin=admin, reason=payload.reason)
        body = wd.withdrawal_body(wr, "Withdrawal rejected and funds released")
        await session.commit()
        return body

    await wd.approve_withdrawal(session, withdrawal_id=withdrawal_id, admin=admin, controls=controls)
    await session.commit()
    payout = await wd.issue_payout(withdrawal_id, gateway=gateway, controls=controls, actor=str(admin.id))
    wr = await wd.get_withdrawal(session, withdrawal_id)
    message = {
        "initiated": "Withdrawal approved and payout initiated",
        "unknown": "Withdrawal approved; payout outcome pending confirmation",
        "rejected": "Withdrawal approved but the provider rejected the payout; funds released",
    }[payout["outcome"]]
    return {**wd.withdrawal_body(wr, message), "payout": payout}

# ---------- alerts ----------

@router.get("/alerts", response_model=list[AlertPublic])
async def list_alerts(
    severity: str | None = None,
    unacknowledged: bool = False,
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    q = select(Alert).order_by(Alert.created_at.desc()).limit(limit)
    if severity:
        q = q.where(Alert.severity == severity)
    if unacknowledged:
        q = q.where(Alert.acknowledged_at.is_(None))
    return [AlertPublic.model_validate(a) for a in (await session.execute(q)).scalars().all()]

@router.post("/alerts/{alert_id}/ack", response_model=AlertPublic)
async def acknowledge_alert(alert_id: UUID, session: AsyncSession = Depends(get_session), admin: User = Depends(require_admin)):
    res = await session.execute(
        update(Alert).where(Alert.id == alert_id, Alert.acknowledged_at.is_(None))
        .values(acknowledged_at=utcnow(), acknowledged_by=admin.id)
        .execution_options(synchronize_session=False)
    )
    alert = await session.get(Alert, alert_id, populate_existing=True)
    if not alert:
        raise NotFound("Alert not found")
    if res.rowcount:
        record_audit(session, "alert_acknowledged", actor=str(admin.id), metadata={"alert_id": str(alert_id), "type": alert.type})
    await session.commit()
    return AlertPublic.model_validate(alert)

# ---------- kill switches & limits ----------

@router.get("/controls")
async def get_platform_controls(admin: User = Depends(require_admin), controls: PlatformControls = Depends(get_controls)):
    return await controls.snapshot()

@router.put("/controls/{name}")
async def set_platform_control(
    name: str,
    payload: ControlUpdate,
    session: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
    controls: PlatformControls = Depends(get_controls),
):
    if name in KILL_SWITCHES:
        if payload.enabled is None:
            raise ValidationError("enabled is required for a kill switch")
    elif name in LIMIT_DEFAULTS:
        if payload.value_cents is None:
            raise ValidationError("value_cents is required for a limit")
    else:
        raise ValidationError(f"Unknown control: {name}")
    admin_id = admin.id
    await controls.set(name, enabled=payload.enabled, value_cents=payload.value_cents, actor=admin_id)
    record_audit(session, "platform_control_changed", actor=str(admin_id),
                 metadata={"control": name, "enabled": payload.enabled, "value_cents": payload.value_cents})
    await session.commit()
    return await controls.snapshot()

# ---------- settlement operations ----------

@router.post("/jobs/auto-settlement")
async def trigger_auto_settlement(
    actor: str = Depends(require_cron_or_admin),
    controls: PlatformControls = Depends(get_controls),
):
    return await run_auto_settlement(controls=controls)

@router.post("/jobs/payout-retry")
async def trigger_payout_retry(
    actor: str = Depends(require_cron_or_admin),
    controls: PlatformControls = Depends(get_controls),
    gateway: StripeGateway = Depends(get_gateway),
):
    return await retry_stalled_payouts(gateway=gateway, controls=controls)

@router.post("/settlement-locks/sweep")
async def sweep_locks(admin: User = Depends(require_admin)):
    return {"swept": await sweep_expired_locks()}

# ---------- wallets & compliance facts ----------

@router.get("/wallets/{user_id}/reconcile")
async def reconcile_wallet(user_id: UUID, session: AsyncSession = Depends(get_session), admin: User = Depends(require_admin)):
    if not await session.get(User, user_id):
        raise NotFound("User not found")
    return await wallet.reconcile(session, user_id)

@router.put("/users/{user_id}/eligibility")
async def push_eligibility(
    user_id: UUID,
    payload: EligibilityUpdate,
    session: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    if not await session.get(User, user_id):
        raise NotFound("User not found")
    values = payload.model_dump()
    stmt = upsert_insert(session, UserEligibility).values(user_id=user_id, updated_at=utcnow(), **values)
    await session.execute(stmt.on_conflict_do_update(index_elements=["user_id"], set_={**values, "updated_at": utcnow()}))
    record_audit(session, "eligibility_updated", actor=str(admin.id), user_id=user_id, metadata=values)
    await session.commit()
    return {"user_id": str(user_id), **values}
