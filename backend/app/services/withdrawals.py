from __future__ import annotations
from math import ceil
from uuid import UUID
import structlog
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from app.config import settings
from app.db import SessionLocal
from app.errors import (
    ValidationError, ServiceUnavailable, ComplianceBlocked, RateLimited, NotFound, StateConflict,
)
from app.models.match import MatchPlayer
from app.models.user import User
from app.models.withdrawal import WithdrawalRequest
from app.schemas.withdrawal import WithdrawalPublic
from app.services import wallet
from app.services.alerts import raise_alert, record_audit
from app.services.compliance import compliance_facts
from app.services.controls import PlatformControls, WITHDRAWALS_ENABLED, MAX_WITHDRAWAL_PER_DAY
from app.services.payments import StripeGateway, PayoutOutcomeUnknown, PayoutRejected
from app.services.time_windows import utcnow, hours_since, rolling_window_start

log = structlog.get_logger()

# requests that still hold (or already spent) funds
OPEN_STATUSES = ("pending", "approved", "processing", "completed")


def withdrawal_body(wr: WithdrawalRequest, message: str) -> dict:
    return {
        "success": True,
        "withdrawal_request": WithdrawalPublic.model_validate(wr).model_dump(mode="json"),
        "message": message,
    }


async def get_withdrawal(session: AsyncSession, withdrawal_id: UUID, *, for_update: bool = False) -> WithdrawalRequest:
    wr = await session.get(WithdrawalRequest, withdrawal_id, with_for_update=for_update, populate_existing=True)
    if not wr:
        raise NotFound("Withdrawal request not found")
    return wr


async def list_withdrawals(session: AsyncSession, user_id: UUID, limit: int = 50) -> list[WithdrawalRequest]:
    return list((await session.execute(
        select(WithdrawalRequest).where(WithdrawalRequest.user_id == user_id)
        .order_by(WithdrawalRequest.created_at.desc()).limit(limit)
    )).scalars().all())


async def request_withdrawal(
    session: AsyncSession,
    *,
    user: User,
    amount_cents: int,
    destination: dict | None,
    idempotency_key: str,
    controls: PlatformControls,
) -> tuple[int, dict]:
    """
    Withdrawal gate. Checks run in a fixed order and stop at the first refusal;
    the last one moves the amount from available to locked in one statement.
    Nothing is committed here.
    """
    # 1. replay by key
    existing = await session.scalar(
        select(WithdrawalRequest).where(
            WithdrawalRequest.user_id == user.id, WithdrawalRequest.idempotency_key == idempotency_key
        )
    )
    if existing:
        return 200, withdrawal_body(existing, "Withdrawal request already exists")

    # 2. input
    if amount_cents is None or int(amount_cents) <= 0:
        raise ValidationError("Invalid amount")
    if not isinstance(destination, dict) or not destination.get("type"):
        raise ValidationError("Invalid destination")
    amount_cents = int(amount_cents)

    # 3. kill switch
    if not await controls.is_enabled(WITHDRAWALS_ENABLED):
        raise ServiceUnavailable("Withdrawals are temporarily disabled")

    facts = await compliance_facts(session, user)
    # 4. freeze
    if facts.frozen:
        raise ComplianceBlocked("Account frozen - withdrawals not permitted")
    # 5. kyc
    if not facts.kyc_approved or facts.withdrawals_locked:
        raise ComplianceBlocked("KYC verification required or withdrawals locked")
    # 6. fraud
    if facts.fraud_score >= settings.fraud_block_score:
        raise ComplianceBlocked("Account flagged for review - withdrawals temporarily restricted")

    # concurrent requests from one user queue here, so the checks below see each other's rows
    await wallet.lock_wallet(session, user.id)
    now = utcnow()
    window_start = rolling_window_start(settings.withdrawal_rate_window_hours, now)

    # 7. daily limit
    limit_cents = await controls.limit(MAX_WITHDRAWAL_PER_DAY)
    used_cents = int(await session.scalar(
        select(func.coalesce(func.sum(WithdrawalRequest.amount_cents), 0)).where(
            WithdrawalRequest.user_id == user.id,
            WithdrawalRequest.status.in_(OPEN_STATUSES),
            WithdrawalRequest.created_at >= rolling_window_start(24, now),
        )
    ) or 0)
    if used_cents + amount_cents > limit_cents:
        raise ValidationError(
            f"Withdrawal exceeds daily limit of ${limit_cents / 100:.2f}",
            limit_cents=limit_cents, used_cents=used_cents,
        )

    # 8. rate limit
    recent = int(await session.scalar(
        select(func.count()).select_from(WithdrawalRequest).where(
            WithdrawalRequest.user_id == user.id, WithdrawalRequest.created_at >= window_start
        )
    ) or 0)
    if recent >= settings.max_withdrawals_per_window:
        raise RateLimited(
            f"Withdrawal rate limit: {settings.max_withdrawals_per_window} withdrawal per "
            f"{settings.withdrawal_rate_window_hours} hours"
        )

    # 9. cooldown since last match
    last_joined = await session.scalar(
        select(MatchPlayer.joined_at).where(MatchPlayer.user_id == user.id).order_by(MatchPlayer.joined_at.desc()).limit(1)
    )
    if last_joined is not None:
        elapsed = hours_since(last_joined, now)
        if elapsed < settings.withdrawal_cooldown_hours:
            raise ValidationError(
                f"Withdrawal cooldown: Must wait {settings.withdrawal_cooldown_hours} hours after last match",
                hours_remaining=ceil(settings.withdrawal_cooldown_hours - elapsed),
            )

    # 10. check-and-lock
    await wallet.lock_funds(session, user_id=user.id, amount_cents=amount_cents)

    reasons = []
    if amount_cents >= settings.withdrawal_review_cents:
        reasons.append("large_amount")
    if facts.fraud_score >= settings.fraud_review_score:
        reasons.append("elevated_fraud_score")
    if facts.account_age_days(now) < settings.min_account_age_days:
        reasons.append("new_account")
    manual = bool(reasons)

    wr = WithdrawalRequest(
        user_id=user.id,
        amount_cents=amount_cents,
        destination=destination,
        status="pending" if manual else "approved",
        requires_manual_review=manual,
        review_reasons=reasons,
        idempotency_key=idempotency_key,
    )
    session.add(wr)
    try:
        await session.flush()
    except IntegrityError:
        raise StateConflict("Withdrawal request already exists for this key")

    record_audit(
        session, "withdrawal_requested", actor=str(user.id), user_id=user.id, amount_cents=amount_cents,
        metadata={
            "withdrawal_request_id": str(wr.id),
            "requires_manual_review": manual,
            "review_reasons": reasons,
            "destination_type": destination.get("type"),
        },
    )
    if manual:
        raise_alert(
            session,
            alert_type="withdrawal_review_required",
            severity="warning",
            message=f"Withdrawal of ${amount_cents / 100:.2f} requires manual review",
            user_id=user.id,
            metadata={"withdrawal_request_id": str(wr.id), "amount_cents": amount_cents, "reasons": reasons},
        )
    log.info("withdrawal_requested", withdrawal_id=str(wr.id), user_id=str(user.id), amount_cents=amount_cents,
             manual_review=manual, reasons=reasons)
    await session.refresh(wr)
    return 201, withdrawal_body(
        wr,
        "Withdrawal request submitted - pending manual review" if manual
        else "Withdrawal request approved - processing payment",
    )


async def reject_withdrawal(session: AsyncSession, *, withdrawal_id: UUID, admin: User, reason: str | None) -> WithdrawalRequest:
    """pending -> rejected and the lock is reversed. Caller commits."""
    now = utcnow()
    moved = (await session.execute(
        update(WithdrawalRequest)
        .where(WithdrawalRequest.id == withdrawal_id, WithdrawalRequest.status == "pending")
        .values(status="rejected", reviewed_by=admin.id, reviewed_at=now, failure_reason=reason or "Rejected by admin")
        .returning(WithdrawalRequest.user_id, WithdrawalRequest.amount_cents)
        .execution_options(synchronize_session=False)
    )).one_or_none()
    if moved is None:
        wr = await get_withdrawal(session, withdrawal_id)
        raise StateConflict(f"Withdrawal already {wr.status}")
    user_id, amount = moved[0], int(moved[1])
    await wallet.unlock_funds(session, user_id=user_id, amount_cents=amount)
    record_audit(session, "withdrawal_rejected", actor=str(admin.id), user_id=user_id, amount_cents=amount,
                 metadata={"withdrawal_request_id": str(withdrawal_id), "reason": reason})
    log.info("withdrawal_rejected", withdrawal_id=str(withdrawal_id), admin_id=str(admin.id), amount_cents=amount)
    return await get_withdrawal(session, withdrawal_id)


async def approve_withdrawal(
    session: AsyncSession, *, withdrawal_id: UUID, admin: User, controls: PlatformControls
) -> WithdrawalRequest:
    """pending -> approved. The payout itself is issued after the caller commits."""
    if not await controls.is_enabled(WITHDRAWALS_ENABLED):
        raise ServiceUnavailable("Withdrawals are currently disabled")
    moved = await session.execute(
        update(WithdrawalRequest)
        .where(WithdrawalRequest.id == withdrawal_id, WithdrawalRequest.status == "pending")
        .values(status="approved", reviewed_by=admin.id, reviewed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    wr = await get_withdrawal(session, withdrawal_id)
    if moved.rowcount != 1:
        raise StateConflict(f"Withdrawal already {wr.status}")
    record_audit(session, "withdrawal_approved", actor=str(admin.id), user_id=wr.user_id, amount_cents=wr.amount_cents,
                 metadata={"withdrawal_request_id": str(withdrawal_id)})
    log.info("withdrawal_approved", withdrawal_id=str(withdrawal_id), admin_id=str(admin.id))
    return wr


async def issue_payout(
    withdrawal_id: UUID,
    *,
    gateway: StripeGateway,
    controls: PlatformControls,
    actor: str = "system",
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
) -> dict:
    """
    Send an approved withdrawal to the provider.

    The row is moved to `processing` and committed before the provider call.
    A `processing` row without a provider payout id is an earlier call with an
    unknown outcome; it is re-sent with the same provider idempotency key, which
    returns the original payout instead of creating a second one.
    """
    if not await controls.is_enabled(WITHDRAWALS_ENABLED):
        raise ServiceUnavailable("Withdrawals are currently disabled")

    async with session_factory() as session:
        claimed = await session.execute(
            update(WithdrawalRequest)
            .where(WithdrawalRequest.id == withdrawal_id, WithdrawalRequest.status == "approved")
            .values(status="processing")
            .execution_options(synchronize_session=False)
        )
        wr = await get_withdrawal(session, withdrawal_id)
        if claimed.rowcount != 1 and not (wr.status == "processing" and wr.provider_payout_id is None):
            raise StateConflict(f"Withdrawal already {wr.status}")
        await session.commit()
        user_id, amount, destination = wr.user_id, int(wr.amount_cents), dict(wr.destination or {})

    try:
        payout_id = gateway.create_payout(
            withdrawal_id=withdrawal_id, user_id=user_id, amount_cents=amount, destination=destination
        )
    except PayoutOutcomeUnknown as e:
        async with session_factory() as session:
            raise_alert(
                session,
                alert_type="withdrawal_payout_unknown",
                severity="warning",
                message=f"Payout outcome unknown for withdrawal {withdrawal_id}; left processing",
                user_id=user_id,
                metadata={"withdrawal_request_id": str(withdrawal_id), "amount_cents": amount, "error": str(e)},
            )
            await session.commit()
        return {"withdrawal_id": str(withdrawal_id), "status": "processing", "outcome": "unknown"}
    except PayoutRejected as e:
        async with session_factory() as session:
            await fail_withdrawal(session, withdrawal_id, reason=str(e), actor=actor)
            await session.commit()
        return {"withdrawal_id": str(withdrawal_id), "status": "failed", "outcome": "rejected", "reason": str(e)}

    async with session_factory() as session:
        await session.execute(
            update(WithdrawalRequest)
            .where(WithdrawalRequest.id == withdrawal_id, WithdrawalRequest.provider_payout_id.is_(None))
            .values(provider_payout_id=payout_id)
            .execution_options(synchronize_session=False)
        )
        record_audit(session, "withdrawal_payout_initiated", actor=actor, user_id=user_id, amount_cents=amount,
                     metadata={"withdrawal_request_id": str(withdrawal_id), "provider_payout_id": payout_id})
        await session.commit()
    log.info("withdrawal_payout_initiated", withdrawal_id=str(withdrawal_id), provider_payout_id=payout_id, amount_cents=amount)
    return {"withdrawal_id": str(withdrawal_id), "status": "processing", "outcome": "initiated", "provider_payout_id": payout_id}


async def complete_withdrawal(session: AsyncSession, withdrawal_id: UUID, *, actor: str) -> bool:
    """
    Provider confirmed the payout: locked funds leave as a `withdrawal` entry.
    False when it was already completed. Caller commits.
    """
    moved = (await session.execute(
        update(WithdrawalRequest)
        .where(WithdrawalRequest.id == withdrawal_id, WithdrawalRequest.status.in_(("approved", "processing")))
        .values(status="completed", completed_at=utcnow())
        .returning(WithdrawalRequest.user_id, WithdrawalRequest.amount_cents)
        .execution_options(synchronize_session=False)
    )).one_or_none()
    if moved is None:
        wr = await get_withdrawal(session, withdrawal_id)
        if wr.status == "completed":
            return False
        raise StateConflict(f"Withdrawal is {wr.status}, cannot complete")
    user_id, amount = moved[0], int(moved[1])
    await wallet.settle_locked(session, user_id=user_id, amount_cents=amount, external_id=f"withdrawal:{withdrawal_id}",
                               note="Withdrawal paid out")
    record_audit(session, "withdrawal_completed", actor=actor, user_id=user_id, amount_cents=amount,
                 metadata={"withdrawal_request_id": str(withdrawal_id)})
    log.info("withdrawal_completed", withdrawal_id=str(withdrawal_id), amount_cents=amount)
    return True


async def fail_withdrawal(session: AsyncSession, withdrawal_id: UUID, *, reason: str, actor: str) -> str:
    """
    Reverse a withdrawal the provider refused or bounced. Caller commits.

    Still-locked funds are unlocked. Funds that already left (completed) come back
    through a `withdrawal_refund` credit. Returns the action taken.
    """
    wr = await get_withdrawal(session, withdrawal_id)
    user_id, amount = wr.user_id, int(wr.amount_cents)
    moved = None
    if wr.status in ("approved", "processing", "completed"):
        # conditional on the status we saw, so a concurrent transition cannot be reversed twice
        moved = (await session.execute(
            update(WithdrawalRequest)
            .where(WithdrawalRequest.id == withdrawal_id, WithdrawalRequest.status == wr.status)
            .values(status="failed", failure_reason=reason)
            .returning(WithdrawalRequest.id)
            .execution_options(synchronize_session=False)
        )).one_or_none()
    if moved is None:
        log.info("withdrawal_failure_ignored", withdrawal_id=str(withdrawal_id), status=wr.status)
        return "noop"

    if wr.status == "completed":
        await wallet.credit(
            session, user_id=user_id, amount_cents=amount, entry_type="withdrawal_refund",
            external_id=f"withdrawal_refund:{withdrawal_id}", note=f"Withdrawal failed - funds restored: {reason}",
        )
        action = "refunded"
    else:
        await wallet.unlock_funds(session, user_id=user_id, amount_cents=amount)
        action = "unlocked"

    raise_alert(
        session,
        alert_type="withdrawal_failed",
        severity="error",
        message=f"Withdrawal failed for user {user_id}: {reason}",
        user_id=user_id,
        metadata={"withdrawal_request_id": str(withdrawal_id), "amount_cents": amount, "action": action},
    )
    record_audit(session, "withdrawal_failed", actor=actor, user_id=user_id, amount_cents=amount,
                 metadata={"withdrawal_request_id": str(withdrawal_id), "reason": reason, "action": action})
    return action
