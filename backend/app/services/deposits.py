from __future__ import annotations
import structlog
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import settings
from app.errors import ValidationError, ServiceUnavailable, ComplianceBlocked, RateLimited, NotFound
from app.models.payments import DepositIntent
from app.models.user import User
from app.services import wallet
from app.services.alerts import record_audit
from app.services.compliance import is_frozen
from app.services.controls import PlatformControls, DEPOSITS_ENABLED
from app.services.payments import StripeGateway
from app.services.time_windows import utcnow, rolling_window_start

log = structlog.get_logger()


async def create_deposit_intent(
    session: AsyncSession,
    *,
    user: User,
    amount_cents: int,
    gateway: StripeGateway,
    controls: PlatformControls,
) -> tuple[int, dict]:
    """Open a provider payment intent. The wallet is only credited when the provider confirms."""
    if not await controls.is_enabled(DEPOSITS_ENABLED):
        raise ServiceUnavailable("Deposits are temporarily disabled")
    if await is_frozen(session, user):
        raise ComplianceBlocked("Account frozen - deposits not permitted")
    if amount_cents < settings.min_deposit_cents or amount_cents > settings.max_deposit_cents:
        raise ValidationError(
            f"Deposit must be between ${settings.min_deposit_cents / 100:.2f} and ${settings.max_deposit_cents / 100:.2f}",
            min_cents=settings.min_deposit_cents, max_cents=settings.max_deposit_cents,
        )
    recent = int(await session.scalar(
        select(func.count()).select_from(DepositIntent).where(
            DepositIntent.user_id == user.id, DepositIntent.created_at >= rolling_window_start(1)
        )
    ) or 0)
    if recent >= settings.max_deposits_per_hour:
        raise RateLimited(f"Deposit rate limit: {settings.max_deposits_per_hour} deposits per hour")

    intent = DepositIntent(user_id=user.id, amount_cents=int(amount_cents), status="pending", provider_name=gateway.name)
    session.add(intent)
    await session.flush()

    provider_id, client_secret = gateway.create_payment_intent(
        deposit_intent_id=intent.id, user_id=user.id, amount_cents=int(amount_cents)
    )
    intent.provider_intent_id = provider_id
    record_audit(session, "deposit_initiated", actor=str(user.id), user_id=user.id, amount_cents=int(amount_cents),
                 metadata={"deposit_intent_id": str(intent.id), "provider_intent_id": provider_id})
    await session.flush()
    log.info("deposit_intent_created", deposit_intent_id=str(intent.id), user_id=str(user.id), amount_cents=amount_cents)
    return 201, {
        "deposit_intent_id": str(intent.id),
        "provider_intent_id": provider_id,
        "client_secret": client_secret,
        "amount_cents": int(amount_cents),
        "status": intent.status,
    }


async def complete_deposit(session: AsyncSession, provider_intent_id: str, *, amount_cents: int | None, provider: str) -> bool:
    """
    Credit the wallet for a confirmed deposit. The ledger entry's external_id is the
    provider intent id, so the credit can land once at most. Caller commits.
    """
    intent = await session.scalar(
        select(DepositIntent).where(DepositIntent.provider_intent_id == provider_intent_id).with_for_update()
    )
    if intent is None:
        raise NotFound(f"Deposit intent not found for {provider_intent_id}")
    if intent.status == "completed":
        log.info("deposit_already_completed", provider_intent_id=provider_intent_id)
        return False
    credited = int(amount_cents) if amount_cents else int(intent.amount_cents)
    if credited != int(intent.amount_cents):
        log.warning("deposit_amount_mismatch", provider_intent_id=provider_intent_id,
                    expected_cents=int(intent.amount_cents), received_cents=credited)
    await wallet.credit(
        session, user_id=intent.user_id, amount_cents=credited, entry_type="deposit",
        external_id=provider_intent_id, note=f"Deposit via {provider} - {provider_intent_id}",
    )
    await session.execute(
        update(DepositIntent).where(DepositIntent.id == intent.id)
        .values(status="completed", completed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    record_audit(session, "deposit_completed", actor=provider, user_id=intent.user_id, amount_cents=credited,
                 metadata={"provider": provider, "intent_id": provider_intent_id})
    log.info("deposit_completed", provider_intent_id=provider_intent_id, user_id=str(intent.user_id), amount_cents=credited)
    return True


async def fail_deposit(session: AsyncSession, provider_intent_id: str, *, reason: str) -> bool:
    """No funds move on a failed deposit; only the intent is closed."""
    res = await session.execute(
        update(DepositIntent)
        .where(DepositIntent.provider_intent_id == provider_intent_id, DepositIntent.status.in_(("pending", "processing")))
        .values(status="failed", failure_reason=reason, completed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        log.info("deposit_failed", provider_intent_id=provider_intent_id, reason=reason)
    return bool(res.rowcount)
