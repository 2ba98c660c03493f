from __future__ import annotations
from typing import Any
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from app.errors import NotFound, ValidationError
from app.models.payments import ProviderEvent
from app.models.withdrawal import WithdrawalRequest
from app.services.alerts import raise_alert
from app.services.deposits import complete_deposit, fail_deposit
from app.services.time_windows import utcnow
from app.services.withdrawals import complete_withdrawal, fail_withdrawal
from app.db import upsert_insert

log = structlog.get_logger()

DEPOSIT_SUCCEEDED = ("payment_intent.succeeded", "charge.succeeded")
DEPOSIT_FAILED = ("payment_intent.payment_failed",)
PAYOUT_PAID = ("payout.paid", "transfer.paid")
PAYOUT_FAILED = ("payout.failed", "transfer.failed")


async def _withdrawal_for_payout(session: AsyncSession, payout_id: str) -> WithdrawalRequest:
    wr = await session.scalar(select(WithdrawalRequest).where(WithdrawalRequest.provider_payout_id == payout_id))
    if wr is None:
        raise NotFound(f"Withdrawal request not found for {payout_id}")
    return wr


async def _dispatch(session: AsyncSession, provider: str, event_type: str, obj: dict[str, Any]) -> None:
    if event_type in DEPOSIT_SUCCEEDED:
        # charge events reference their intent; intent events are the intent
        intent_id = obj.get("payment_intent") if event_type == "charge.succeeded" else obj.get("id")
        amount = obj.get("amount_received") or obj.get("amount")
        await complete_deposit(session, intent_id, amount_cents=int(amount) if amount else None, provider=provider)
    elif event_type in DEPOSIT_FAILED:
        reason = (obj.get("last_payment_error") or {}).get("message") or "Payment failed"
        await fail_deposit(session, obj.get("id"), reason=reason)
    elif event_type in PAYOUT_PAID:
        wr = await _withdrawal_for_payout(session, obj.get("id"))
        await complete_withdrawal(session, wr.id, actor=provider)
    elif event_type in PAYOUT_FAILED:
        wr = await _withdrawal_for_payout(session, obj.get("id"))
        await fail_withdrawal(session, wr.id, reason=obj.get("failure_message") or "Unknown error", actor=provider)
    else:
        log.info("webhook_event_unhandled", provider=provider, event_type=event_type)


async def process_event(session: AsyncSession, provider: str, payload: dict[str, Any]) -> dict:
    """
    Record-then-process. The event row is committed before any handler runs, keyed
    by (provider, event id); a redelivery hits the unique key and stops there.
    Handler failures are written onto that row and alerted, and the delivery is
    still acknowledged.
    """
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise ValidationError("Invalid webhook payload")

    inserted = (await session.execute(
        upsert_insert(session, ProviderEvent)
        .values(provider_name=provider, provider_event_id=event_id, event_type=event_type, payload=payload, received_at=utcnow())
        .on_conflict_do_nothing(index_elements=["provider_name", "provider_event_id"])
        .returning(ProviderEvent.id)
    )).first()
    await session.commit()
    if inserted is None:
        log.info("webhook_duplicate", provider=provider, event_id=event_id, event_type=event_type)
        return {"received": True, "message": "Event already processed"}
    row_id = inserted[0]

    obj = ((payload.get("data") or {}).get("object")) or {}
    error: str | None = None
    try:
        await _dispatch(session, provider, event_type, obj)
        await session.execute(
            update(ProviderEvent).where(ProviderEvent.id == row_id)
            .values(processed=True, processed_at=utcnow(), processing_error=None)
        )
        await session.commit()
    except Exception as exc:
        await session.rollback()
        error = getattr(exc, "reason", None) or f"{type(exc).__name__}: {exc}"
        log.error("webhook_processing_failed", provider=provider, event_id=event_id, event_type=event_type,
                  error=error, exc_info=True)
        await session.execute(
            update(ProviderEvent).where(ProviderEvent.id == row_id).values(processed=False, processing_error=error)
        )
        raise_alert(
            session,
            alert_type="payment_processing_error",
            severity="critical",
            message=f"Failed to process {provider} event {event_id} ({event_type})",
            metadata={"event_id": event_id, "event_type": event_type, "error": error},
        )
        await session.commit()

    processed = error is None
    log.info("webhook_processed", provider=provider, event_id=event_id, event_type=event_type, processed=processed)
    return {"received": True, "processed": processed}
