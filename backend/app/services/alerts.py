from __future__ import annotations
from uuid import UUID
import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from app.models.ops import Alert, AuditEvent

log = structlog.get_logger()

_LOG_LEVEL = {"info": "info", "warning": "warning", "error": "error", "critical": "critical"}


def raise_alert(
    session: AsyncSession,
    *,
    alert_type: str,
    severity: str,
    message: str,
    user_id: UUID | None = None,
    match_id: UUID | None = None,
    metadata: dict | None = None,
) -> Alert:
    """Queue an operator alert on the session (committed with the caller's transaction)."""
    alert = Alert(
        type=alert_type,
        severity=severity,
        message=message,
        user_id=user_id,
        match_id=match_id,
        metadata_json=metadata or {},
    )
    session.add(alert)
    getattr(log, _LOG_LEVEL.get(severity, "warning"))(
        "alert_raised", alert_type=alert_type, severity=severity, alert_message=message,
        user_id=str(user_id) if user_id else None, match_id=str(match_id) if match_id else None,
    )
    return alert


def record_audit(
    session: AsyncSession,
    event_type: str,
    *,
    actor: str,
    user_id: UUID | None = None,
    match_id: UUID | None = None,
    amount_cents: int | None = None,
    metadata: dict | None = None,
) -> AuditEvent:
    ev = AuditEvent(
        event_type=event_type,
        actor=actor,
        user_id=user_id,
        match_id=match_id,
        amount_cents=amount_cents,
        metadata_json=metadata or {},
    )
    session.add(ev)
    return ev
