from __future__ import annotations
from typing import Any


class EngineError(Exception):
    """
    Base for every failure the money engine surfaces to callers.
    Subclasses pin the HTTP status and a stable machine code; `extra`
    is merged into the response body (e.g. balance, hours_remaining).
    """
    status_code: int = 500
    code: str = "internal_error"
    default_reason: str = "Internal server error"

    def __init__(self, reason: str | None = None, **extra: Any):
        self.reason = reason or self.default_reason
        self.extra = extra
        super().__init__(self.reason)

    def to_body(self) -> dict[str, Any]:
        return {"detail": self.reason, "code": self.code, **self.extra}


class ValidationError(EngineError):
    status_code = 400
    code = "validation_error"
    default_reason = "Invalid request"


class AuthError(EngineError):
    status_code = 401
    code = "auth_error"
    default_reason = "Authentication required"


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"
    default_reason = "Not allowed"


class InsufficientFunds(EngineError):
    status_code = 402
    code = "insufficient_funds"
    default_reason = "Insufficient wallet balance"


class AlreadyProcessed(EngineError):
    status_code = 200
    code = "already_processed"
    default_reason = "Already processed"


class NotFound(EngineError):
    status_code = 404
    code = "not_found"
    default_reason = "Not found"


class StateConflict(EngineError):
    status_code = 400
    code = "state_conflict"
    default_reason = "Wrong lifecycle state"


class SettlementLocked(StateConflict):
    status_code = 409
    code = "settlement_locked"
    default_reason = "Another process is settling this match"


class RateLimited(EngineError):
    status_code = 429
    code = "rate_limited"
    default_reason = "Too many requests"


class ComplianceBlocked(EngineError):
    status_code = 403
    code = "compliance_blocked"
    default_reason = "Account not eligible"


class ServiceUnavailable(EngineError):
    status_code = 503
    code = "service_unavailable"
    default_reason = "Temporarily disabled"


class InternalError(EngineError):
    pass


class SettlementFailed(InternalError):
    code = "settlement_failed"
    default_reason = "Settlement failed"


class LedgerInvariantError(InternalError):
    code = "ledger_invariant"
    default_reason = "Wallet balance invariant violated"
