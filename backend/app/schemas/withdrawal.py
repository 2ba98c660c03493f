from __future__ import annotations
from pydantic import BaseModel, ConfigDict
from typing import Any, Literal
from uuid import UUID
from datetime import datetime

class CreateWithdrawalRequest(BaseModel):
    # range checks live in the gate so they come back as the gate's 400s
    amount_cents: int
    destination: dict[str, Any] | None = None

class WithdrawalPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    amount_cents: int
    destination: dict[str, Any]
    status: str
    requires_manual_review: bool
    review_reasons: list[str]
    provider_payout_id: str | None = None
    reviewed_by: UUID | None = None
    reviewed_at: datetime | None = None
    failure_reason: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

class WithdrawalResponse(BaseModel):
    success: bool = True
    withdrawal_request: WithdrawalPublic
    message: str

class ReviewWithdrawalRequest(BaseModel):
    action: Literal["approve", "reject"]
    reason: str | None = None
