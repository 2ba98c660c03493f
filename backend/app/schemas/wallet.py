from __future__ import annotations
from pydantic import BaseModel, Field, ConfigDict
from uuid import UUID
from datetime import datetime

class LedgerEntryPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    amount_cents: int
    balance_after_cents: int
    match_id: UUID | None = None
    external_id: str | None = None
    note: str | None = None
    created_at: datetime

class WalletSnapshot(BaseModel):
    available_cents: int
    locked_cents: int
    total_cents: int
    entries: list[LedgerEntryPublic]

class CreateDepositRequest(BaseModel):
    amount_cents: int = Field(gt=0, description="Deposit amount in cents")

class CreateDepositResponse(BaseModel):
    deposit_intent_id: UUID
    provider_intent_id: str
    client_secret: str | None = None
    amount_cents: int
    status: str
