from __future__ import annotations
from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Literal
from uuid import UUID
from datetime import datetime

Severity = Literal["info", "warning", "error", "critical"]
KycStatus = Literal["none", "pending", "approved", "rejected"]

class AlertPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    severity: str
    message: str
    user_id: UUID | None = None
    match_id: UUID | None = None
    metadata_json: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")
    acknowledged_at: datetime | None = None
    acknowledged_by: UUID | None = None
    created_at: datetime

class ControlUpdate(BaseModel):
    enabled: bool | None = None
    value_cents: int | None = Field(default=None, ge=0)

class EligibilityUpdate(BaseModel):
    kyc_status: KycStatus = "none"
    kyc_tier: int = Field(default=0, ge=0)
    withdrawals_locked: bool = False
    frozen: bool = False
    fraud_score: int = Field(default=0, ge=0, le=100)
