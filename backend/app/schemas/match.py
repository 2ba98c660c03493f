from __future__ import annotations
from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import Any, Literal
from uuid import UUID
from datetime import datetime

MatchStatus = Literal["waiting", "starting", "active", "completed", "cancelled"]

class CreateMatchRequest(BaseModel):
    entry_fee_cents: int = Field(gt=0)
    max_players: int = Field(ge=2, le=100)
    min_players: int = Field(default=2, ge=2)
    payout_model: str = "winner_take_all"
    payout_config: dict[str, Any] = Field(default_factory=dict)
    rake_percent: float | None = Field(default=None, ge=0, le=50)
    is_private: bool = False

    @model_validator(mode="after")
    def players_range(self):
        if self.min_players > self.max_players:
            raise ValueError("min_players must not exceed max_players")
        return self

class JoinMatchRequest(BaseModel):
    match_id: UUID | None = None
    room_code: str | None = Field(default=None, max_length=16)

class SubmitScoreRequest(BaseModel):
    score: int = Field(ge=0)
    time_taken_ms: int | None = Field(default=None, ge=0)

class MatchPlayerPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    score: int | None = None
    time_taken_ms: int | None = None
    result: str | None = None
    payout_cents: int | None = None
    placement: int | None = None
    joined_at: datetime
    finished_at: datetime | None = None

class EscrowPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_pot_cents: int
    rake_cents: int
    net_pot_cents: int
    status: str
    released_at: datetime | None = None

class MatchPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    creator_id: UUID
    entry_fee_cents: int
    min_players: int
    max_players: int
    player_count: int
    payout_model: str
    payout_config: dict[str, Any]
    rake_percent: float
    is_private: bool
    room_code: str | None = None
    status: str
    settlement_failed: bool
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

class MatchDetail(BaseModel):
    match: MatchPublic
    players: list[MatchPlayerPublic]
    escrow: EscrowPublic | None = None
