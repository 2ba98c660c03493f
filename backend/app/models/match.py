from __future__ import annotations
import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, Numeric, DateTime, ForeignKey, UniqueConstraint, CheckConstraint, Uuid
from app.db import Base, JSONType
from app.services.time_windows import utcnow

class Match(Base):
    __tablename__ = "matches"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), index=True, nullable=False)
    entry_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    min_players: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    max_players: Mapped[int] = mapped_column(Integer, nullable=False)
    # seat counter claimed atomically by joins so a match can never overfill
    player_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payout_model: Mapped[str] = mapped_column(String(32), nullable=False, default="winner_take_all")
    payout_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    rake_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("5.00"))
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    room_code: Mapped[str | None] = mapped_column(String(12), unique=True, index=True, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="waiting")  # waiting|starting|active|completed|cancelled
    settlement_failed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("entry_fee_cents > 0", name="ck_match_fee_positive"),
        CheckConstraint("player_count <= max_players", name="ck_match_not_overfilled"),
    )

class MatchPlayer(Base):
    __tablename__ = "match_players"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    match_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("matches.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), index=True, nullable=False)
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    time_taken_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result: Mapped[str | None] = mapped_column(String(8), nullable=True)  # win|loss|tie
    payout_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    placement: Mapped[int | None] = mapped_column(Integer, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("match_id", "user_id", name="uq_match_player_once"),
    )

class Escrow(Base):
    """
    Pot for one match. pending -> released exactly once; the release is a
    conditional UPDATE on status so a second settlement can never apply.
    """
    __tablename__ = "escrows"
    match_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("matches.id", ondelete="CASCADE"), primary_key=True)
    total_pot_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rake_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    net_pot_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending|released
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("total_pot_cents >= 0", name="ck_escrow_pot_nonneg"),
    )
