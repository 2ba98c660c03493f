from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, Text, DateTime, ForeignKey, UniqueConstraint, CheckConstraint, Uuid
from app.db import Base, JSONType
from app.services.time_windows import utcnow

class WithdrawalRequest(Base):
    """
    Funds are moved available -> locked when the request is created.
    Terminal outcomes:
      - completed         => locked amount leaves as a `withdrawal` ledger entry
      - rejected / failed => locked amount returns to available
    """
    __tablename__ = "withdrawal_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), index=True, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    destination: Mapped[dict] = mapped_column(JSONType, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending|approved|processing|completed|rejected|failed
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_reasons: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_payout_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_withdrawal_idempotency"),
        CheckConstraint("amount_cents > 0", name="ck_withdrawal_amount_positive"),
    )
