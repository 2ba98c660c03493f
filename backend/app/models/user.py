from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Uuid, func
from app.db import Base
from app.services.time_windows import utcnow

class User(Base):
    __tablename__ = "users"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

class UserEligibility(Base):
    """
    Compliance facts pushed by the Identity/Compliance subsystem.
    Treated as opaque input: this service never computes KYC or fraud verdicts.
    """
    __tablename__ = "user_eligibility"
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    kyc_status: Mapped[str] = mapped_column(String(16), nullable=False, default="none")  # none|pending|approved|rejected
    kyc_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    withdrawals_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fraud_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
