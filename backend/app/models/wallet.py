from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, ForeignKey, UniqueConstraint, CheckConstraint, Uuid, Index
from app.db import Base
from app.services.time_windows import utcnow

LEDGER_TYPES = ("deposit", "withdrawal", "withdrawal_refund", "match_entry", "match_payout")

class WalletBalance(Base):
    """
    Per-user balance. Mutated only through single conditional UPDATE statements
    in app.services.wallet; never read-modify-written from Python.
    available + locked == Σ ledger_entries.amount_cents for the user.
    """
    __tablename__ = "wallet_balances"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), primary_key=True)
    available_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locked_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("available_cents >= 0", name="ck_wallet_available_nonneg"),
        CheckConstraint("locked_cents >= 0", name="ck_wallet_locked_nonneg"),
    )

class LedgerEntry(Base):
    """
    Append-only money log.
    Sign convention:
      - deposit, match_payout, withdrawal_refund => +amount
      - match_entry, withdrawal                 => -amount
    Locking funds for a withdrawal moves available -> locked and writes no entry;
    the outgoing `withdrawal` entry is appended only when the provider confirms.
    """
    __tablename__ = "ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), index=True, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    match_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("matches.id", ondelete="RESTRICT"), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)  # provider intent / withdrawal id
    note: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("external_id", name="uq_ledger_external_id"),
        # one entry fee and one payout per player per match
        UniqueConstraint("user_id", "match_id", "type", name="uq_ledger_match_once"),
        CheckConstraint(
            "(type IN ('deposit','match_payout','withdrawal_refund') AND amount_cents > 0) OR "
            "(type IN ('withdrawal','match_entry') AND amount_cents < 0)",
            name="ck_ledger_amount_sign",
        ),
        Index("ix_ledger_entries_user_created", "user_id", "created_at"),
    )
