from __future__ import annotations
from uuid import UUID
import structlog
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from app.db import upsert_insert
from app.errors import InsufficientFunds, LedgerInvariantError
from app.models.wallet import WalletBalance, LedgerEntry
from app.services.time_windows import utcnow

log = structlog.get_logger()

# Every mutation below is ONE conditional UPDATE ... RETURNING executed inside the
# caller's transaction. Nothing reads a balance into Python and writes it back.


async def ensure_wallet(session: AsyncSession, user_id: UUID) -> None:
    stmt = upsert_insert(session, WalletBalance).values(
        user_id=user_id, available_cents=0, locked_cents=0, updated_at=utcnow()
    ).on_conflict_do_nothing(index_elements=["user_id"])
    await session.execute(stmt)


async def lock_wallet(session: AsyncSession, user_id: UUID) -> None:
    """Hold the user's balance row until the transaction ends; serializes per-user check-then-insert flows."""
    await ensure_wallet(session, user_id)
    await session.execute(select(WalletBalance.user_id).where(WalletBalance.user_id == user_id).with_for_update())


async def get_balance(session: AsyncSession, user_id: UUID) -> tuple[int, int]:
    """(available_cents, locked_cents); zeros for a user who never deposited."""
    row = (await session.execute(
        select(WalletBalance.available_cents, WalletBalance.locked_cents).where(WalletBalance.user_id == user_id)
    )).one_or_none()
    if row is None:
        return 0, 0
    return int(row[0]), int(row[1])


async def ledger_entries(session: AsyncSession, user_id: UUID, limit: int = 100) -> list[LedgerEntry]:
    return list((await session.execute(
        select(LedgerEntry).where(LedgerEntry.user_id == user_id).order_by(LedgerEntry.created_at.desc()).limit(limit)
    )).scalars().all())


async def ledger_total(session: AsyncSession, user_id: UUID) -> int:
    total = await session.scalar(
        select(func.coalesce(func.sum(LedgerEntry.amount_cents), 0)).where(LedgerEntry.user_id == user_id)
    )
    return int(total or 0)


async def reconcile(session: AsyncSession, user_id: UUID) -> dict:
    available, locked = await get_balance(session, user_id)
    total = await ledger_total(session, user_id)
    return {
        "user_id": str(user_id),
        "available_cents": available,
        "locked_cents": locked,
        "ledger_sum_cents": total,
        "consistent": total == available + locked and available >= 0 and locked >= 0,
    }


def _append(
    session: AsyncSession,
    *,
    user_id: UUID,
    amount_cents: int,
    balance_after_cents: int,
    entry_type: str,
    match_id: UUID | None,
    external_id: str | None,
    note: str | None,
) -> LedgerEntry:
    entry = LedgerEntry(
        user_id=user_id,
        amount_cents=amount_cents,
        balance_after_cents=balance_after_cents,
        type=entry_type,
        match_id=match_id,
        external_id=external_id,
        note=note,
    )
    session.add(entry)
    return entry


async def credit(
    session: AsyncSession,
    *,
    user_id: UUID,
    amount_cents: int,
    entry_type: str,
    match_id: UUID | None = None,
    external_id: str | None = None,
    note: str | None = None,
) -> LedgerEntry:
    """Add to available and append the matching ledger entry. Creates the wallet row on first credit."""
    if amount_cents <= 0:
        raise ValueError("amount_cents must be > 0")
    await ensure_wallet(session, user_id)
    row = (await session.execute(
        update(WalletBalance)
        .where(WalletBalance.user_id == user_id)
        .values(available_cents=WalletBalance.available_cents + amount_cents, updated_at=utcnow())
        .returning(WalletBalance.available_cents, WalletBalance.locked_cents)
        .execution_options(synchronize_session=False)
    )).one()
    entry = _append(
        session, user_id=user_id, amount_cents=int(amount_cents), balance_after_cents=int(row[0]) + int(row[1]),
        entry_type=entry_type, match_id=match_id, external_id=external_id, note=note,
    )
    log.info("wallet_credit", user_id=str(user_id), amount_cents=amount_cents, type=entry_type,
             match_id=str(match_id) if match_id else None)
    return entry


async def debit(
    session: AsyncSession,
    *,
    user_id: UUID,
    amount_cents: int,
    entry_type: str,
    match_id: UUID | None = None,
    external_id: str | None = None,
    note: str | None = None,
) -> LedgerEntry:
    """
    Take from available only if enough is there.
    Raises InsufficientFunds if balance is too low (or the user has no wallet).
    """
    if amount_cents <= 0:
        raise ValueError("amount_cents must be > 0")
    row = (await session.execute(
        update(WalletBalance)
        .where(WalletBalance.user_id == user_id, WalletBalance.available_cents >= amount_cents)
        .values(available_cents=WalletBalance.available_cents - amount_cents, updated_at=utcnow())
        .returning(WalletBalance.available_cents, WalletBalance.locked_cents)
        .execution_options(synchronize_session=False)
    )).one_or_none()
    if row is None:
        available, _locked = await get_balance(session, user_id)
        raise InsufficientFunds(balance=available, required=int(amount_cents))
    entry = _append(
        session, user_id=user_id, amount_cents=-int(amount_cents), balance_after_cents=int(row[0]) + int(row[1]),
        entry_type=entry_type, match_id=match_id, external_id=external_id, note=note,
    )
    log.info("wallet_debit", user_id=str(user_id), amount_cents=amount_cents, type=entry_type,
             match_id=str(match_id) if match_id else None)
    return entry


async def lock_funds(session: AsyncSession, *, user_id: UUID, amount_cents: int) -> tuple[int, int]:
    """available -> locked in one statement. Total balance is unchanged so no ledger entry."""
    if amount_cents <= 0:
        raise ValueError("amount_cents must be > 0")
    row = (await session.execute(
        update(WalletBalance)
        .where(WalletBalance.user_id == user_id, WalletBalance.available_cents >= amount_cents)
        .values(
            available_cents=WalletBalance.available_cents - amount_cents,
            locked_cents=WalletBalance.locked_cents + amount_cents,
            updated_at=utcnow(),
        )
        .returning(WalletBalance.available_cents, WalletBalance.locked_cents)
        .execution_options(synchronize_session=False)
    )).one_or_none()
    if row is None:
        available, _locked = await get_balance(session, user_id)
        raise InsufficientFunds("Insufficient balance", balance=available, required=int(amount_cents))
    log.info("wallet_lock", user_id=str(user_id), amount_cents=amount_cents)
    return int(row[0]), int(row[1])


async def unlock_funds(session: AsyncSession, *, user_id: UUID, amount_cents: int) -> tuple[int, int]:
    """Reverse a withdrawal lock: locked -= amount; available += amount."""
    row = (await session.execute(
        update(WalletBalance)
        .where(WalletBalance.user_id == user_id, WalletBalance.locked_cents >= amount_cents)
        .values(
            available_cents=WalletBalance.available_cents + amount_cents,
            locked_cents=WalletBalance.locked_cents - amount_cents,
            updated_at=utcnow(),
        )
        .returning(WalletBalance.available_cents, WalletBalance.locked_cents)
        .execution_options(synchronize_session=False)
    )).one_or_none()
    if row is None:
        raise LedgerInvariantError(f"locked balance below {amount_cents} for user {user_id}")
    log.info("wallet_unlock", user_id=str(user_id), amount_cents=amount_cents)
    return int(row[0]), int(row[1])


async def settle_locked(
    session: AsyncSession,
    *,
    user_id: UUID,
    amount_cents: int,
    external_id: str,
    note: str | None = None,
) -> LedgerEntry:
    """Locked funds leave the platform: locked -= amount and append the outgoing `withdrawal` entry."""
    row = (await session.execute(
        update(WalletBalance)
        .where(WalletBalance.user_id == user_id, WalletBalance.locked_cents >= amount_cents)
        .values(locked_cents=WalletBalance.locked_cents - amount_cents, updated_at=utcnow())
        .returning(WalletBalance.available_cents, WalletBalance.locked_cents)
        .execution_options(synchronize_session=False)
    )).one_or_none()
    if row is None:
        raise LedgerInvariantError(f"locked balance below {amount_cents} for user {user_id}")
    entry = _append(
        session, user_id=user_id, amount_cents=-int(amount_cents), balance_after_cents=int(row[0]) + int(row[1]),
        entry_type="withdrawal", match_id=None, external_id=external_id, note=note,
    )
    log.info("wallet_withdrawal_settled", user_id=str(user_id), amount_cents=amount_cents, external_id=external_id)
    return entry
