from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from app.models.user import User, UserEligibility
from app.services.time_windows import as_utc, utcnow

@dataclass(frozen=True)
class ComplianceFacts:
    kyc_status: str
    kyc_tier: int
    withdrawals_locked: bool
    frozen: bool
    fraud_score: int
    account_created_at: datetime

    @property
    def kyc_approved(self) -> bool:
        return self.kyc_status == "approved"

    def account_age_days(self, now: datetime | None = None) -> float:
        return ((now or utcnow()) - as_utc(self.account_created_at)).total_seconds() / 86400.0


async def compliance_facts(session: AsyncSession, user: User) -> ComplianceFacts:
    """Facts are owned by the Identity/Compliance subsystem; a user with no row has no KYC."""
    row = await session.get(UserEligibility, user.id, populate_existing=True)
    return ComplianceFacts(
        kyc_status=row.kyc_status if row else "none",
        kyc_tier=int(row.kyc_tier) if row else 0,
        withdrawals_locked=bool(row.withdrawals_locked) if row else False,
        frozen=bool(row.frozen) if row else False,
        fraud_score=int(row.fraud_score) if row else 0,
        account_created_at=user.created_at,
    )


async def is_frozen(session: AsyncSession, user: User) -> bool:
    row = await session.get(UserEligibility, user.id, populate_existing=True)
    return bool(row and row.frozen)
