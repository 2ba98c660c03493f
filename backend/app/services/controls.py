from __future__ import annotations
from uuid import UUID
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from app.config import settings
from app.db import SessionLocal, upsert_insert
from app.models.ops import PlatformControl
from app.services.time_windows import utcnow

log = structlog.get_logger()

DEPOSITS_ENABLED = "deposits_enabled"
WITHDRAWALS_ENABLED = "withdrawals_enabled"
SETTLEMENT_ENABLED = "settlement_enabled"
KILL_SWITCHES = (DEPOSITS_ENABLED, WITHDRAWALS_ENABLED, SETTLEMENT_ENABLED)

MAX_WITHDRAWAL_PER_DAY = "max_withdrawal_per_day_cents"
LIMIT_DEFAULTS = {MAX_WITHDRAWAL_PER_DAY: lambda: settings.max_withdrawal_per_day_cents}


class PlatformControls:
    """
    Kill switches and platform limits backed by the shared store.
    Every call re-reads the row in a short dedicated session, so a flag flipped
    by an operator is seen by all running instances on their next check.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = SessionLocal):
        self._session_factory = session_factory

    async def _row(self, name: str) -> PlatformControl | None:
        async with self._session_factory() as session:
            return await session.scalar(select(PlatformControl).where(PlatformControl.name == name))

    async def is_enabled(self, name: str) -> bool:
        row = await self._row(name)
        return True if row is None else bool(row.enabled)

    async def limit(self, name: str) -> int:
        row = await self._row(name)
        if row is not None and row.value_cents is not None:
            return int(row.value_cents)
        return int(LIMIT_DEFAULTS[name]())

    async def snapshot(self) -> dict:
        async with self._session_factory() as session:
            rows = {r.name: r for r in (await session.execute(select(PlatformControl))).scalars().all()}
        switches = {n: (True if n not in rows else bool(rows[n].enabled)) for n in KILL_SWITCHES}
        limits = {
            n: (int(rows[n].value_cents) if n in rows and rows[n].value_cents is not None else int(f()))
            for n, f in LIMIT_DEFAULTS.items()
        }
        return {"switches": switches, "limits": limits}

    async def set(self, name: str, *, enabled: bool | None = None, value_cents: int | None = None, actor: UUID | None = None) -> None:
        async with self._session_factory() as session:
            stmt = upsert_insert(session, PlatformControl).values(
                name=name,
                enabled=True if enabled is None else enabled,
                value_cents=value_cents,
                updated_by=actor,
                updated_at=utcnow(),
            )
            changes = {"updated_by": actor, "updated_at": utcnow()}
            if enabled is not None:
                changes["enabled"] = enabled
            if value_cents is not None:
                changes["value_cents"] = value_cents
            await session.execute(stmt.on_conflict_do_update(index_elements=["name"], set_=changes))
            await session.commit()
        log.warning("platform_control_changed", control=name, enabled=enabled, value_cents=value_cents, actor=str(actor) if actor else None)


def get_controls() -> PlatformControls:
    return PlatformControls()
