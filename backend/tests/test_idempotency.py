from __future__ import annotations
import uuid
import pytest
from sqlalchemy import select, func
from app.db import SessionLocal
from app.errors import RateLimited, InternalError, ValidationError
from app.models.idempotency import IdempotencyRecord
from app.models.user import User
from app.services.idempotency import run_idempotent, require_idempotency_key


async def _user_id() -> uuid.UUID:
    async with SessionLocal() as s:
        u = User(email=f"i-{uuid.uuid4().hex[:8]}@example.com", password_hash="x")
        s.add(u)
        await s.commit()
        return u.id


async def _records() -> int:
    async with SessionLocal() as s:
        return int(await s.scalar(select(func.count()).select_from(IdempotencyRecord)))


@pytest.mark.asyncio
async def test_handler_runs_once_per_key(db):
    uid = await _user_id()
    calls = []

    async def handler():
        calls.append(1)
        return 201, {"n": len(calls)}

    async with SessionLocal() as s:
        first = await run_idempotent(s, key="k1", user_id=uid, route="r", handler=handler)
    async with SessionLocal() as s:
        second = await run_idempotent(s, key="k1", user_id=uid, route="r", handler=handler)

    assert (first.status_code, first.body, first.replayed) == (201, {"n": 1}, False)
    assert (second.status_code, second.body, second.replayed) == (201, {"n": 1}, True)
    assert len(calls) == 1
    assert second.response().headers["Idempotent-Replayed"] == "true"
    assert "Idempotent-Replayed" not in first.response().headers


@pytest.mark.asyncio
async def test_key_scoped_by_user_and_route(db):
    a, b = await _user_id(), await _user_id()

    async def handler():
        return 200, {"ok": True}

    async with SessionLocal() as s:
        assert (await run_idempotent(s, key="same", user_id=a, route="r1", handler=handler)).replayed is False
        assert (await run_idempotent(s, key="same", user_id=b, route="r1", handler=handler)).replayed is False
        assert (await run_idempotent(s, key="same", user_id=a, route="r2", handler=handler)).replayed is False
    assert await _records() == 3


@pytest.mark.asyncio
async def test_client_errors_are_stored_and_replayed(db):
    uid = await _user_id()

    async def refused():
        raise RateLimited("slow down")

    async with SessionLocal() as s:
        out = await run_idempotent(s, key="k", user_id=uid, route="r", handler=refused)
    assert out.status_code == 429
    assert out.body == {"detail": "slow down", "code": "rate_limited"}

    async def would_succeed():
        return 201, {}

    async with SessionLocal() as s:
        again = await run_idempotent(s, key="k", user_id=uid, route="r", handler=would_succeed)
    assert again.replayed is True and again.status_code == 429


@pytest.mark.asyncio
async def test_server_errors_not_stored(db):
    uid = await _user_id()

    async def broken():
        raise InternalError("db went away")

    async with SessionLocal() as s:
        with pytest.raises(InternalError):
            await run_idempotent(s, key="k", user_id=uid, route="r", handler=broken)
    assert await _records() == 0


@pytest.mark.asyncio
async def test_refused_handler_writes_are_rolled_back(db):
    uid = await _user_id()

    async def half_done():
        s.add(User(email=f"ghost-{uuid.uuid4().hex[:6]}@example.com", password_hash="x"))
        await s.flush()
        raise ValidationError("nope")

    async with SessionLocal() as s:
        out = await run_idempotent(s, key="k", user_id=uid, route="r", handler=half_done)
    assert out.status_code == 400
    async with SessionLocal() as s:
        ghosts = await s.scalar(select(func.count()).select_from(User).where(User.email.like("ghost-%")))
    assert ghosts == 0


@pytest.mark.asyncio
async def test_header_dependency():
    assert await require_idempotency_key("  abc ") == "abc"
    for bad in (None, "", "   ", "x" * 256):
        with pytest.raises(ValidationError):
            await require_idempotency_key(bad)
