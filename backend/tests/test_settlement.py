from __future__ import annotations
from datetime import timedelta
import pytest
from sqlalchemy import select
from app.db import SessionLocal
from app.errors import SettlementFailed, SettlementLocked, StateConflict, ServiceUnavailable
from app.models.match import Match, Escrow
from app.models.ops import Alert
from app.models.settlement import SettlementAttempt, SettlementLock
from app.services import settlement
from app.services.controls import PlatformControls, SETTLEMENT_ENABLED
from app.services.time_windows import utcnow, as_utc
from conftest import completed_match, balance, reconcile


def _boom(*args, **kwargs):
    raise RuntimeError("payout engine exploded")


async def _attempts(match_id):
    async with SessionLocal() as s:
        return list((await s.execute(
            select(SettlementAttempt).where(SettlementAttempt.match_id == match_id).order_by(SettlementAttempt.attempt_number)
        )).scalars().all())


@pytest.mark.asyncio
async def test_settle_match_pays_and_releases(ac):
    match_id, players = await completed_match(ac, scores=(10, 40))
    out = await settlement.settle_match(match_id, triggered_by="test", controls=PlatformControls())
    assert out["status"] == "settled"
    assert out["net_pot_cents"] == 950
    assert await balance(players[1][1]) == (500 + 950, 0)
    assert (await reconcile(players[1][1]))["consistent"] is True

    attempts = await _attempts(match_id)
    assert [(a.attempt_number, a.status, a.triggered_by) for a in attempts] == [(1, "success", "test")]
    async with SessionLocal() as s:
        assert await s.get(SettlementLock, match_id) is None


@pytest.mark.asyncio
async def test_failure_records_attempt_with_linear_backoff(ac, monkeypatch):
    match_id, players = await completed_match(ac)
    monkeypatch.setattr(settlement, "calculate_payouts", _boom)

    before = utcnow()
    with pytest.raises(SettlementFailed) as ei:
        await settlement.settle_match(match_id, triggered_by="test", controls=PlatformControls())
    assert ei.value.extra["attempt"] == 1
    assert ei.value.extra["terminal"] is False
    assert "payout engine exploded" in ei.value.reason

    with pytest.raises(SettlementFailed):
        await settlement.settle_match(match_id, triggered_by="test", controls=PlatformControls())

    first, second = await _attempts(match_id)
    assert first.status == second.status == "failed"
    assert "RuntimeError" in first.error_message
    assert as_utc(first.next_retry_at) >= before + timedelta(seconds=60)
    assert as_utc(second.next_retry_at) >= before + timedelta(seconds=120)

    # nothing moved and the lock is gone
    async with SessionLocal() as s:
        assert (await s.get(Escrow, match_id)).status == "pending"
        assert await s.get(SettlementLock, match_id) is None
    assert await balance(players[0][1]) == (500, 0)


@pytest.mark.asyncio
async def test_fifth_failure_is_terminal_and_alerts(ac, monkeypatch):
    match_id, _ = await completed_match(ac)
    monkeypatch.setattr(settlement, "calculate_payouts", _boom)

    for n in range(1, 6):
        with pytest.raises(SettlementFailed) as ei:
            await settlement.settle_match(match_id, triggered_by="test", controls=PlatformControls())
        assert ei.value.extra["attempt"] == n
    assert ei.value.extra["terminal"] is True
    assert ei.value.extra["next_retry_at"] is None

    async with SessionLocal() as s:
        m = await s.get(Match, match_id)
        assert m.settlement_failed is True
        alerts = (await s.execute(select(Alert).where(Alert.type == "settlement_failure"))).scalars().all()
    assert len(alerts) == 1
    assert alerts[0].severity == "critical"
    assert alerts[0].message == f"Settlement failed after 5 attempts for match {match_id}"

    monkeypatch.undo()
    with pytest.raises(StateConflict):
        await settlement.settle_match(match_id, triggered_by="test", controls=PlatformControls())


@pytest.mark.asyncio
async def test_held_lock_refuses_second_settler(ac):
    match_id, _ = await completed_match(ac)
    assert await settlement.acquire_settlement_lock(match_id, "someone-else") is True

    with pytest.raises(SettlementLocked):
        await settlement.settle_match(match_id, triggered_by="test", controls=PlatformControls())
    assert await _attempts(match_id) == []

    await settlement.release_settlement_lock(match_id, "someone-else")
    out = await settlement.settle_match(match_id, triggered_by="test", controls=PlatformControls())
    assert out["status"] == "settled"


@pytest.mark.asyncio
async def test_expired_lock_is_taken_over(ac):
    match_id, _ = await completed_match(ac)
    stale = utcnow() - timedelta(minutes=10)
    assert await settlement.acquire_settlement_lock(match_id, "crashed-worker", now=stale, ttl_seconds=60) is True

    out = await settlement.settle_match(match_id, triggered_by="test", controls=PlatformControls())
    assert out["status"] == "settled"


@pytest.mark.asyncio
async def test_lock_refresh_and_sweep(ac):
    match_id, _ = await completed_match(ac)
    assert await settlement.acquire_settlement_lock(match_id, "a") is True
    assert await settlement.acquire_settlement_lock(match_id, "b") is False
    assert await settlement.refresh_settlement_lock(match_id, "a") is True
    assert await settlement.refresh_settlement_lock(match_id, "b") is False

    assert await settlement.sweep_expired_locks() == 0
    assert await settlement.sweep_expired_locks(now=utcnow() + timedelta(hours=1)) == 1
    assert await settlement.acquire_settlement_lock(match_id, "b") is True


@pytest.mark.asyncio
async def test_double_settle_pays_once(ac):
    match_id, players = await completed_match(ac, scores=(99, 1))
    first = await settlement.settle_match(match_id, triggered_by="a", controls=PlatformControls())
    second = await settlement.settle_match(match_id, triggered_by="b", controls=PlatformControls())
    assert first["status"] == "settled"
    assert second["status"] == "already_settled"
    assert await balance(players[0][1]) == (500 + 950, 0)


@pytest.mark.asyncio
async def test_kill_switch_blocks_settlement(ac):
    match_id, _ = await completed_match(ac)
    controls = PlatformControls()
    await controls.set(SETTLEMENT_ENABLED, enabled=False)
    with pytest.raises(ServiceUnavailable):
        await settlement.settle_match(match_id, triggered_by="test", controls=controls)
    assert await _attempts(match_id) == []


@pytest.mark.asyncio
async def test_settled_match_reports_success_with_kill_switch_off(ac):
    match_id, players = await completed_match(ac, scores=(5, 50))
    await settlement.settle_match(match_id, triggered_by="test", controls=PlatformControls())

    controls = PlatformControls()
    await controls.set(SETTLEMENT_ENABLED, enabled=False)
    out = await settlement.settle_match(match_id, triggered_by="test", controls=controls)
    assert out["status"] == "already_settled"
    assert await balance(players[1][1]) == (500 + 950, 0)


@pytest.mark.asyncio
async def test_lost_lock_is_not_counted_as_failure(ac, monkeypatch):
    match_id, players = await completed_match(ac, scores=(50, 5))

    async def _lost(*args, **kwargs):
        return False

    monkeypatch.setattr(settlement, "refresh_settlement_lock", _lost)
    for _ in range(6):
        with pytest.raises(SettlementLocked):
            await settlement.settle_match(match_id, triggered_by="test", controls=PlatformControls())

    attempts = await _attempts(match_id)
    assert [a.status for a in attempts] == ["abandoned"] * 6
    assert all(a.next_retry_at is None for a in attempts)
    async with SessionLocal() as s:
        assert (await s.get(Match, match_id)).settlement_failed is False
        assert (await s.execute(select(Alert).where(Alert.type == "settlement_failure"))).scalars().all() == []

    monkeypatch.undo()
    out = await settlement.settle_match(match_id, triggered_by="test", controls=PlatformControls())
    assert out["status"] == "settled"
    assert out["attempt"] == 7
    assert await balance(players[0][1]) == (500 + 950, 0)
