from __future__ import annotations
from datetime import timedelta
import pytest
from sqlalchemy import select, func, update
from app.db import SessionLocal
from app.jobs.auto_settlement import run_auto_settlement
from app.models.match import Escrow, Match, MatchPlayer
from app.models.settlement import SettlementAttempt
from app.models.wallet import LedgerEntry
from app.services import settlement
from app.services.controls import PlatformControls, SETTLEMENT_ENABLED
from app.services.time_windows import utcnow
from conftest import completed_match, balance, register_login, CRON_SECRET


async def _count(model) -> int:
    async with SessionLocal() as s:
        return int(await s.scalar(select(func.count()).select_from(model)))


@pytest.mark.asyncio
async def test_disabled_job_does_nothing(ac):
    await completed_match(ac)
    controls = PlatformControls()
    await controls.set(SETTLEMENT_ENABLED, enabled=False)
    entries = await _count(LedgerEntry)

    out = await run_auto_settlement(controls=controls)
    assert out == {"message": "Settlement disabled by kill switch", "processed": 0}
    assert await _count(LedgerEntry) == entries
    assert await _count(SettlementAttempt) == 0


@pytest.mark.asyncio
async def test_no_due_matches(ac):
    out = await run_auto_settlement()
    assert out["processed"] == 0
    assert out["message"] == "No matches need settlement"


@pytest.mark.asyncio
async def test_settles_pending_matches(ac):
    m1, p1 = await completed_match(ac, scores=(5, 9))
    m2, p2 = await completed_match(ac, scores=(7, 3))

    out = await run_auto_settlement()
    assert out["processed"] == 2
    assert out["succeeded"] == 2 and out["failed"] == 0 and out["locked"] == 0
    assert {d["match_id"] for d in out["details"]} == {str(m1), str(m2)}
    assert all(d["status"] == "success" and d["payouts"] == 1 for d in out["details"])
    assert await balance(p1[1][1]) == (500 + 950, 0)
    assert await balance(p2[0][1]) == (500 + 950, 0)

    again = await run_auto_settlement()
    assert again["processed"] == 0


@pytest.mark.asyncio
async def test_fully_scored_active_match_is_completed_and_settled(ac):
    match_id, players = await completed_match(ac, scores=(12, 8))
    # both scores recorded but the completion step never ran
    async with SessionLocal() as s:
        await s.execute(update(Match).where(Match.id == match_id).values(status="active", completed_at=None))
        await s.commit()

    out = await run_auto_settlement()
    assert out["succeeded"] == 1
    assert out["details"][0]["match_id"] == str(match_id)
    async with SessionLocal() as s:
        m = await s.get(Match, match_id)
        assert m.status == "completed" and m.completed_at is not None
        assert (await s.get(Escrow, match_id)).status == "released"
    assert await balance(players[0][1]) == (500 + 950, 0)


@pytest.mark.asyncio
async def test_match_still_waiting_on_scores_is_left_active(ac):
    match_id, _ = await completed_match(ac)
    async with SessionLocal() as s:
        await s.execute(update(Match).where(Match.id == match_id).values(status="active", completed_at=None))
        await s.execute(update(MatchPlayer).where(MatchPlayer.match_id == match_id, MatchPlayer.score == 20).values(score=None))
        await s.commit()

    assert (await run_auto_settlement())["processed"] == 0
    async with SessionLocal() as s:
        assert (await s.get(Match, match_id)).status == "active"


@pytest.mark.asyncio
async def test_locked_match_reported_and_left_alone(ac):
    match_id, _ = await completed_match(ac)
    await settlement.acquire_settlement_lock(match_id, "manual:someone")

    out = await run_auto_settlement()
    assert out["locked"] == 1
    assert out["details"][0]["status"] == "locked"
    async with SessionLocal() as s:
        assert (await s.get(Escrow, match_id)).status == "pending"


@pytest.mark.asyncio
async def test_failed_match_waits_out_backoff(ac, monkeypatch):
    match_id, _ = await completed_match(ac)

    def boom(*args, **kwargs):
        raise RuntimeError("transient")

    monkeypatch.setattr(settlement, "calculate_payouts", boom)
    out = await run_auto_settlement()
    assert out["failed"] == 1
    detail = out["details"][0]
    assert detail["status"] == "failed" and detail["attempt"] == 1 and detail["terminal"] is False

    # next_retry_at is in the future, so the next run skips it
    monkeypatch.undo()
    assert (await run_auto_settlement())["processed"] == 0

    async with SessionLocal() as s:
        attempt = await s.scalar(select(SettlementAttempt).where(SettlementAttempt.match_id == match_id))
        attempt.next_retry_at = utcnow() - timedelta(seconds=1)
        await s.commit()
    out = await run_auto_settlement()
    assert out["succeeded"] == 1
    assert out["details"][0]["match_id"] == str(match_id)


@pytest.mark.asyncio
async def test_job_sweeps_orphaned_locks(ac):
    match_id, _ = await completed_match(ac)
    await settlement.acquire_settlement_lock(match_id, "dead-worker", now=utcnow() - timedelta(hours=1), ttl_seconds=60)
    out = await run_auto_settlement()
    assert out["locks_swept"] == 1
    assert out["succeeded"] == 1


@pytest.mark.asyncio
async def test_cron_endpoint_auth(ac):
    await completed_match(ac)
    r = await ac.post("/admin/jobs/auto-settlement")
    assert r.status_code == 401
    r = await ac.post("/admin/jobs/auto-settlement", headers={"X-Cron-Secret": "wrong"})
    assert r.status_code == 401

    user, _ = await register_login(ac)
    r = await ac.post("/admin/jobs/auto-settlement", headers=user)
    assert r.status_code == 403

    r = await ac.post("/admin/jobs/auto-settlement", headers={"X-Cron-Secret": CRON_SECRET})
    assert r.status_code == 200
    assert r.json()["succeeded"] == 1

    admin, _ = await register_login(ac, admin=True)
    r = await ac.post("/admin/jobs/auto-settlement", headers=admin)
    assert r.status_code == 200
    assert r.json()["processed"] == 0


@pytest.mark.asyncio
async def test_admin_lock_sweep_endpoint(ac):
    match_id, _ = await completed_match(ac)
    await settlement.acquire_settlement_lock(match_id, "dead", now=utcnow() - timedelta(hours=1), ttl_seconds=60)
    admin, _ = await register_login(ac, admin=True)
    r = await ac.post("/admin/settlement-locks/sweep", headers=admin)
    assert r.status_code == 200
    assert r.json() == {"swept": 1}
