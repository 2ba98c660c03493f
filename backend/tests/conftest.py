from __future__ import annotations
import hashlib, hmac, json, os, pathlib, tempfile, time, uuid
from datetime import timedelta

# must be set before anything under app/ is imported
_DB_PATH = pathlib.Path(tempfile.gettempdir()) / f"cashmatch-test-{os.getpid()}.sqlite3"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["CRON_SECRET"] = "cron-test-secret"
os.environ["JWT_SECRET"] = "test-jwt-secret"

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import update

from app.db import Base, engine, SessionLocal
from app.jobs.queue import get_job_queue
from app.main import app
from app.models.match import MatchPlayer
from app.models.user import User, UserEligibility
from app.services import wallet
from app.services.payments import StripeGateway, PayoutOutcomeUnknown, PayoutRejected, get_gateway
from app.services.time_windows import utcnow

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
CRON_SECRET = os.environ["CRON_SECRET"]


class FakeGateway(StripeGateway):
    """Real webhook verification, scripted provider calls."""

    def __init__(self):
        super().__init__(secret_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET, timeout=1)
        self.payout_mode = "ok"
        self.payout_calls: list[dict] = []
        self.intents: list[str] = []

    def create_payment_intent(self, *, deposit_intent_id, user_id, amount_cents):
        pi = f"pi_{uuid.uuid4().hex[:16]}"
        self.intents.append(pi)
        return pi, f"{pi}_secret"

    def create_payout(self, *, withdrawal_id, user_id, amount_cents, destination):
        self.payout_calls.append({"withdrawal_id": withdrawal_id, "amount_cents": amount_cents})
        if self.payout_mode == "timeout":
            raise PayoutOutcomeUnknown("Request timed out")
        if self.payout_mode == "reject":
            raise PayoutRejected("Insufficient funds in Stripe account")
        # same withdrawal => same payout id, like the provider's idempotency key
        return f"po_{str(withdrawal_id).replace('-', '')[:16]}"


class FakeQueue:
    def __init__(self):
        self.jobs: list[tuple] = []

    def enqueue(self, func, *args, **kwargs):
        self.jobs.append((func.__name__, args))


@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
def gateway():
    gw = FakeGateway()
    app.dependency_overrides[get_gateway] = lambda: gw
    yield gw
    app.dependency_overrides.pop(get_gateway, None)


@pytest.fixture
def queue():
    fq = FakeQueue()
    app.dependency_overrides[get_job_queue] = lambda: fq
    yield fq
    app.dependency_overrides.pop(get_job_queue, None)


@pytest_asyncio.fixture
async def ac(db, gateway, queue):
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client

# ---------- helpers ----------

async def register_login(ac: AsyncClient, *, admin: bool = False) -> tuple[dict, uuid.UUID]:
    email = f"user-{uuid.uuid4().hex[:10]}@example.com"
    r = await ac.post("/auth/register", json={"email": email, "password": "supersecret"})
    assert r.status_code == 201, r.text
    user_id = uuid.UUID(r.json()["id"])
    if admin:
        async with SessionLocal() as s:
            await s.execute(update(User).where(User.id == user_id).values(is_admin=True))
            await s.commit()
    r = await ac.post("/auth/login", json={"email": email, "password": "supersecret"})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access']}"}, user_id


async def fund(user_id: uuid.UUID, cents: int) -> None:
    async with SessionLocal() as s:
        await wallet.credit(s, user_id=user_id, amount_cents=cents, entry_type="deposit",
                            external_id=f"seed_{uuid.uuid4().hex}", note="test seed")
        await s.commit()


async def balance(user_id: uuid.UUID) -> tuple[int, int]:
    async with SessionLocal() as s:
        return await wallet.get_balance(s, user_id)


async def reconcile(user_id: uuid.UUID) -> dict:
    async with SessionLocal() as s:
        return await wallet.reconcile(s, user_id)


async def make_eligible(user_id: uuid.UUID, *, account_age_days: int = 90, kyc_status: str = "approved",
                        fraud_score: int = 0, frozen: bool = False, withdrawals_locked: bool = False) -> None:
    async with SessionLocal() as s:
        await s.execute(update(User).where(User.id == user_id).values(created_at=utcnow() - timedelta(days=account_age_days)))
        s.add(UserEligibility(user_id=user_id, kyc_status=kyc_status, kyc_tier=1, fraud_score=fraud_score,
                              frozen=frozen, withdrawals_locked=withdrawals_locked))
        await s.commit()


async def age_match_joins(user_id: uuid.UUID, hours: int) -> None:
    async with SessionLocal() as s:
        await s.execute(update(MatchPlayer).where(MatchPlayer.user_id == user_id)
                        .values(joined_at=utcnow() - timedelta(hours=hours)))
        await s.commit()


def idem(headers: dict, key: str | None = None) -> dict:
    return {**headers, "Idempotency-Key": key or uuid.uuid4().hex}


def signed(payload: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict]:
    """Body + Stripe-Signature header (t=<ts>,v1=HMAC-SHA256 over "<ts>.<body>")."""
    body = json.dumps(payload).encode()
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{body.decode()}".encode(), hashlib.sha256).hexdigest()
    return body, {"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"}


def stripe_event(event_type: str, obj: dict, event_id: str | None = None) -> dict:
    return {"id": event_id or f"evt_{uuid.uuid4().hex[:16]}", "object": "event", "type": event_type,
            "data": {"object": obj}}


async def completed_match(ac: AsyncClient, *, scores=(30, 20), entry_fee_cents: int = 500, payout_model: str = "winner_take_all"):
    """
    Drive a match to `completed` with settlement switched off, so the escrow is
    still pending when the test takes over. Returns (match_id, [(headers, user_id)]).
    """
    from app.services.controls import PlatformControls, SETTLEMENT_ENABLED
    players = []
    for _ in scores:
        headers, uid = await register_login(ac)
        await fund(uid, entry_fee_cents * 2)
        players.append((headers, uid))
    creator = players[0][0]
    r = await ac.post("/matches", headers=idem(creator), json={
        "entry_fee_cents": entry_fee_cents, "max_players": len(scores), "rake_percent": 5, "payout_model": payout_model,
    })
    assert r.status_code == 201, r.text
    match_id = uuid.UUID(r.json()["match"]["id"])
    for headers, _ in players[1:]:
        r = await ac.post("/matches/join", json={"match_id": str(match_id)}, headers=idem(headers))
        assert r.status_code == 200, r.text
    r = await ac.post(f"/matches/{match_id}/start", headers=creator)
    assert r.status_code == 200, r.text

    controls = PlatformControls()
    await controls.set(SETTLEMENT_ENABLED, enabled=False)
    for (headers, _), score in zip(players, scores):
        r = await ac.post(f"/matches/{match_id}/score", json={"score": score}, headers=headers)
        assert r.status_code == 200, r.text
    assert r.json()["settlement"]["status"] == "deferred"
    await controls.set(SETTLEMENT_ENABLED, enabled=True)
    return match_id, players
