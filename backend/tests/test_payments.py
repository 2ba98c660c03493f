from __future__ import annotations
import uuid
import pytest
import stripe
from app.services.controls import PlatformControls
from app.services.payments import StripeGateway, PayoutOutcomeUnknown, PayoutRejected
from app.services.withdrawals import issue_payout
from conftest import register_login, fund, balance, make_eligible, idem, WEBHOOK_SECRET


def _gateway() -> StripeGateway:
    return StripeGateway(secret_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET, timeout=1)


def _raising(error):
    def create(**params):
        raise error
    return create


def test_payout_passes_withdrawal_idempotency_key(monkeypatch):
    seen = {}

    def create(**params):
        seen.update(params)
        return {"id": "po_123"}

    monkeypatch.setattr(stripe.Payout, "create", create)
    wid = uuid.uuid4()
    assert _gateway().create_payout(withdrawal_id=wid, user_id=uuid.uuid4(), amount_cents=2500, destination={"type": "bank_account"}) == "po_123"
    assert seen["idempotency_key"] == f"withdrawal-{wid}"
    assert seen["amount"] == 2500
    assert seen["metadata"]["destination_type"] == "bank_account"


@pytest.mark.parametrize("error", [
    stripe.APIConnectionError("Read timed out"),
    stripe.APIError("Internal server error", http_status=500),
    stripe.APIError("Bad gateway", http_status=502),
    stripe.RateLimitError("Too many requests", http_status=429),
    stripe.StripeError("No status"),
])
def test_payout_errors_with_unknown_outcome(monkeypatch, error):
    monkeypatch.setattr(stripe.Payout, "create", _raising(error))
    with pytest.raises(PayoutOutcomeUnknown):
        _gateway().create_payout(withdrawal_id=uuid.uuid4(), user_id=uuid.uuid4(), amount_cents=100, destination={})


@pytest.mark.parametrize("error", [
    stripe.InvalidRequestError("Insufficient funds in Stripe account", param="amount", http_status=400),
    stripe.AuthenticationError("Invalid API key", http_status=401),
    stripe.PermissionError("Not allowed", http_status=403),
])
def test_payout_refusals_are_rejections(monkeypatch, error):
    monkeypatch.setattr(stripe.Payout, "create", _raising(error))
    with pytest.raises(PayoutRejected) as ei:
        _gateway().create_payout(withdrawal_id=uuid.uuid4(), user_id=uuid.uuid4(), amount_cents=100, destination={})
    assert str(ei.value) == error.user_message


@pytest.mark.asyncio
async def test_provider_5xx_keeps_funds_locked(ac, monkeypatch):
    headers, uid = await register_login(ac)
    await fund(uid, 20000)
    await make_eligible(uid)
    r = await ac.post("/withdrawals", json={"amount_cents": 5000, "destination": {"type": "bank_account"}}, headers=idem(headers))
    wr = r.json()["withdrawal_request"]
    assert wr["status"] == "approved"

    monkeypatch.setattr(stripe.Payout, "create", _raising(stripe.APIError("Internal server error", http_status=500)))
    out = await issue_payout(uuid.UUID(wr["id"]), gateway=_gateway(), controls=PlatformControls())
    assert out["outcome"] == "unknown"
    assert await balance(uid) == (15000, 5000)

    r = await ac.get(f"/withdrawals/{wr['id']}", headers=headers)
    assert r.json()["status"] == "processing"
    assert r.json()["provider_payout_id"] is None
