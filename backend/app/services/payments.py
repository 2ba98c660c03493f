from __future__ import annotations
import json
from uuid import UUID
import stripe
import structlog
from app.config import settings
from app.errors import ServiceUnavailable, ValidationError

log = structlog.get_logger()


class PayoutOutcomeUnknown(Exception):
    """The provider call timed out or the connection dropped; the payout may or may not exist."""


class PayoutRejected(Exception):
    """The provider explicitly refused the payout."""


class StripeGateway:
    """
    Thin wrapper over the Stripe calls the engine makes.
    Payout and intent creation pass an idempotency key derived from our own row id,
    so re-issuing after an unknown outcome returns the original provider object.
    """

    name = "stripe"

    def __init__(self, secret_key: str | None = None, webhook_secret: str | None = None, timeout: float | None = None):
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.timeout = timeout or settings.provider_timeout_seconds

    def _configure(self) -> None:
        if not self.secret_key:
            raise ServiceUnavailable("Stripe not configured")
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)
        stripe.max_network_retries = 0

    def create_payment_intent(self, *, deposit_intent_id: UUID, user_id: UUID, amount_cents: int) -> tuple[str, str | None]:
        self._configure()
        try:
            pi = stripe.PaymentIntent.create(
                api_key=self.secret_key,
                amount=int(amount_cents),
                currency="usd",
                automatic_payment_methods={"enabled": True},
                metadata={"user_id": str(user_id), "deposit_intent_id": str(deposit_intent_id)},
                idempotency_key=f"deposit-{deposit_intent_id}",
            )
        except stripe.StripeError as e:
            log.error("stripe_payment_intent_failed", deposit_intent_id=str(deposit_intent_id), error=str(e))
            raise ServiceUnavailable("Payment provider unavailable")
        return pi["id"], pi.get("client_secret")

    def create_payout(self, *, withdrawal_id: UUID, user_id: UUID, amount_cents: int, destination: dict) -> str:
        self._configure()
        try:
            payout = stripe.Payout.create(
                api_key=self.secret_key,
                amount=int(amount_cents),
                currency="usd",
                description=f"Withdrawal for user {user_id}",
                metadata={
                    "user_id": str(user_id),
                    "withdrawal_request_id": str(withdrawal_id),
                    "destination_type": str((destination or {}).get("type", "")),
                },
                idempotency_key=f"withdrawal-{withdrawal_id}",
            )
        except (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError) as e:
            log.warning("stripe_payout_outcome_unknown", withdrawal_id=str(withdrawal_id), error=str(e))
            raise PayoutOutcomeUnknown(str(e)) from e
        except stripe.StripeError as e:
            # only a definite 4xx refusal means no payout exists
            if e.http_status is None or e.http_status >= 500:
                log.warning("stripe_payout_outcome_unknown", withdrawal_id=str(withdrawal_id), error=str(e))
                raise PayoutOutcomeUnknown(str(e)) from e
            raise PayoutRejected(e.user_message or str(e)) from e
        return payout["id"]

    def verify_webhook(self, raw_body: bytes, signature: str | None) -> dict:
        """Check the signature over the raw bytes, then hand back the plain JSON payload."""
        if not self.webhook_secret:
            raise ServiceUnavailable("Stripe not configured")
        if not signature:
            raise ValidationError("Missing signature")
        try:
            stripe.Webhook.construct_event(
                payload=raw_body.decode("utf-8"),
                sig_header=signature,
                secret=self.webhook_secret,
            )
        except (stripe.SignatureVerificationError, ValueError) as e:
            log.warning("webhook_signature_rejected", provider=self.name, error=str(e))
            raise ValidationError("Invalid webhook signature")
        return json.loads(raw_body)


def get_gateway() -> StripeGateway:
    return StripeGateway()
