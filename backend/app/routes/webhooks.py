from __future__ import annotations
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession
from app.db import get_session
from app.errors import ValidationError
from app.services.payments import StripeGateway, get_gateway
from app.services.webhooks import process_event

router = APIRouter(tags=["webhooks"])

@router.post("/webhooks/payments/{provider}")
async def payment_webhook(
    provider: str,
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    provider_signature: str | None = Header(None, alias="X-Provider-Signature"),
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
):
    if provider != gateway.name:
        raise ValidationError("Provider not configured")
    # raw bytes: the signature covers the body exactly as sent
    raw = await request.body()
    payload = gateway.verify_webhook(raw, stripe_signature or provider_signature)
    return await process_event(session, provider, payload)

@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
):
    raw = await request.body()
    payload = gateway.verify_webhook(raw, stripe_signature)
    return await process_event(session, gateway.name, payload)
