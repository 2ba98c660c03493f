from __future__ import annotations
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth_deps import get_current_user
from app.db import get_session
from app.schemas.wallet import WalletSnapshot, LedgerEntryPublic, CreateDepositRequest, CreateDepositResponse
from app.services import wallet
from app.services.controls import PlatformControls, get_controls
from app.services.deposits import create_deposit_intent
from app.services.idempotency import require_idempotency_key, run_idempotent
from app.services.payments import StripeGateway, get_gateway

router = APIRouter(prefix="/wallet", tags=["wallet"])

@router.get("", response_model=WalletSnapshot)
async def get_wallet(
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    user=Depends(get_current_user),
):
    available, locked = await wallet.get_balance(session, user.id)
    rows = await wallet.ledger_entries(session, user.id, limit=limit)
    return WalletSnapshot(
        available_cents=available,
        locked_cents=locked,
        total_cents=available + locked,
        entries=[LedgerEntryPublic.model_validate(r) for r in rows],
    )

@router.post("/deposits", status_code=201, response_model=CreateDepositResponse,
             responses={200: {"description": "Replayed outcome for a reused Idempotency-Key"}})
async def create_deposit(
    payload: CreateDepositRequest,
    key: str = Depends(require_idempotency_key),
    session: AsyncSession = Depends(get_session),
    user=Depends(get_current_user),
    gateway: StripeGateway = Depends(get_gateway),
    controls: PlatformControls = Depends(get_controls),
):
    user_id = user.id
    result = await run_idempotent(
        session, key=key, user_id=user_id, route="wallet.deposit",
        handler=lambda: create_deposit_intent(
            session, user=user, amount_cents=payload.amount_cents, gateway=gateway, controls=controls
        ),
    )
    return result.response()
