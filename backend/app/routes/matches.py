from __future__ import annotations
from uuid import UUID
import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth_deps import get_current_user
from app.config import settings
from app.db import get_session
from app.errors import SettlementLocked, SettlementFailed, ServiceUnavailable, Forbidden
from app.models.match import Match
from app.models.user import User
from app.schemas.match import (
    CreateMatchRequest, JoinMatchRequest, SubmitScoreRequest, MatchDetail, MatchPublic, MatchPlayerPublic, EscrowPublic,
)
from app.services import matches as match_svc
from app.services.controls import PlatformControls, get_controls
from app.services.idempotency import require_idempotency_key, run_idempotent
from app.services.settlement import settle_match

log = structlog.get_logger()

router = APIRouter(prefix="/matches", tags=["matches"])

async def _detail(session: AsyncSession, match: Match) -> dict:
    players = await match_svc.match_players(session, match.id)
    escrow = await match_svc.get_escrow(session, match.id)
    return MatchDetail(
        match=MatchPublic.model_validate(match),
        players=[MatchPlayerPublic.model_validate(p) for p in players],
        escrow=EscrowPublic.model_validate(escrow),
    ).model_dump(mode="json")

@router.post("", status_code=201, response_model=MatchDetail)
async def create_match(
    payload: CreateMatchRequest,
    key: str = Depends(require_idempotency_key),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    async def handler():
        m = await match_svc.create_match(
            session,
            creator=user,
            entry_fee_cents=payload.entry_fee_cents,
            max_players=payload.max_players,
            min_players=payload.min_players,
            payout_model=payload.payout_model,
            payout_config=payload.payout_config,
            rake_percent=payload.rake_percent if payload.rake_percent is not None else settings.default_rake_percent,
            is_private=payload.is_private,
        )
        return 201, await _detail(session, m)

    result = await run_idempotent(session, key=key, user_id=user.id, route="matches.create", handler=handler)
    return result.response()

@router.post("/join", response_model=MatchDetail)
async def join_match(
    payload: JoinMatchRequest,
    key: str = Depends(require_idempotency_key),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    async def handler():
        m = await match_svc.find_joinable(session, match_id=payload.match_id, room_code=payload.room_code)
        m, _count = await match_svc.join_match(session, m, user)
        return 200, await _detail(session, m)

    result = await run_idempotent(session, key=key, user_id=user.id, route="matches.join", handler=handler)
    return result.response()

@router.get("/{match_id}", response_model=MatchDetail)
async def get_match(match_id: UUID, session: AsyncSession = Depends(get_session), user: User = Depends(get_current_user)):
    m = await match_svc.get_match(session, match_id)
    return await _detail(session, m)

@router.post("/{match_id}/start", response_model=MatchDetail)
async def start_match(match_id: UUID, session: AsyncSession = Depends(get_session), user: User = Depends(get_current_user)):
    m = await match_svc.get_match(session, match_id, for_update=True)
    m = await match_svc.start_match(session, m, user)
    body = await _detail(session, m)
    await session.commit()
    return body

@router.post("/{match_id}/score")
async def submit_score(
    match_id: UUID,
    payload: SubmitScoreRequest,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    controls: PlatformControls = Depends(get_controls),
):
    # row lock: two last scores landing together must not both miss the completion step
    m = await match_svc.get_match(session, match_id, for_update=True)
    player, all_finished = await match_svc.submit_score(
        session, m, user, score=payload.score, time_taken_ms=payload.time_taken_ms
    )
    body = {"success": True, "player": MatchPlayerPublic.model_validate(player).model_dump(mode="json"), "all_finished": all_finished}
    await session.commit()

    if all_finished:
        # same entry point as /settle and the job; anything short of success is left to the job
        try:
            body["settlement"] = await settle_match(match_id, triggered_by="score_submission", controls=controls)
        except (SettlementLocked, SettlementFailed, ServiceUnavailable) as e:
            log.warning("inline_settlement_deferred", match_id=str(match_id), code=e.code, reason=e.reason)
            body["settlement"] = {"status": "deferred", "code": e.code, "detail": e.reason}
    return body

@router.post("/{match_id}/settle")
async def settle(
    match_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    controls: PlatformControls = Depends(get_controls),
):
    await match_svc.get_match(session, match_id)
    if not user.is_admin:
        players = await match_svc.match_players(session, match_id)
        if not any(p.user_id == user.id for p in players):
            raise Forbidden("Not a player in this match")
    return await settle_match(match_id, triggered_by=f"manual:{user.id}", controls=controls)
