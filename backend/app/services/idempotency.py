from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from uuid import UUID
import structlog
from fastapi import Header
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from app.errors import EngineError, ValidationError
from app.models.idempotency import IdempotencyRecord

log = structlog.get_logger()

Handler = Callable[[], Awaitable[tuple[int, dict[str, Any]]]]


async def require_idempotency_key(idempotency_key: str | None = Header(None, alias="Idempotency-Key")) -> str:
    if not idempotency_key or not idempotency_key.strip():
        raise ValidationError("Idempotency-Key header required")
    key = idempotency_key.strip()
    if len(key) > 255:
        raise ValidationError("Idempotency-Key too long")
    return key


@dataclass(frozen=True)
class GuardedResult:
    status_code: int
    body: dict[str, Any]
    replayed: bool

    def response(self) -> JSONResponse:
        headers = {"Idempotent-Replayed": "true"} if self.replayed else None
        return JSONResponse(status_code=self.status_code, content=self.body, headers=headers)


async def _stored(session: AsyncSession, key: str, user_id: UUID, route: str) -> IdempotencyRecord | None:
    return await session.scalar(
        select(IdempotencyRecord).where(
            IdempotencyRecord.key == key, IdempotencyRecord.user_id == user_id, IdempotencyRecord.route == route
        )
    )


async def run_idempotent(
    session: AsyncSession,
    *,
    key: str,
    user_id: UUID,
    route: str,
    handler: Handler,
) -> GuardedResult:
    """
    Execute `handler` at most once per (key, user, route).

    The handler does its writes on `session` without committing; its outcome and
    the idempotency record are committed together. Engine errors below 500 are
    stored too, so a retry gets the same refusal. 5xx outcomes are re-raised
    unstored and the key stays usable.
    """
    prior = await _stored(session, key, user_id, route)
    if prior is not None:
        log.info("idempotent_replay", route=route, key=key, user_id=str(user_id), status=prior.response_status)
        return GuardedResult(prior.response_status, prior.response_body, True)

    try:
        status_code, body = await handler()
    except EngineError as exc:
        await session.rollback()
        if exc.status_code >= 500:
            raise
        status_code, body = exc.status_code, exc.to_body()

    session.add(IdempotencyRecord(key=key, user_id=user_id, route=route, response_status=status_code, response_body=body))
    try:
        await session.commit()
    except IntegrityError:
        # a concurrent request with the same key committed first; ours is discarded
        await session.rollback()
        prior = await _stored(session, key, user_id, route)
        if prior is None:
            raise
        log.info("idempotent_race_replay", route=route, key=key, user_id=str(user_id))
        return GuardedResult(prior.response_status, prior.response_body, True)
    return GuardedResult(status_code, body, False)
