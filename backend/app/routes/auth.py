from __future__ import annotations
import structlog
from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from app.auth_deps import get_current_user
from app.db import get_session
from app.models.user import User
from app.schemas.auth import RegisterRequest, LoginRequest, UserPublic, TokenPair
from app.security import hash_password, verify_password, make_access_token, make_refresh_token, decode_token, subject_id

log = structlog.get_logger()

router = APIRouter(prefix="/auth", tags=["auth"])

def _tokens(user_id) -> TokenPair:
    return TokenPair(access=make_access_token(str(user_id)), refresh=make_refresh_token(str(user_id)))

@router.post("/register", status_code=201, response_model=UserPublic)
async def register(payload: RegisterRequest, session: AsyncSession = Depends(get_session)):
    # emails are stored lowercased; lookups and the unique index both see one spelling
    email = payload.email.lower()
    if await session.scalar(select(User.id).where(User.email == email)):
        raise HTTPException(status_code=409, detail="Email already registered")
    user = User(email=email, password_hash=hash_password(payload.password))
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(status_code=409, detail="Email already registered")
    await session.refresh(user)
    log.info("user_registered", user_id=str(user.id))
    return UserPublic.model_validate(user)

@router.post("/login", response_model=TokenPair)
async def login(payload: LoginRequest, session: AsyncSession = Depends(get_session)):
    user = await session.scalar(select(User).where(User.email == payload.email.lower()))
    if not user or not verify_password(payload.password, user.password_hash):
        log.info("login_failed")
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _tokens(user.id)

@router.post("/refresh", response_model=TokenPair)
async def refresh(authorization: str | None = Header(None), session: AsyncSession = Depends(get_session)):
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing refresh token")
    try:
        data = decode_token(authorization.split(" ", 1)[1])
        user_id = subject_id(data)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")
    if data.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Wrong token type")
    # a deleted account cannot keep minting access tokens
    if not await session.get(User, user_id):
        raise HTTPException(status_code=401, detail="User not found")
    return _tokens(user_id)

@router.get("/me", response_model=UserPublic)
async def me(user: User = Depends(get_current_user)):
    return UserPublic.model_validate(user)
