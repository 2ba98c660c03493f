from __future__ import annotations
import hmac
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import settings
from app.db import get_session
from app.security import decode_token, subject_id
from app.models.user import User

security = HTTPBearer(auto_error=False)

async def _user_from_token(token: str, session: AsyncSession) -> User:
    try:
        data = decode_token(token)
        uid = subject_id(data)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")
    if data.get("type") != "access":
        raise HTTPException(status_code=401, detail="Wrong token type")
    user = await session.get(User, uid)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user

async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    session: AsyncSession = Depends(get_session),
) -> User:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authorization required")
    return await _user_from_token(credentials.credentials, session)

async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user

async def require_cron_or_admin(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    session: AsyncSession = Depends(get_session),
) -> str:
    """Scheduler calls carry the shared secret; operators use their admin token. Returns the actor."""
    if x_cron_secret is not None:
        if not settings.cron_secret or not hmac.compare_digest(x_cron_secret, settings.cron_secret):
            raise HTTPException(status_code=401, detail="Unauthorized")
        return "cron"
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user = await _user_from_token(credentials.credentials, session)
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return str(user.id)
