from __future__ import annotations
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
import jwt
from passlib.context import CryptContext
from app.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

JWT_ALG = "HS256"
TOKEN_TYPES = ("access", "refresh")

def hash_password(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)

def _issue(user_id: str, token_type: str) -> str:
    ttl = settings.access_ttl_min if token_type == "access" else settings.refresh_ttl_min
    issued = datetime.now(timezone.utc)
    claims = {
        "iss": settings.app_name,
        "sub": user_id,
        "type": token_type,
        "iat": issued.timestamp(),
        "exp": int((issued + timedelta(minutes=ttl)).timestamp()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=JWT_ALG)

def make_access_token(sub: str) -> str:
    return _issue(sub, "access")

def make_refresh_token(sub: str) -> str:
    return _issue(sub, "refresh")

def decode_token(token: str) -> dict[str, Any]:
    """Signature, expiry and issuer are checked; tokens minted by another service are refused."""
    return jwt.decode(
        token, settings.jwt_secret, algorithms=[JWT_ALG], issuer=settings.app_name,
        options={"require": ["exp", "sub", "iss"]},
    )

def subject_id(data: dict[str, Any]) -> uuid.UUID:
    """The user id carried in `sub`; raises ValueError on anything that is not a UUID."""
    return uuid.UUID(str(data.get("sub")))
