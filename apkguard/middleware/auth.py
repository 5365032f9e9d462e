from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apkguard.config import get_settings
from apkguard.database import get_db
from apkguard.models.user import User
from apkguard.utils.logger import get_logger

logger = get_logger("auth")

JWT_ALGORITHM = "HS256"


def create_access_token(user: User, expires_minutes: Optional[int] = None) -> str:
    """Issue an HS256 bearer token for the user"""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes or settings.jwt_expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


async def _user_from_api_key(db: AsyncSession, api_key: str) -> Optional[User]:
    # O(1) lookup: query by key prefix, then verify with bcrypt
    result = await db.execute(select(User).where(User.api_key_prefix == User.get_key_prefix(api_key)))
    for candidate in result.scalars().all():
        if candidate.api_key and User.verify_secret(api_key, candidate.api_key):
            return candidate
    return None


async def _user_from_jwt(db: AsyncSession, authorization: str) -> User:
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=401,
            detail="Invalid authorization header format. Expected: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = jwt.decode(parts[1], get_settings().jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=401,
            detail="Token expired. Please sign in again.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("auth.invalid_token", extra={"error": str(e)})
        raise HTTPException(
            status_code=401,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    sub = payload.get("sub")
    user = await db.get(User, int(sub)) if sub and sub.isdigit() else None
    if user is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid token: unknown user",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def get_current_user(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the caller from `Authorization: Bearer <jwt>` or `X-API-Key`.

    Usage:
        @router.get("/endpoint")
        async def protected_endpoint(current_user: User = Depends(get_current_user)):
            # Access current_user.id, current_user.email, etc.
    """
    if authorization:
        user = await _user_from_jwt(db, authorization)
    elif x_api_key:
        user = await _user_from_api_key(db, x_api_key)
        if user is None:
            raise HTTPException(
                status_code=401,
                detail="Invalid API key",
                headers={"WWW-Authenticate": "ApiKey"},
            )
    else:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Provide Authorization Bearer token or X-API-Key header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(status_code=403, detail="User account is disabled")
    return user
