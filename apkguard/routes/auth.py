from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apkguard.config import get_settings
from apkguard.database import get_db
from apkguard.middleware.auth import create_access_token, get_current_user
from apkguard.middleware.rate_limit import limiter
from apkguard.models.user import User
from apkguard.utils.logger import get_logger

router = APIRouter()
logger = get_logger("auth")


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    name: Optional[str] = Field(None, max_length=100)


class TokenRequest(BaseModel):
    email: EmailStr
    password: str


def _user_data(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }


@router.post("/register")
@limiter.limit("10/hour")  # Account creation spam
async def register_user(
    request: Request,
    user_data: UserCreate,
    db: AsyncSession = Depends(get_db),
):
    """
    Register a new user and get an API key

    Returns:
        - API key for authentication (save this securely!)
    """
    result = await db.execute(select(User).where(User.email == user_data.email))
    if result.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User.create_user(email=user_data.email, password=user_data.password, name=user_data.name)
    # Plaintext key only exists on the freshly created instance
    plaintext_api_key = user._plaintext_api_key

    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info("auth.registered", extra={"user_id": str(user.id)})

    return {
        "success": True,
        "data": {
            **_user_data(user),
            "apiKey": plaintext_api_key,
            "warning": "Save this API key - it won't be shown again!",
        },
    }


@router.post("/token")
@limiter.limit("20/hour")
async def issue_token(
    request: Request,
    credentials: TokenRequest,
    db: AsyncSession = Depends(get_db),
):
    """Exchange email and password for a bearer token"""
    result = await db.execute(select(User).where(User.email == credentials.email))
    user = result.scalar_one_or_none()
    if user is None or not user.check_password(credentials.password):
        raise HTTPException(
            status_code=401,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=403, detail="User account is disabled")

    user.last_login = datetime.now(timezone.utc)
    await db.commit()

    expires_minutes = get_settings().jwt_expires_minutes
    return {
        "success": True,
        "data": {
            "accessToken": create_access_token(user, expires_minutes),
            "tokenType": "bearer",
            "expiresIn": expires_minutes * 60,
        },
    }


@router.get("/me")
async def get_me(current_user: User = Depends(get_current_user)):
    return {"success": True, "data": _user_data(current_user)}
