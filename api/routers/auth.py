"""Email/password login and token endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.auth import AuthUser, create_token, hash_password, require_admin, require_auth, verify_password
from api.dependencies import get_redis, get_session_factory
from api.rate_limit import client_key, enforce_rate_limit
from api.serializers import iso
from shared.config import get_settings
from shared.models.user import User, UserRole

logger = structlog.get_logger()

router = APIRouter(prefix="/api/auth", tags=["auth"])


class Credentials(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


def _user_dict(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "role": UserRole(user.role).value,
    }


@router.post("/login")
async def login(
    body: Credentials,
    request: Request,
    redis: aioredis.Redis = Depends(get_redis),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    settings = get_settings()
    await enforce_rate_limit(
        redis,
        "login",
        client_key(request),
        settings.login_rate_limit,
        settings.login_rate_window_seconds,
    )

    async with factory() as session:
        result = await session.execute(select(User).where(User.email == body.email))
        user = result.scalar_one_or_none()
        if user is None or not verify_password(body.password, user.password_hash):
            logger.info("login_rejected", email=body.email)
            raise HTTPException(status_code=401, detail="Invalid credentials")

        user.updated_at = datetime.now(timezone.utc)
        await session.commit()

    logger.info("login_succeeded", user_id=str(user.id))
    return {
        "message": "Login successful",
        "user": _user_dict(user),
        "token": create_token(user),
    }


@router.get("/verify")
async def verify(
    caller: AuthUser = Depends(require_auth),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    """Confirm the token is valid and the user still exists."""
    async with factory() as session:
        result = await session.execute(select(User).where(User.id == caller.user_id))
        user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    return {
        "valid": True,
        "user": {**_user_dict(user), "createdAt": iso(user.created_at)},
    }


@router.post("/change-password")
async def change_password(
    body: Credentials,
    admin: AuthUser = Depends(require_admin),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    """Set a user's password by email."""
    async with factory() as session:
        result = await session.execute(
            update(User)
            .where(User.email == body.email)
            .values(password_hash=hash_password(body.password), updated_at=datetime.now(timezone.utc))
            .returning(User.id)
        )
        user_id = result.scalar_one_or_none()
        if user_id is None:
            raise HTTPException(status_code=404, detail="User not found")
        await session.commit()

    logger.info("password_changed", user_id=str(user_id), by=str(admin.user_id))
    return {"message": "Password updated successfully"}


@router.post("/logout")
async def logout() -> dict:
    # Tokens are stateless; the client discards its copy
    return {"message": "Logout successful"}
