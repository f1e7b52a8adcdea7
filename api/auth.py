"""JWT-based authentication for the API."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from fastapi import Depends, Header, HTTPException

from shared.config import get_settings
from shared.models.user import User, UserRole

JWT_ALGORITHM = "HS256"


@dataclass
class AuthUser:
    """Authenticated caller. Injected by require_auth / optional_auth."""

    user_id: uuid.UUID
    email: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def create_token(user: User) -> str:
    """Sign a time-limited token carrying the user's id, email and role."""
    settings = get_settings()
    if not settings.jwt_secret:
        raise HTTPException(status_code=503, detail="Auth not configured")
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": UserRole(user.role).value,
        "iat": now,
        "exp": now + timedelta(hours=settings.jwt_expires_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def _decode_token(token: str) -> AuthUser:
    """Decode and validate a JWT, returning an AuthUser."""
    settings = get_settings()
    if not settings.jwt_secret:
        raise HTTPException(status_code=503, detail="Auth not configured")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        return AuthUser(
            user_id=uuid.UUID(payload["sub"]),
            email=payload.get("email", ""),
            role=UserRole(payload.get("role", UserRole.USER.value)),
        )
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[7:] or None


async def require_auth(authorization: str | None = Header(None)) -> AuthUser:
    """FastAPI dependency: extract and validate JWT from Authorization header.

    Expects: Authorization: Bearer <jwt>
    """
    token = _bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Access token required")
    return _decode_token(token)


async def optional_auth(authorization: str | None = Header(None)) -> AuthUser | None:
    """Like require_auth, but a missing or bad token means an anonymous caller."""
    token = _bearer_token(authorization)
    if token is None:
        return None
    try:
        return _decode_token(token)
    except HTTPException:
        return None


async def require_admin(user: AuthUser = Depends(require_auth)) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
