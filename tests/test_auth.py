"""Tests for token signing, password hashing and the auth dependencies."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import HTTPException

from api.auth import (
    JWT_ALGORITHM,
    AuthUser,
    create_token,
    hash_password,
    optional_auth,
    require_admin,
    require_auth,
    verify_password,
)
from shared.models.user import UserRole
from tests.conftest import TEST_JWT_SECRET


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = hash_password("s3cret!")
        assert hashed != "s3cret!"
        assert verify_password("s3cret!", hashed)
        assert not verify_password("wrong", hashed)

    def test_malformed_hash_does_not_verify(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestTokens:
    def test_token_carries_identity(self, make_user):
        user = make_user(email="doc@clearnotes.app", role=UserRole.ADMIN)
        payload = jwt.decode(create_token(user), TEST_JWT_SECRET, algorithms=[JWT_ALGORITHM])
        assert payload["sub"] == str(user.id)
        assert payload["email"] == "doc@clearnotes.app"
        assert payload["role"] == "admin"
        assert payload["exp"] - payload["iat"] == 24 * 3600

    def test_missing_secret(self, make_user, monkeypatch):
        from shared.config import get_settings

        monkeypatch.setenv("JWT_SECRET", "")
        get_settings.cache_clear()
        with pytest.raises(HTTPException) as exc:
            create_token(make_user())
        assert exc.value.status_code == 503


def _signed(**claims) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(uuid.uuid4()),
        "email": "user@clearnotes.app",
        "role": "user",
        "iat": now,
        "exp": now + timedelta(hours=1),
    }
    payload.update(claims)
    return jwt.encode(payload, TEST_JWT_SECRET, algorithm=JWT_ALGORITHM)


class TestRequireAuth:
    @pytest.mark.asyncio
    async def test_valid_token(self, make_user):
        user = make_user()
        auth = await require_auth(f"Bearer {create_token(user)}")
        assert auth.user_id == user.id
        assert auth.role == UserRole.USER
        assert not auth.is_admin

    @pytest.mark.asyncio
    async def test_missing_header(self):
        with pytest.raises(HTTPException) as exc:
            await require_auth(None)
        assert exc.value.status_code == 401
        assert exc.value.detail == "Access token required"

    @pytest.mark.asyncio
    async def test_wrong_scheme(self):
        with pytest.raises(HTTPException) as exc:
            await require_auth("Basic dXNlcjpwYXNz")
        assert exc.value.detail == "Access token required"

    @pytest.mark.asyncio
    async def test_expired_token(self):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        token = _signed(iat=past, exp=past + timedelta(minutes=1))
        with pytest.raises(HTTPException) as exc:
            await require_auth(f"Bearer {token}")
        assert exc.value.status_code == 401
        assert exc.value.detail == "Token expired"

    @pytest.mark.asyncio
    async def test_foreign_signature(self):
        token = jwt.encode({"sub": str(uuid.uuid4())}, "another-secret-of-sufficient-length", algorithm="HS256")
        with pytest.raises(HTTPException) as exc:
            await require_auth(f"Bearer {token}")
        assert exc.value.detail == "Invalid token"

    @pytest.mark.asyncio
    async def test_unknown_role(self):
        with pytest.raises(HTTPException) as exc:
            await require_auth(f"Bearer {_signed(role='superuser')}")
        assert exc.value.detail == "Invalid token"


class TestOptionalAuth:
    @pytest.mark.asyncio
    async def test_anonymous(self):
        assert await optional_auth(None) is None

    @pytest.mark.asyncio
    async def test_bad_token_is_anonymous(self):
        assert await optional_auth("Bearer garbage") is None

    @pytest.mark.asyncio
    async def test_valid_token(self, make_user):
        user = make_user()
        auth = await optional_auth(f"Bearer {create_token(user)}")
        assert auth.user_id == user.id


class TestRequireAdmin:
    @pytest.mark.asyncio
    async def test_admin_passes(self):
        admin = AuthUser(user_id=uuid.uuid4(), email="a@clearnotes.app", role=UserRole.ADMIN)
        assert await require_admin(admin) is admin

    @pytest.mark.asyncio
    async def test_user_rejected(self):
        user = AuthUser(user_id=uuid.uuid4(), email="u@clearnotes.app", role=UserRole.USER)
        with pytest.raises(HTTPException) as exc:
            await require_admin(user)
        assert exc.value.status_code == 403
        assert exc.value.detail == "Admin access required"
