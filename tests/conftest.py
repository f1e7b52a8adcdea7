"""Shared test fixtures for the ClearNotes test suite.

Provides mock database sessions, an in-memory Redis, the job queues on
top of it, model factories and an HTTP client for the API app, so tests
run without Postgres or a Redis server.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import fakeredis.aioredis
import pytest
from httpx import ASGITransport, AsyncClient

from shared.config import get_settings
from shared.models.file import File, FileStatus
from shared.models.note import Note, NoteStatus
from shared.models.task import Task, TaskStatus, TaskType
from shared.models.user import User, UserRole
from shared.queues import create_queues

TEST_JWT_SECRET = "test-secret-key-with-enough-length-for-hs256"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def test_settings(monkeypatch, tmp_path):
    """Point settings at temp dirs with fast timings for every test."""
    monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("UPLOAD_PATH", str(tmp_path / "uploads"))
    monkeypatch.setenv("TEMP_PATH", str(tmp_path / "temp"))
    monkeypatch.setenv("MAKE_WEBHOOK_URL", "")
    monkeypatch.setenv("PROCESSING_STEP_SECONDS", "0")
    monkeypatch.setenv("NOTIFICATION_DELAY_SECONDS", "0")
    (tmp_path / "uploads").mkdir()
    (tmp_path / "temp").mkdir()
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Database mocks
# ---------------------------------------------------------------------------


def empty_result() -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = None
    result.scalars.return_value.all.return_value = []
    result.scalars.return_value.first.return_value = None
    result.one_or_none.return_value = None
    result.all.return_value = []
    return result


def scalar_result(value) -> MagicMock:
    """Result whose single scalar is ``value``."""
    result = empty_result()
    result.scalar_one_or_none.return_value = value
    result.scalar_one.return_value = value
    return result


def scalars_result(values: list) -> MagicMock:
    result = empty_result()
    result.scalars.return_value.all.return_value = values
    result.scalars.return_value.first.return_value = values[0] if values else None
    return result


def rows_result(rows: list) -> MagicMock:
    """Result of a multi-column select: ``all()`` and ``one_or_none()``."""
    result = empty_result()
    result.all.return_value = rows
    result.one_or_none.return_value = rows[0] if rows else None
    return result


def mapping_result(mapping: dict) -> MagicMock:
    result = empty_result()
    result.one.return_value._mapping = mapping
    return result


@pytest.fixture
def mock_db_session():
    """Mock async SQLAlchemy session.

    Supports the patterns used by the routes and the worker:
        session.execute(stmt) -> result
        session.add(obj)
        session.commit() / session.rollback()
    """
    session = AsyncMock()
    session.add = MagicMock()
    session.execute = AsyncMock(return_value=empty_result())
    return session


@pytest.fixture
def mock_session_factory(mock_db_session):
    """Mock async session factory compatible with ``async with factory() as session:``."""

    @asynccontextmanager
    async def _session_ctx():
        yield mock_db_session

    factory = MagicMock(side_effect=lambda: _session_ctx())
    return factory


def make_execute_side_effect(*results):
    """Create an execute side_effect that returns different results per call.

    Usage::

        session.execute = AsyncMock(
            side_effect=make_execute_side_effect(result1, result2)
        )

    Calls beyond the supplied results return an empty result.
    """
    call_idx = 0

    async def _side_effect(stmt, *args, **kwargs):
        nonlocal call_idx
        if call_idx < len(results):
            r = results[call_idx]
            call_idx += 1
            return r
        return empty_result()

    return _side_effect


# ---------------------------------------------------------------------------
# Redis and queues
# ---------------------------------------------------------------------------


@pytest.fixture
async def redis():
    """In-memory Redis with decoded responses, as the queues expect."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def queues(redis):
    return create_queues(redis)


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user():
    """Factory for creating User instances."""

    def _make(
        user_id: uuid.UUID | None = None,
        email: str = "user@clearnotes.app",
        role: UserRole = UserRole.USER,
        password_hash: str = "",
    ) -> User:
        now = datetime.now(timezone.utc)
        return User(
            id=user_id or uuid.uuid4(),
            email=email,
            password_hash=password_hash,
            role=role,
            created_at=now,
            updated_at=now,
        )

    return _make


@pytest.fixture
def make_file():
    """Factory for creating File instances."""

    def _make(
        file_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        status: FileStatus = FileStatus.UPLOADED,
        original_name: str = "visit.mp3",
        file_path: str = "/tmp/uploads/1700000000000_abcd.mp3",
        file_type: str = "audio/mpeg",
    ) -> File:
        now = datetime.now(timezone.utc)
        return File(
            id=file_id or uuid.uuid4(),
            filename="1700000000000_abcd.mp3",
            original_name=original_name,
            file_path=file_path,
            file_size=2048,
            file_type=file_type,
            user_id=user_id,
            status=status,
            created_at=now,
            updated_at=now,
        )

    return _make


@pytest.fixture
def make_task():
    """Factory for creating Task instances."""

    def _make(
        file_id: uuid.UUID | None = None,
        status: TaskStatus = TaskStatus.PENDING,
        attempts: int = 0,
        error_message: str | None = None,
    ) -> Task:
        now = datetime.now(timezone.utc)
        return Task(
            id=uuid.uuid4(),
            file_id=file_id or uuid.uuid4(),
            task_type=TaskType.FILE_PROCESSING,
            status=status,
            priority=1,
            attempts=attempts,
            max_attempts=3,
            error_message=error_message,
            created_at=now,
            updated_at=now,
            processed_at=None,
        )

    return _make


@pytest.fixture
def make_note():
    """Factory for creating Note instances."""

    def _make(
        file_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        note_type: str = "soap",
        content: str = '{"subjective":"Headache","plan":"Rest"}',
        retention_date: date | None = None,
        created_at: datetime | None = None,
    ) -> Note:
        now = created_at or datetime(2026, 3, 4, 9, 30, tzinfo=timezone.utc)
        return Note(
            id=uuid.uuid4(),
            file_id=file_id or uuid.uuid4(),
            user_id=user_id,
            note_type=note_type,
            content=content,
            status=NoteStatus.GENERATED,
            retention_date=retention_date or (now.date() + timedelta(days=14)),
            created_at=now,
            updated_at=now,
        )

    return _make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_dispatcher():
    dispatcher = MagicMock()
    dispatcher.enabled = False
    dispatcher.dispatch = MagicMock(return_value=None)
    return dispatcher


@pytest.fixture
async def client(mock_session_factory, queues, redis, mock_dispatcher):
    """Async client for the API app with its resources overridden.

    ASGITransport does not run startup handlers, so nothing real is opened.
    """
    from api.dependencies import get_dispatcher, get_queues, get_redis, get_session_factory
    from api.main import app

    app.dependency_overrides[get_session_factory] = lambda: mock_session_factory
    app.dependency_overrides[get_queues] = lambda: queues
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_dispatcher] = lambda: mock_dispatcher

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Build an Authorization header for a user."""
    from api.auth import create_token

    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_token(user)}"}

    return _headers
