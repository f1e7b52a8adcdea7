"""Tests for note retention."""

from __future__ import annotations

import uuid
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.retention import delete_expired_notes, retention_date_for, set_retention
from tests.conftest import scalar_result


def test_retention_date_for():
    assert retention_date_for(14, date(2026, 1, 25)) == date(2026, 2, 8)


@pytest.mark.asyncio
async def test_delete_expired_uses_strict_cutoff(mock_db_session):
    result = MagicMock()
    result.scalars.return_value.all.return_value = [uuid.uuid4(), uuid.uuid4()]
    mock_db_session.execute = AsyncMock(return_value=result)

    deleted = await delete_expired_notes(mock_db_session, today=date(2026, 3, 1))

    assert deleted == 2
    stmt = mock_db_session.execute.call_args[0][0]
    assert "notes.retention_date < " in str(stmt)
    assert list(stmt.compile().params.values()) == [date(2026, 3, 1)]
    mock_db_session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_set_retention_found(mock_db_session):
    note_id = uuid.uuid4()
    mock_db_session.execute = AsyncMock(return_value=scalar_result(note_id))

    assert await set_retention(mock_db_session, note_id, 30, today=date(2026, 3, 1)) is True
    stmt = mock_db_session.execute.call_args[0][0]
    assert stmt.compile().params["retention_date"] == date(2026, 3, 31)


@pytest.mark.asyncio
async def test_set_retention_missing(mock_db_session):
    assert await set_retention(mock_db_session, uuid.uuid4(), 30) is False
