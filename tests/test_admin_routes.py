"""Tests for the admin reporting endpoints."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from shared.models.file import FileStatus
from shared.models.task import TaskStatus
from shared.models.user import UserRole
from shared.retention import today_utc
from tests.conftest import (
    make_execute_side_effect,
    mapping_result,
    rows_result,
    scalar_result,
    scalars_result,
)

FILE_STATS = {
    "totalFiles": 3,
    "processedFiles": 1,
    "failedFiles": 1,
    "pendingFiles": 1,
    "totalSizeBytes": 6144,
}


@pytest.fixture
def admin_headers(make_user, auth_headers):
    return auth_headers(make_user(email="admin@clearnotes.app", role=UserRole.ADMIN))


class TestAccess:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/admin/dashboard", "/api/admin/notes", "/api/admin/stats"])
    async def test_regular_user_forbidden(self, client, make_user, auth_headers, path):
        resp = await client.get(path, headers=auth_headers(make_user()))
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Admin access required"

    @pytest.mark.asyncio
    async def test_anonymous_unauthorized(self, client):
        resp = await client.get("/api/admin/dashboard")
        assert resp.status_code == 401


class TestDashboard:
    @pytest.mark.asyncio
    async def test_files_with_owner_and_stats(
        self, client, mock_db_session, make_file, make_note, admin_headers
    ):
        owned = make_file(user_id=uuid.uuid4(), status=FileStatus.PROCESSED)
        anonymous = make_file(status=FileStatus.FAILED)
        note = make_note(file_id=owned.id, user_id=owned.user_id)
        mock_db_session.execute = AsyncMock(
            side_effect=make_execute_side_effect(
                scalar_result(2),
                rows_result([
                    (owned, "doc@clearnotes.app", TaskStatus.COMPLETED, None),
                    (anonymous, None, TaskStatus.FAILED, "decoder crashed"),
                ]),
                scalars_result([note]),
                mapping_result(FILE_STATS),
            )
        )

        resp = await client.get("/api/admin/dashboard", headers=admin_headers)

        assert resp.status_code == 200
        body = resp.json()
        assert body["stats"] == FILE_STATS
        assert body["pagination"] == {"page": 1, "limit": 20, "total": 2, "pages": 1}
        first, second = body["files"]
        assert first["userEmail"] == "doc@clearnotes.app"
        assert first["notes"][0]["type"] == "soap"
        assert second["userEmail"] is None
        assert second["taskStatus"] == "failed"
        assert second["errorMessage"] == "decoder crashed"


class TestNotesListing:
    @pytest.mark.asyncio
    async def test_lists_notes_with_file_and_user(
        self, client, mock_db_session, make_file, make_note, admin_headers
    ):
        file = make_file()
        note = make_note(file_id=file.id)
        mock_db_session.execute = AsyncMock(
            side_effect=make_execute_side_effect(
                scalar_result(1),
                rows_result([(note, file, None)]),
            )
        )

        resp = await client.get("/api/admin/notes?noteType=soap", headers=admin_headers)

        assert resp.status_code == 200
        (item,) = resp.json()["notes"]
        assert item["id"] == str(note.id)
        assert item["status"] == "generated"
        assert item["retentionDate"] == "2026-03-18"
        assert item["file"]["originalName"] == "visit.mp3"
        assert item["user"] == {"id": None, "email": None}


class TestDownloadAll:
    @pytest.mark.asyncio
    async def test_bulk_export(self, client, mock_db_session, make_note, admin_headers):
        first = make_note(note_type="soap")
        second = make_note(note_type="general", content="Plain summary")
        mock_db_session.execute = AsyncMock(
            return_value=rows_result([
                (first, "visit.mp3", "doc@clearnotes.app"),
                (second, "call.m4a", None),
            ])
        )

        resp = await client.get("/api/admin/download-all", headers=admin_headers)

        assert resp.status_code == 200
        assert resp.headers["content-disposition"] == (
            f'attachment; filename="admin_notes_{today_utc():%Y-%m-%d}.txt"'
        )
        assert "=== 2026-03-04_soap_visit.txt ===\nUser: doc@clearnotes.app\n" in resp.text
        assert "=== 2026-03-04_general_call.txt ===\nUser: Anonymous\n" in resp.text
        assert "Plain summary" in resp.text

    @pytest.mark.asyncio
    async def test_nothing_to_export(self, client, admin_headers):
        resp = await client.get("/api/admin/download-all?noteType=soap", headers=admin_headers)
        assert resp.status_code == 404
        assert resp.json()["detail"] == "No notes found for the specified criteria"


class TestRetention:
    @pytest.mark.asyncio
    async def test_update_retention(self, client, mock_db_session, admin_headers):
        note_id = uuid.uuid4()
        mock_db_session.execute = AsyncMock(return_value=scalar_result(note_id))

        resp = await client.put(
            f"/api/admin/notes/{note_id}/retention",
            json={"retentionDays": 30},
            headers=admin_headers,
        )

        assert resp.status_code == 200
        assert resp.json() == {"message": "Retention period updated successfully"}
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_missing_note(self, client, admin_headers):
        resp = await client.put(
            f"/api/admin/notes/{uuid.uuid4()}/retention",
            json={"retentionDays": 30},
            headers=admin_headers,
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_retention_must_be_positive(self, client, admin_headers):
        resp = await client.put(
            f"/api/admin/notes/{uuid.uuid4()}/retention",
            json={"retentionDays": 0},
            headers=admin_headers,
        )
        assert resp.status_code == 400
        assert resp.json()["errors"][0]["field"] == "retentionDays"

    @pytest.mark.asyncio
    async def test_delete_expired(self, client, mock_db_session, admin_headers):
        mock_db_session.execute = AsyncMock(
            return_value=scalars_result([uuid.uuid4(), uuid.uuid4()])
        )

        resp = await client.delete("/api/admin/notes/expired", headers=admin_headers)

        assert resp.status_code == 200
        assert resp.json() == {"message": "Deleted 2 expired notes", "deletedCount": 2}


class TestStats:
    @pytest.mark.asyncio
    async def test_grouped_counts(self, client, mock_db_session, admin_headers):
        mock_db_session.execute = AsyncMock(
            side_effect=make_execute_side_effect(
                mapping_result(FILE_STATS),
                rows_result([("soap", 3), ("general", 1)]),
                rows_result([(UserRole.ADMIN, 1), (UserRole.USER, 4)]),
                rows_result([(TaskStatus.COMPLETED, 2), (TaskStatus.FAILED, 1)]),
            )
        )

        resp = await client.get("/api/admin/stats", headers=admin_headers)

        assert resp.status_code == 200
        body = resp.json()
        assert body["files"] == FILE_STATS
        assert body["notes"] == {"totalNotes": 4, "byType": {"soap": 3, "general": 1}}
        assert body["users"] == {"totalUsers": 5, "byRole": {"admin": 1, "user": 4}}
        assert body["tasks"] == {"totalTasks": 3, "byStatus": {"completed": 2, "failed": 1}}
        assert "timestamp" in body
