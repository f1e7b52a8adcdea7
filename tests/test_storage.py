"""Tests for upload storage helpers."""

from __future__ import annotations

import asyncio
import io
import re

import pytest

from shared.storage import (
    FileTooLarge,
    UploadRejected,
    cleanup_file,
    generate_storage_name,
    move_to_uploads,
    stage_upload,
    validate_upload,
)


class _Source:
    """Async reader over in-memory bytes, like an UploadFile."""

    def __init__(self, data: bytes):
        self._buf = io.BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        return self._buf.read(size)


class TestValidateUpload:
    @pytest.mark.parametrize(
        "name,mime",
        [
            ("visit.mp3", "audio/mpeg"),
            ("visit.M4A", "audio/x-m4a"),
            ("visit.m4a", "audio/mp4"),
            ("visit.wav", "audio/wav"),
            ("note.txt", "text/plain"),
            ("note.txt", "text/plain; charset=utf-8"),
        ],
    )
    def test_allowed(self, name, mime):
        validate_upload(name, mime)

    @pytest.mark.parametrize(
        "name,mime",
        [
            ("script.sh", "text/plain"),
            ("visit.mp3", "application/octet-stream"),
            ("visit.ogg", "audio/ogg"),
            ("visit", "audio/mpeg"),
            ("visit.mp3", None),
        ],
    )
    def test_rejected(self, name, mime):
        with pytest.raises(UploadRejected):
            validate_upload(name, mime)


class TestStorageName:
    def test_keeps_only_extension(self):
        name = generate_storage_name("../../etc/Patient Visit.MP3")
        assert re.fullmatch(r"\d{13}_[0-9a-f]{16}\.mp3", name)

    def test_unique(self):
        assert generate_storage_name("a.txt") != generate_storage_name("a.txt")


class TestStageUpload:
    @pytest.mark.asyncio
    async def test_stages_bytes(self, tmp_path):
        path, size = await stage_upload(_Source(b"0123456789"), tmp_path, "x.txt", max_bytes=100)
        assert size == 10
        assert path.read_bytes() == b"0123456789"

    @pytest.mark.asyncio
    async def test_exactly_at_limit(self, tmp_path):
        _, size = await stage_upload(_Source(b"a" * 10), tmp_path, "x.txt", max_bytes=10)
        assert size == 10

    @pytest.mark.asyncio
    async def test_oversize_removes_partial_file(self, tmp_path):
        with pytest.raises(FileTooLarge) as exc:
            await stage_upload(_Source(b"a" * 11), tmp_path, "x.txt", max_bytes=10)
        assert exc.value.limit_bytes == 10
        assert not (tmp_path / "x.txt").exists()

    @pytest.mark.asyncio
    async def test_file_io_runs_in_worker_threads(self, tmp_path, monkeypatch):
        offloaded = []
        to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            offloaded.append(getattr(func, "__name__", repr(func)))
            return await to_thread(func, *args, **kwargs)

        monkeypatch.setattr("shared.storage.asyncio.to_thread", recording_to_thread)

        path, _ = await stage_upload(_Source(b"hello"), tmp_path, "x.txt", max_bytes=100)

        assert offloaded == ["open", "write", "close"]
        assert path.read_bytes() == b"hello"

    @pytest.mark.asyncio
    async def test_move_to_uploads(self, tmp_path):
        temp_dir = tmp_path / "temp"
        upload_dir = tmp_path / "uploads"
        temp_dir.mkdir(exist_ok=True)
        upload_dir.mkdir(exist_ok=True)
        staged, _ = await stage_upload(_Source(b"hello"), temp_dir, "x.txt", max_bytes=100)

        moved = await move_to_uploads(staged, upload_dir, "x.txt")

        assert moved == upload_dir / "x.txt"
        assert moved.read_bytes() == b"hello"
        assert not staged.exists()


class TestCleanup:
    @pytest.mark.asyncio
    async def test_removes_file(self, tmp_path):
        target = tmp_path / "gone.txt"
        target.write_text("x")
        await cleanup_file(target)
        assert not target.exists()

    @pytest.mark.asyncio
    async def test_missing_or_empty_path_is_fine(self, tmp_path):
        await cleanup_file(tmp_path / "never-existed.txt")
        await cleanup_file(None)
