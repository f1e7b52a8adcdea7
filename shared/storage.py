"""Upload storage: allow-list checks, temp staging and the upload directory."""

from __future__ import annotations

import asyncio
import os
import secrets
import shutil
import time
from pathlib import Path
from typing import Protocol

import structlog

logger = structlog.get_logger()

ALLOWED_MIME_TYPES = frozenset({
    "audio/mpeg",
    "audio/mp4",
    "audio/wav",
    "audio/x-m4a",
    "text/plain",
})

ALLOWED_EXTENSIONS = (".mp3", ".m4a", ".wav", ".txt")

# Read size when copying an upload to disk
CHUNK_SIZE = 1024 * 1024


class UploadRejected(ValueError):
    """The upload fails the type/extension allow-list."""


class FileTooLarge(ValueError):
    """The upload exceeds the configured size cap."""

    def __init__(self, limit_bytes: int) -> None:
        super().__init__(f"File size exceeds the limit of {limit_bytes // (1024 * 1024)}MB")
        self.limit_bytes = limit_bytes


class AsyncReadable(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


def validate_upload(original_name: str, content_type: str | None) -> None:
    """Require both an allowed MIME type and an allowed extension."""
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    extension = Path(original_name).suffix.lower()
    if mime not in ALLOWED_MIME_TYPES or extension not in ALLOWED_EXTENSIONS:
        raise UploadRejected(
            f"Invalid file type. Allowed types: {', '.join(ALLOWED_EXTENSIONS)}"
        )


def generate_storage_name(original_name: str) -> str:
    """Collision-resistant storage name that keeps only the extension."""
    extension = Path(original_name).suffix.lower()
    return f"{int(time.time() * 1000)}_{secrets.token_hex(8)}{extension}"


def ensure_dirs(*paths: str | Path) -> None:
    for path in paths:
        Path(path).mkdir(parents=True, exist_ok=True)


async def stage_upload(
    source: AsyncReadable,
    temp_dir: str | Path,
    storage_name: str,
    max_bytes: int,
) -> tuple[Path, int]:
    """Copy an upload into the temp dir, enforcing the size cap while copying.

    Returns the staged path and its size. On any failure the partial file
    is removed before the exception propagates.
    """
    temp_path = Path(temp_dir) / storage_name
    size = 0
    try:
        out = await asyncio.to_thread(open, temp_path, "wb")
        try:
            while True:
                chunk = await source.read(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > max_bytes:
                    raise FileTooLarge(max_bytes)
                await asyncio.to_thread(out.write, chunk)
        finally:
            await asyncio.to_thread(out.close)
    except BaseException:
        await cleanup_file(temp_path)
        raise
    return temp_path, size


async def move_to_uploads(temp_path: Path, upload_dir: str | Path, storage_name: str) -> Path:
    """Move a staged file into the upload directory."""
    destination = Path(upload_dir) / storage_name
    await asyncio.to_thread(shutil.move, str(temp_path), str(destination))
    return destination


async def cleanup_file(path: str | Path | None) -> None:
    """Remove a file if it exists. Failures are logged, not raised."""
    if not path:
        return
    try:
        if os.path.exists(path):
            await asyncio.to_thread(os.remove, path)
            logger.info("file_cleaned_up", path=str(path))
    except OSError as e:
        logger.error("file_cleanup_failed", path=str(path), error=str(e))
