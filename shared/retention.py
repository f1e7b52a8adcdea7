"""Note retention: scheduled deletion of generated note content."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone

import structlog
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.note import Note

logger = structlog.get_logger()


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def retention_date_for(days: int, today: date | None = None) -> date:
    return (today or today_utc()) + timedelta(days=days)


async def delete_expired_notes(session: AsyncSession, today: date | None = None) -> int:
    """Hard-delete notes whose retention date is strictly before ``today``."""
    cutoff = today or today_utc()
    result = await session.execute(
        delete(Note).where(Note.retention_date < cutoff).returning(Note.id)
    )
    deleted = len(result.scalars().all())
    await session.commit()
    logger.info("expired_notes_deleted", count=deleted, cutoff=cutoff.isoformat())
    return deleted


async def set_retention(
    session: AsyncSession,
    note_id: uuid.UUID,
    days: int,
    today: date | None = None,
) -> bool:
    """Push a note's retention date to ``days`` from today. False if missing."""
    result = await session.execute(
        update(Note)
        .where(Note.id == note_id)
        .values(
            retention_date=retention_date_for(days, today),
            updated_at=datetime.now(timezone.utc),
        )
        .returning(Note.id)
    )
    updated = result.scalar_one_or_none()
    await session.commit()
    return updated is not None
