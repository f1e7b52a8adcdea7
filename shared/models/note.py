"""Generated note model."""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import Date, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base, enum_column

DEFAULT_RETENTION_DAYS = 14


class NoteStatus(str, enum.Enum):
    GENERATED = "generated"


def default_retention_date() -> date:
    return datetime.now(timezone.utc).date() + timedelta(days=DEFAULT_RETENTION_DAYS)


class Note(Base):
    __tablename__ = "notes"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    file_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("files.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), default=None)
    note_type: Mapped[str] = mapped_column(String(50))
    # JSON-serialized note payload exactly as received
    content: Mapped[str] = mapped_column(Text)
    status: Mapped[NoteStatus] = mapped_column(
        enum_column(NoteStatus), default=NoteStatus.GENERATED
    )
    retention_date: Mapped[date] = mapped_column(
        Date, default=default_retention_date, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
