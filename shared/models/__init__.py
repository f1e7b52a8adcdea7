"""SQLAlchemy models."""

from shared.models.base import Base
from shared.models.file import File, FileStatus
from shared.models.note import Note, NoteStatus
from shared.models.task import Task, TaskStatus, TaskType
from shared.models.user import User, UserRole

__all__ = [
    "Base",
    "File",
    "FileStatus",
    "Note",
    "NoteStatus",
    "Task",
    "TaskStatus",
    "TaskType",
    "User",
    "UserRole",
]
