"""Schemas for the note-generation webhook."""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WebhookPayload(BaseModel):
    """Callback from the external note generator."""

    model_config = ConfigDict(populate_by_name=True)

    file_id: uuid.UUID | None = Field(default=None, alias="fileId")
    notes: Any = None
    note_type: str | None = Field(default=None, alias="noteType")
    status: str | None = None  # "success" | "error"
    error: str | None = None
