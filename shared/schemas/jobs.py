"""Job payloads carried through the queues.

Payload keys are camelCase on the wire so they read the same in the
queue admin endpoints as in the rest of the JSON API.
"""

from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_job_data(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ProcessFilePayload(_Payload):
    file_id: uuid.UUID
    filename: str
    original_name: str
    file_path: str
    file_size: int
    file_type: str | None = None
    user_id: uuid.UUID | None = None


class NotifyAdminPayload(_Payload):
    file_id: uuid.UUID
    filename: str
    original_name: str
    user_id: uuid.UUID | None = None
    note_type: str
    note_id: uuid.UUID
