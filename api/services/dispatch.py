"""Best-effort forwarding of new uploads to the external note generator.

Each upload is sent from its own asyncio task so the upload response never
waits on the external service. Failures are retried with exponential
backoff and the outcome is recorded on the file's task as ``sent_to_make``
or ``make_error``.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Awaitable, Callable

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config import Settings
from shared.lifecycle import KEEP, InvalidTransition, transition
from shared.models.task import TaskStatus

logger = structlog.get_logger()


class FileDispatcher:
    """Posts file metadata to the configured webhook URL in the background."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.url = settings.make_webhook_url
        self.max_attempts = max(settings.make_webhook_max_attempts, 1)
        self.backoff_seconds = settings.make_webhook_backoff_seconds
        self._client = client or httpx.AsyncClient(timeout=settings.make_webhook_timeout_seconds)
        self._sleep = sleep
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def dispatch(self, file_id: uuid.UUID, payload: dict) -> asyncio.Task | None:
        """Schedule delivery for one upload. Returns None when no URL is configured."""
        if not self.enabled:
            return None
        task = asyncio.create_task(self.send(file_id, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def send(self, file_id: uuid.UUID, payload: dict) -> TaskStatus:
        """Deliver ``payload`` with retries and record the outcome on the task."""
        error: str | None = None
        for attempt in range(1, self.max_attempts + 1):
            error = await self._post(payload)
            if error is None:
                logger.info("file_dispatched", file_id=str(file_id), attempt=attempt)
                await self._record(file_id, TaskStatus.SENT_TO_MAKE, None)
                return TaskStatus.SENT_TO_MAKE

            logger.warning(
                "file_dispatch_failed",
                file_id=str(file_id),
                attempt=attempt,
                max_attempts=self.max_attempts,
                error=error,
            )
            if attempt < self.max_attempts:
                await self._sleep(self.backoff_seconds * 2 ** (attempt - 1))

        await self._record(file_id, TaskStatus.MAKE_ERROR, error)
        return TaskStatus.MAKE_ERROR

    async def _post(self, payload: dict) -> str | None:
        """POST once. Returns the failure detail, or None on a 2xx answer."""
        try:
            resp = await self._client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            return f"Make.com webhook error: {e}"
        if resp.is_success:
            return None
        return f"Make.com webhook failed: {resp.status_code} {resp.reason_phrase}"

    async def _record(self, file_id: uuid.UUID, status: TaskStatus, error: str | None) -> None:
        try:
            async with self.session_factory() as session:
                await transition(
                    session,
                    file_id,
                    task_status=status,
                    error_message=error if status == TaskStatus.MAKE_ERROR else KEEP,
                )
        except InvalidTransition as e:
            # The worker has already moved the task on
            logger.info("file_dispatch_status_skipped", file_id=str(file_id), reason=str(e))
        except Exception as e:
            logger.error("file_dispatch_status_failed", file_id=str(file_id), error=str(e))

    async def aclose(self, timeout: float = 10.0) -> None:
        """Wait for in-flight deliveries, then close the HTTP client."""
        if self._pending:
            _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("file_dispatch_cancelled_on_shutdown", count=len(pending))
        await self._client.aclose()
