"""Queue worker entry point: ``python -m worker.main``."""

from __future__ import annotations

import asyncio
import signal

import structlog

from shared.config import Settings, get_settings
from shared.database import create_engine, create_session_factory
from shared.queues import Queues, create_queues
from shared.redis import close_redis, create_redis
from worker.processor import register_handlers

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()


async def stalled_job_loop(queues: Queues, interval: float) -> None:
    """Periodically hand out again jobs whose worker stopped holding the lock."""
    while True:
        await asyncio.sleep(interval)
        for queue in queues.all():
            try:
                stalled = await queue.check_stalled()
            except Exception as e:
                logger.error("stalled_check_error", queue=queue.name, error=str(e))
                continue
            if stalled:
                logger.warning("stalled_jobs_recovered", queue=queue.name, job_ids=stalled)


async def run_worker(settings: Settings) -> None:
    engine = create_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    redis = create_redis(settings)
    queues = create_queues(redis, settings)
    register_handlers(queues, session_factory, settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    tasks = [
        asyncio.create_task(queue.run(settings.worker_poll_interval_seconds))
        for queue in queues.all()
    ]
    tasks.append(asyncio.create_task(stalled_job_loop(queues, settings.job_lock_seconds)))
    logger.info("worker_started", queues=[q.name for q in queues.all()])

    try:
        await stop.wait()
        logger.info("worker_stopping")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await close_redis(redis)
        await engine.dispose()
        logger.info("worker_stopped")


def main() -> None:
    asyncio.run(run_worker(get_settings()))


if __name__ == "__main__":
    main()
