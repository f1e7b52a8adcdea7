"""API service: uploads, notes, admin reporting and queue administration."""

from __future__ import annotations

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from api.errors import register_exception_handlers
from api.routers import admin, auth, health, notes, queue, upload
from api.services.dispatch import FileDispatcher
from shared.config import get_settings
from shared.database import create_engine, create_session_factory
from shared.queues import create_queues
from shared.redis import close_redis, create_redis
from shared.storage import ensure_dirs

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

settings = get_settings()

app = FastAPI(title="ClearNotes API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# --------------- Routers ---------------

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(upload.router)
app.include_router(notes.router)
app.include_router(admin.router)
app.include_router(queue.router)

# Uploaded files are public so the note generator can fetch them
app.mount(
    "/uploads",
    StaticFiles(directory=settings.upload_path, check_dir=False),
    name="uploads",
)


@app.on_event("startup")
async def startup() -> None:
    ensure_dirs(settings.upload_path, settings.temp_path)

    engine = create_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    redis = create_redis(settings)

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.redis = redis
    app.state.queues = create_queues(redis, settings)
    app.state.dispatcher = FileDispatcher(session_factory, settings)

    logger.info(
        "api_startup_complete",
        environment=settings.environment,
        dispatch_enabled=app.state.dispatcher.enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    dispatcher: FileDispatcher | None = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.aclose()
    redis = getattr(app.state, "redis", None)
    if redis is not None:
        await close_redis(redis)
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
    logger.info("api_shutdown_complete")
