"""Request-scoped access to the resources opened at startup."""

from __future__ import annotations

import redis.asyncio as aioredis
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.dispatch import FileDispatcher
from shared.queues import Queues


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


def get_queues(request: Request) -> Queues:
    return request.app.state.queues


def get_redis(request: Request) -> aioredis.Redis:
    return request.app.state.redis


def get_dispatcher(request: Request) -> FileDispatcher:
    return request.app.state.dispatcher
