"""Celery beat tasks that keep active emergencies moving.

  1. Redispatch — widen the helper search for emergencies nobody accepted yet
  2. Timeout sweep — system-resolve emergencies past their timeout
  3. Purge — delete records past their 24h storage TTL
"""
import asyncio
import logging

import socketio

from lifeline.config import get_settings
from lifeline.services.notification_service import RedisBusNotificationSink
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

# Write-only Socket.IO Redis manager; lets workers emit through the same
# Redis bus the ASGI server listens on, whatever loop the task runs on.
_sio_settings = get_settings()
_external_sio = socketio.RedisManager(_sio_settings.REDIS_URL, write_only=True)


def get_notifier() -> RedisBusNotificationSink:
    return RedisBusNotificationSink(_external_sio)


def _run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _make_session():
    """Create a fresh async engine + session factory for this task.

    Each _run_async() call uses a new event loop and asyncpg connections are
    bound to the loop they were created on, so the global engine from
    lifeline.db.postgres cannot be reused here.
    """
    from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
    from sqlalchemy.pool import NullPool

    settings = get_settings()
    eng = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    factory = async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)
    return eng, factory


async def _redispatch() -> int:
    from lifeline.services import emergency_service
    from lifeline.services.location_service import SqlGeoIndex

    eng, factory = _make_session()
    try:
        async with factory() as db:
            return await emergency_service.redispatch_pending(
                db, geo_index=SqlGeoIndex(factory), notifier=get_notifier(),
            )
    finally:
        await eng.dispose()


async def _expire() -> int:
    from lifeline.services import emergency_service

    eng, factory = _make_session()
    try:
        async with factory() as db:
            return await emergency_service.expire_timed_out_emergencies(db, notifier=get_notifier())
    finally:
        await eng.dispose()


async def _purge() -> int:
    from lifeline.services import emergency_service

    eng, factory = _make_session()
    try:
        async with factory() as db:
            return await emergency_service.purge_expired_emergencies(db)
    finally:
        await eng.dispose()


@celery_app.task(name="tasks.emergency_tasks.redispatch_pending_emergencies")
def redispatch_pending_emergencies():
    """Request more helpers for active emergencies still waiting on an acceptance."""
    requested = _run_async(_redispatch())
    if requested:
        logger.info("Redispatch requested %d additional helper(s)", requested)
    return requested


@celery_app.task(name="tasks.emergency_tasks.expire_timed_out_emergencies")
def expire_timed_out_emergencies():
    expired = _run_async(_expire())
    if expired:
        logger.info("Timeout sweep resolved %d emergency(ies)", expired)
    return expired


@celery_app.task(name="tasks.emergency_tasks.purge_expired_emergencies")
def purge_expired_emergencies():
    return _run_async(_purge())
