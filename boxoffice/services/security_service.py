"""
Per-source suspicious-activity tracking for the webhook gate.

Authentication failures are stored durably so every gate instance sees the
same counts. Sources found over the threshold are also remembered locally for
a short while, so repeated attempts are turned away without a query.
"""
from __future__ import annotations

import time
from datetime import timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from boxoffice.core.config import settings
from boxoffice.core.logging import get_logger
from boxoffice.db.base import utcnow
from boxoffice.models.security_event import SecurityEvent

logger = get_logger(__name__)

LOCAL_BLOCK_SECONDS = 60.0

# source -> monotonic deadline
_blocked_sources: dict[str, float] = {}


def clear_local_blocks() -> None:
    _blocked_sources.clear()


async def record_auth_failure(
    session_factory: async_sessionmaker,
    *,
    source: str,
    reason: str,
    event_type: str = "webhook_auth_failure",
) -> None:
    logger.warning("Security event %s from %s: %s", event_type, source, reason)
    try:
        async with session_factory() as db:
            async with db.begin():
                db.add(SecurityEvent(source=source, event_type=event_type, reason=reason[:255]))
    except Exception as e:
        logger.error("Could not persist security event for %s: %s", source, e)


async def failure_count(session_factory: async_sessionmaker, source: str) -> int:
    since = utcnow() - timedelta(seconds=settings.SECURITY_BLOCK_WINDOW_SECONDS)
    async with session_factory() as db:
        return int(
            (
                await db.execute(
                    select(func.count(SecurityEvent.id)).where(
                        SecurityEvent.source == source,
                        SecurityEvent.created_at >= since,
                    )
                )
            ).scalar_one()
        )


async def is_blocked(session_factory: async_sessionmaker, source: str) -> bool:
    deadline = _blocked_sources.get(source)
    if deadline is not None:
        if deadline > time.monotonic():
            return True
        _blocked_sources.pop(source, None)

    count = await failure_count(session_factory, source)
    if count >= settings.SECURITY_BLOCK_THRESHOLD:
        _blocked_sources[source] = time.monotonic() + LOCAL_BLOCK_SECONDS
        logger.warning("Blocking %s: %s authentication failures within window", source, count)
        return True
    return False


async def purge_old_events(session_factory: async_sessionmaker) -> int:
    cutoff = utcnow() - timedelta(days=settings.SECURITY_EVENT_RETENTION_DAYS)
    async with session_factory() as db:
        async with db.begin():
            res = await db.execute(delete(SecurityEvent).where(SecurityEvent.created_at < cutoff))
    return res.rowcount or 0
