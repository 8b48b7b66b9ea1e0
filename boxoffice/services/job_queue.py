from __future__ import annotations

import asyncio
from typing import Any, Optional

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from boxoffice.core.config import settings
from boxoffice.core.logging import get_logger

logger = get_logger(__name__)

TASK_DELIVER_EMAILS = "deliver_email_queue"

_redis_pool: Optional[ArqRedis] = None
_pool_lock = asyncio.Lock()


async def init_redis_pool() -> ArqRedis:
    global _redis_pool
    async with _pool_lock:
        if _redis_pool is None:
            _redis_pool = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
        return _redis_pool


async def get_redis_pool() -> ArqRedis:
    if _redis_pool is None:
        return await init_redis_pool()
    return _redis_pool


async def close_redis_pool() -> None:
    global _redis_pool
    async with _pool_lock:
        if _redis_pool is None:
            return

        pool = _redis_pool
        _redis_pool = None

        if hasattr(pool, "aclose"):
            await pool.aclose()
        else:
            await pool.close()


async def enqueue_email_delivery() -> dict[str, Any]:
    """
    Nudge the worker to drain the email outbox now instead of on its next cron tick.

    The outbox row is already committed, so a failure here only delays delivery.
    """
    if not settings.USE_ARQ_WORKER:
        return {"queued": False, "reason": "worker_disabled"}

    try:
        redis = await get_redis_pool()
        job = await redis.enqueue_job(TASK_DELIVER_EMAILS)
    except Exception as e:
        logger.warning("Could not enqueue email delivery job: %s", e)
        return {"queued": False, "reason": "enqueue_failed"}

    return {
        "queued": True,
        "queue": "arq",
        "job_id": job.job_id if job else None,
    }
