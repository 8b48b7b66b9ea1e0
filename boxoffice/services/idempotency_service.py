"""
Durable idempotency ledger keyed by (event id, pipeline name).

The database row is the source of truth. A small in-process cache of finished
responses sits in front of it so hot replays skip a round trip; it is filled
only after the durable write succeeds.
"""
from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from boxoffice.core.config import settings
from boxoffice.core.errors import TransientFulfillmentError
from boxoffice.core.logging import get_logger
from boxoffice.db.base import utcnow
from boxoffice.models.idempotency_record import IdempotencyRecord

logger = get_logger(__name__)

PIPELINE_PAYMENT_FULFILLMENT = "payment_fulfillment"

ACQUIRED = "acquired"
REPLAY = "replay"
IN_PROGRESS = "in_progress"

FINISHED_STATUSES = ("complete", "error")


@dataclass
class ClaimResult:
    outcome: str
    key: str
    pipeline: str
    status_code: int | None = None
    body: dict[str, Any] | None = None
    taken_over: bool = False

    @property
    def acquired(self) -> bool:
        return self.outcome == ACQUIRED


class ResponseCache:
    """Bounded TTL map of finished responses; safe for a single event loop."""

    def __init__(self, ttl_seconds: float, max_items: int):
        self.ttl_seconds = ttl_seconds
        self.max_items = max_items
        self._items: OrderedDict[tuple[str, str], tuple[float, int, dict]] = OrderedDict()

    def get(self, pipeline: str, key: str) -> tuple[int, dict] | None:
        item = self._items.get((pipeline, key))
        if item is None:
            return None
        expires, status_code, body = item
        if expires < time.monotonic():
            self._items.pop((pipeline, key), None)
            return None
        return status_code, body

    def put(self, pipeline: str, key: str, status_code: int, body: dict) -> None:
        self._items[(pipeline, key)] = (time.monotonic() + self.ttl_seconds, status_code, body)
        self._items.move_to_end((pipeline, key))
        while len(self._items) > self.max_items:
            self._items.popitem(last=False)

    def discard(self, pipeline: str, key: str) -> None:
        self._items.pop((pipeline, key), None)

    def clear(self) -> None:
        self._items.clear()


response_cache = ResponseCache(
    ttl_seconds=settings.IDEMPOTENCY_CACHE_TTL_SECONDS,
    max_items=settings.IDEMPOTENCY_CACHE_MAX_ITEMS,
)


async def claim(
    session_factory: async_sessionmaker,
    *,
    key: str,
    pipeline: str = PIPELINE_PAYMENT_FULFILLMENT,
    metadata: dict | None = None,
    lease_seconds: int | None = None,
    retention_days: int | None = None,
) -> ClaimResult:
    """
    Become the single processor for ``key`` or learn what to answer instead.

    - no record: insert pending (unique constraint arbitrates races) -> acquired
    - complete/error record: replay its cached response
    - pending with a live lease: someone else is processing -> in_progress
    - pending with a lapsed lease: compare-and-swap the lease -> acquired (taken_over)
    """
    cached = response_cache.get(pipeline, key)
    if cached is not None:
        return ClaimResult(REPLAY, key, pipeline, status_code=cached[0], body=cached[1])

    if lease_seconds is None:
        lease_seconds = settings.IDEMPOTENCY_LEASE_SECONDS
    if retention_days is None:
        retention_days = settings.IDEMPOTENCY_RETENTION_DAYS
    lease = timedelta(seconds=lease_seconds)
    retention = timedelta(days=retention_days)
    now = utcnow()

    # 1) Insert FIRST (flush triggers the UNIQUE constraint)
    try:
        async with session_factory() as db:
            async with db.begin():
                db.add(
                    IdempotencyRecord(
                        key=key,
                        pipeline=pipeline,
                        status="pending",
                        record_metadata=metadata,
                        locked_until=now + lease,
                        expires_at=now + retention,
                    )
                )
                await db.flush()
        return ClaimResult(ACQUIRED, key, pipeline)
    except IntegrityError:
        pass

    # 2) Lost the race or a redelivery: read the winner's record
    async with session_factory() as db:
        async with db.begin():
            record = (
                await db.execute(
                    select(IdempotencyRecord).where(
                        IdempotencyRecord.key == key,
                        IdempotencyRecord.pipeline == pipeline,
                    )
                )
            ).scalar_one_or_none()

            if record is None:
                # purged between insert attempt and read; let the gateway retry
                raise TransientFulfillmentError(f"Idempotency record for {key} vanished during claim")

            if record.status in FINISHED_STATUSES:
                status_code = record.cached_status or 200
                body = record.cached_body or {}
                response_cache.put(pipeline, key, status_code, body)
                return ClaimResult(REPLAY, key, pipeline, status_code=status_code, body=body)

            # 3) Stale pending record: take over only if nobody renewed it meanwhile
            res = await db.execute(
                update(IdempotencyRecord)
                .where(
                    IdempotencyRecord.id == record.id,
                    IdempotencyRecord.status == "pending",
                    IdempotencyRecord.locked_until < now,
                )
                .values(
                    locked_until=now + lease,
                    attempts=IdempotencyRecord.attempts + 1,
                    updated_at=now,
                )
            )
            if res.rowcount == 1:
                logger.warning(
                    "Taking over stale pending idempotency record key=%s pipeline=%s attempts=%s",
                    key,
                    pipeline,
                    record.attempts + 1,
                )
                return ClaimResult(ACQUIRED, key, pipeline, taken_over=True)

    return ClaimResult(IN_PROGRESS, key, pipeline)


async def _finish(
    session_factory: async_sessionmaker,
    *,
    key: str,
    pipeline: str,
    status: str,
    status_code: int,
    body: dict,
) -> None:
    now = utcnow()
    async with session_factory() as db:
        async with db.begin():
            await db.execute(
                update(IdempotencyRecord)
                .where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.pipeline == pipeline,
                )
                .values(
                    status=status,
                    cached_status=status_code,
                    cached_body=body,
                    locked_until=now,
                    updated_at=now,
                )
            )
    response_cache.put(pipeline, key, status_code, body)


async def complete(
    session_factory: async_sessionmaker,
    *,
    key: str,
    status_code: int,
    body: dict,
    pipeline: str = PIPELINE_PAYMENT_FULFILLMENT,
) -> None:
    await _finish(
        session_factory, key=key, pipeline=pipeline, status="complete", status_code=status_code, body=body
    )


async def fail(
    session_factory: async_sessionmaker,
    *,
    key: str,
    status_code: int,
    body: dict,
    pipeline: str = PIPELINE_PAYMENT_FULFILLMENT,
) -> None:
    """Record a terminal outcome. Still replayed, so gateway retries cause no new side effects."""
    await _finish(
        session_factory, key=key, pipeline=pipeline, status="error", status_code=status_code, body=body
    )


async def release(
    session_factory: async_sessionmaker,
    *,
    key: str,
    pipeline: str = PIPELINE_PAYMENT_FULFILLMENT,
) -> None:
    """Drop a pending claim so the next delivery starts fresh (transient failures only)."""
    async with session_factory() as db:
        async with db.begin():
            await db.execute(
                delete(IdempotencyRecord).where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.pipeline == pipeline,
                    IdempotencyRecord.status == "pending",
                )
            )
    response_cache.discard(pipeline, key)


async def get_record(
    session_factory: async_sessionmaker,
    *,
    key: str,
    pipeline: str = PIPELINE_PAYMENT_FULFILLMENT,
) -> IdempotencyRecord | None:
    async with session_factory() as db:
        return (
            await db.execute(
                select(IdempotencyRecord).where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.pipeline == pipeline,
                )
            )
        ).scalar_one_or_none()


async def purge_expired(session_factory: async_sessionmaker) -> int:
    async with session_factory() as db:
        async with db.begin():
            res = await db.execute(
                delete(IdempotencyRecord).where(IdempotencyRecord.expires_at < utcnow())
            )
    return res.rowcount or 0
