from __future__ import annotations

from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from boxoffice.core.config import settings
from boxoffice.core.logging import get_logger
from boxoffice.db.base import utcnow
from boxoffice.models.payment_event import PaymentEvent

logger = get_logger(__name__)


async def archive_payment_event(
    session_factory: async_sessionmaker,
    *,
    event: dict,
    signature_header: str | None,
    source: str | None,
) -> bool:
    """
    Keep the authenticated event as received. Returns False when it was already archived.
    """
    now = utcnow()
    created = event.get("created")
    try:
        async with session_factory() as db:
            async with db.begin():
                db.add(
                    PaymentEvent(
                        gateway_event_id=event["id"],
                        event_type=event["type"],
                        payload=event,
                        signature_header=signature_header,
                        source=source,
                        gateway_created=int(created) if isinstance(created, (int, float)) else None,
                        expires_at=now + timedelta(days=settings.IDEMPOTENCY_RETENTION_DAYS),
                    )
                )
                await db.flush()
    except IntegrityError:
        return False
    return True


async def purge_expired_events(session_factory: async_sessionmaker) -> int:
    async with session_factory() as db:
        async with db.begin():
            res = await db.execute(delete(PaymentEvent).where(PaymentEvent.expires_at < utcnow()))
    deleted = res.rowcount or 0
    if deleted:
        logger.info("Purged %s expired payment events", deleted)
    return deleted
