from __future__ import annotations

from arq import cron
from arq.connections import RedisSettings

from boxoffice.core.config import settings
from boxoffice.core.logging import get_logger, setup_logging
from boxoffice.db.base import import_models
from boxoffice.db.session import async_session
from boxoffice.services import idempotency_service
from boxoffice.services.notification_service import EmailSender, deliver_pending_emails
from boxoffice.services.payment_event_service import purge_expired_events
from boxoffice.services.security_service import purge_old_events

import_models()

logger = get_logger(__name__)


async def startup(ctx) -> None:
    setup_logging()
    ctx["email_sender"] = EmailSender()


async def shutdown(ctx) -> None:
    sender = ctx.get("email_sender")
    if sender is not None:
        await sender.aclose()


async def deliver_email_queue(ctx) -> dict:
    """
    ARQ task entrypoint: drain due outbox rows.

    Per-message retries live in the outbox itself (attempt_count / next_retry_at),
    so a failed message never makes the whole job retry.
    """
    sender = ctx.get("email_sender") or EmailSender()
    stats = await deliver_pending_emails(async_session, sender)
    if stats["sent"] or stats["failed"] or stats["retrying"]:
        logger.info("Email outbox: %s", stats)
    return stats


async def purge_expired_records(ctx) -> dict:
    """Retention: idempotency records and payment events after their window, old security events."""
    result = {
        "idempotency_records": await idempotency_service.purge_expired(async_session),
        "payment_events": await purge_expired_events(async_session),
        "security_events": await purge_old_events(async_session),
    }
    logger.info("Retention purge: %s", result)
    return result


class WorkerSettings:
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    functions = [deliver_email_queue, purge_expired_records]
    cron_jobs = [
        cron(deliver_email_queue, second=0, run_at_startup=True),
        cron(purge_expired_records, minute=17, second=0),
    ]
    on_startup = startup
    on_shutdown = shutdown

    max_jobs = 10
    job_timeout = 60 * 5
    max_tries = settings.ARQ_MAX_TRIES
