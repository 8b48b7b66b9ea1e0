"""
Transactional email through a durable outbox.

Request paths only insert ``email_queue`` rows; the worker delivers them
through the email provider's HTTP API and retries with backoff. A delivery
failure never touches the order it is about.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxoffice.core.config import settings
from boxoffice.core.errors import DeliveryError, safe_error_summary
from boxoffice.core.logging import get_logger
from boxoffice.db.base import utcnow
from boxoffice.models.email_queue import EmailQueueItem
from boxoffice.scanner.payload import encode_qr_payload
from boxoffice.schemas.fulfillment import FulfillmentResult
from boxoffice.services.job_queue import enqueue_email_delivery

logger = get_logger(__name__)

CLAIM_LEASE = timedelta(minutes=5)


class EmailSender:
    """Thin client for a JSON email API (``POST {from, to, subject, text}``)."""

    def __init__(
        self,
        *,
        api_url: str | None = None,
        api_key: str | None = None,
        from_address: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_url = api_url if api_url is not None else settings.EMAIL_API_URL
        self.api_key = api_key if api_key is not None else settings.EMAIL_API_KEY
        self.from_address = from_address or settings.EMAIL_FROM_ADDRESS
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.EMAIL_TIMEOUT_SECONDS
        )
        self._owns_client = client is None

    async def send(self, *, to: str, subject: str, text: str) -> str | None:
        if not self.api_url:
            raise DeliveryError("EMAIL_API_URL is not configured")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            resp = await self._client.post(
                self.api_url,
                json={"from": self.from_address, "to": [to], "subject": subject, "text": text},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise DeliveryError(f"Email provider unreachable: {e}") from e

        if resp.status_code >= 400:
            raise DeliveryError(f"Email provider returned {resp.status_code}")

        try:
            return resp.json().get("id")
        except ValueError:
            return None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def queue_email(
    db: AsyncSession,
    *,
    kind: str,
    recipient: str,
    subject: str,
    body: str,
    payload: dict | None = None,
    related_order_id: UUID | None = None,
) -> EmailQueueItem:
    """Add an outbox row to the caller's transaction."""
    item = EmailQueueItem(
        kind=kind,
        recipient=recipient,
        subject=subject,
        body=body,
        payload=payload,
        related_order_id=related_order_id,
        status="pending",
        attempt_count=0,
        max_attempts=settings.EMAIL_MAX_ATTEMPTS,
        next_retry_at=utcnow(),
    )
    db.add(item)
    return item


def render_confirmation(result: FulfillmentResult) -> tuple[str, str]:
    subject = f"Your tickets - order {str(result.order_id)[:8].upper()}"
    lines = [
        f"Hi {result.purchaser_name or 'there'},",
        "",
        f"Payment received: {result.total_cents / 100:.2f} {result.currency.upper()}.",
        "Present one code per guest at the door:",
        "",
    ]
    for t in result.tickets:
        holder = f" ({t.holder_name})" if t.holder_name else ""
        lines.append(f"{t.code} - {t.ticket_type_name}{holder}")
        lines.append(f"  {encode_qr_payload(t.token, t.signature)}")
    return subject, "\n".join(lines)


async def queue_confirmation_email(
    session_factory: async_sessionmaker,
    result: FulfillmentResult,
) -> None:
    """Post-commit: failures are logged only, the paid order stands regardless."""
    subject, body = render_confirmation(result)
    try:
        async with session_factory() as db:
            async with db.begin():
                queue_email(
                    db,
                    kind="confirmation",
                    recipient=result.purchaser_email,
                    subject=subject,
                    body=body,
                    payload={"order_id": str(result.order_id), "tickets": len(result.tickets)},
                    related_order_id=result.order_id,
                )
    except Exception as e:
        logger.error("Could not queue confirmation email for order %s: %s", result.order_id, e)
        return

    await enqueue_email_delivery()


def _next_retry_delay(attempt_count: int) -> timedelta:
    return timedelta(seconds=min(60 * (2 ** max(attempt_count - 1, 0)), 3600))


async def deliver_pending_emails(
    session_factory: async_sessionmaker,
    sender: EmailSender,
    *,
    limit: int = 50,
) -> dict[str, Any]:
    now = utcnow()

    # 1) Claim due rows by pushing next_retry_at out; other workers skip locked rows
    async with session_factory() as db:
        async with db.begin():
            items = (
                await db.execute(
                    select(EmailQueueItem)
                    .where(
                        EmailQueueItem.status == "pending",
                        EmailQueueItem.next_retry_at <= now,
                    )
                    .order_by(EmailQueueItem.created_at)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
            ).scalars().all()
            for item in items:
                item.next_retry_at = now + CLAIM_LEASE

    stats = {"sent": 0, "retrying": 0, "failed": 0}

    # 2) Send outside any transaction, then record the outcome
    for item in items:
        values: dict[str, Any]
        try:
            await sender.send(to=item.recipient, subject=item.subject, text=item.body)
            values = {"status": "sent", "sent_at": utcnow(), "last_error": None}
            stats["sent"] += 1
        except Exception as e:
            attempts = item.attempt_count + 1
            values = {"attempt_count": attempts, "last_error": safe_error_summary(e)}
            if attempts >= item.max_attempts:
                values["status"] = "failed"
                stats["failed"] += 1
                logger.error(
                    "Email %s (%s to %s) failed permanently after %s attempts: %s",
                    item.id,
                    item.kind,
                    item.recipient,
                    attempts,
                    e,
                )
            else:
                values["next_retry_at"] = utcnow() + _next_retry_delay(attempts)
                stats["retrying"] += 1
                logger.warning("Email %s delivery attempt %s failed: %s", item.id, attempts, e)

        async with session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(EmailQueueItem).where(EmailQueueItem.id == item.id).values(**values)
                )

    return stats
