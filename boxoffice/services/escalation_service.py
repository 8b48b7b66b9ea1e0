from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxoffice.core.config import settings
from boxoffice.core.errors import error_code, safe_error_summary
from boxoffice.core.logging import get_logger
from boxoffice.db.base import utcnow
from boxoffice.models.payment_failure import PaymentFailure
from boxoffice.services.job_queue import enqueue_email_delivery
from boxoffice.services.notification_service import queue_email

logger = get_logger(__name__)

OPERATOR_ALERT_SUBJECT = "[ACTION REQUIRED] Payment succeeded but ticket creation failed"


def _operator_alert_body(failure: PaymentFailure) -> str:
    amount = (
        f"{failure.amount_cents / 100:.2f} {(failure.currency or '').upper()}"
        if failure.amount_cents is not None
        else "unknown"
    )
    return "\n".join(
        [
            "A customer was charged but no tickets were issued. Fulfil this order manually.",
            "",
            f"Gateway event:   {failure.event_reference}",
            f"Payment:         {failure.payment_reference or 'unknown'}",
            f"Customer:        {failure.customer_contact or 'unknown'}",
            f"Amount:          {amount}",
            f"Error:           {failure.error_code}: {failure.error_summary or ''}",
            f"Attempts:        {failure.attempts}",
            f"Failure record:  {failure.id}",
        ]
    )


async def _existing(db: AsyncSession, event_reference: str) -> PaymentFailure | None:
    return (
        await db.execute(select(PaymentFailure).where(PaymentFailure.event_reference == event_reference))
    ).scalar_one_or_none()


async def escalate_payment_failure(
    session_factory: async_sessionmaker,
    *,
    event_reference: str,
    error: BaseException,
    payment_reference: str | None = None,
    customer_contact: str | None = None,
    amount_cents: int | None = None,
    currency: str | None = None,
    attempts: int = 1,
    metadata: dict | None = None,
) -> dict[str, Any]:
    """
    Record a charge that could not be fulfilled and alert the operator.

    At most one record per gateway event: a second escalation for the same
    event returns the first record and sends no second alert.
    """
    try:
        async with session_factory() as db:
            async with db.begin():
                existing = await _existing(db, event_reference)
                if existing is not None:
                    return {"failure_id": str(existing.id), "created": False}

                failure = PaymentFailure(
                    event_reference=event_reference,
                    payment_reference=payment_reference,
                    customer_contact=customer_contact,
                    amount_cents=amount_cents,
                    currency=currency,
                    error_code=error_code(error),
                    error_summary=safe_error_summary(error),
                    error_detail=repr(error),  # internal; the admin API only exposes error_summary
                    attempts=attempts,
                    failure_metadata=metadata,
                    resolved=False,
                )
                db.add(failure)
                await db.flush()

                if settings.OPERATOR_EMAIL:
                    queue_email(
                        db,
                        kind="operator_alert",
                        recipient=settings.OPERATOR_EMAIL,
                        subject=OPERATOR_ALERT_SUBJECT,
                        body=_operator_alert_body(failure),
                        payload={"payment_failure_id": str(failure.id)},
                    )
                else:
                    logger.warning("OPERATOR_EMAIL not set; payment failure only visible in admin API")

                failure_id = str(failure.id)
    except IntegrityError:
        # Concurrent escalation for the same event won the insert
        async with session_factory() as db:
            existing = await _existing(db, event_reference)
        if existing is None:
            raise
        return {"failure_id": str(existing.id), "created": False}

    logger.error(
        "ESCALATED payment failure event=%s payment=%s customer=%s amount_cents=%s error=%s",
        event_reference,
        payment_reference,
        customer_contact,
        amount_cents,
        safe_error_summary(error),
    )
    await enqueue_email_delivery()
    return {"failure_id": failure_id, "created": True}


async def list_payment_failures(
    db: AsyncSession,
    *,
    resolved: bool | None = False,
    limit: int = 50,
) -> list[PaymentFailure]:
    q = select(PaymentFailure).order_by(desc(PaymentFailure.created_at)).limit(limit)
    if resolved is not None:
        q = q.where(PaymentFailure.resolved.is_(resolved))
    return list((await db.execute(q)).scalars().all())


async def resolve_payment_failure(
    db: AsyncSession,
    *,
    failure_id: UUID,
    notes: str | None = None,
) -> PaymentFailure | None:
    failure = (
        await db.execute(select(PaymentFailure).where(PaymentFailure.id == failure_id))
    ).scalar_one_or_none()
    if failure is None:
        return None

    if not failure.resolved:
        failure.resolved = True
        failure.resolved_at = utcnow()
        failure.resolution_notes = notes
        await db.commit()
        await db.refresh(failure)
    return failure
