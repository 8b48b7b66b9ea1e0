from __future__ import annotations

import asyncio
from typing import Any, Protocol
from uuid import UUID

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxoffice.core.errors import InvalidStatusTransition
from boxoffice.core.logging import get_logger
from boxoffice.core.stripe_config import configure_stripe_client
from boxoffice.models.order import Order, OrderLineItem
from boxoffice.models.ticket import Ticket
from boxoffice.services.inventory_service import release_inventory
from boxoffice.services.job_queue import enqueue_email_delivery
from boxoffice.services.notification_service import queue_email
from boxoffice.services.saga import SagaOrchestrator, SagaResult, SagaStep

logger = get_logger(__name__)


class RefundGateway(Protocol):
    async def refund(self, *, payment_reference: str, amount_cents: int, idempotency_key: str) -> str: ...


class StripeRefundGateway:
    async def refund(self, *, payment_reference: str, amount_cents: int, idempotency_key: str) -> str:
        configure_stripe_client()
        refund = await asyncio.to_thread(
            stripe.Refund.create,
            payment_intent=payment_reference,
            amount=amount_cents,
            idempotency_key=idempotency_key,
        )
        return refund["id"]


async def _lock_order(db: AsyncSession, **where) -> Order | None:
    q = select(Order).with_for_update().execution_options(populate_existing=True)
    for column, value in where.items():
        q = q.where(getattr(Order, column) == value)
    return (await db.execute(q)).scalar_one_or_none()


async def _line_items(db: AsyncSession, order_id: UUID) -> list[tuple[UUID, int]]:
    rows = (
        await db.execute(
            select(OrderLineItem.ticket_type_id, OrderLineItem.quantity).where(
                OrderLineItem.order_id == order_id
            )
        )
    ).all()
    return [(r.ticket_type_id, r.quantity) for r in rows]


async def _tickets(db: AsyncSession, order_id: UUID) -> list[Ticket]:
    return list(
        (
            await db.execute(
                select(Ticket)
                .where(Ticket.order_id == order_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
    )


async def apply_gateway_refund(
    session_factory: async_sessionmaker,
    *,
    payment_reference: str,
) -> dict[str, Any]:
    """
    The gateway reports a full refund: refund the order and its tickets and
    return the inventory. Safe to apply more than once.
    """
    async with session_factory() as db:
        async with db.begin():
            order = await _lock_order(db, payment_reference=payment_reference)
            if order is None:
                logger.warning("Refund for unknown payment %s", payment_reference)
                return {"status": "ok", "order_found": False}

            if order.status == "refunded":
                return {"status": "ok", "order_id": str(order.id), "already_refunded": True}

            order.transition_to("refunded")
            for ticket in await _tickets(db, order.id):
                if ticket.status != "refunded":
                    ticket.status = "refunded"
            await release_inventory(db, await _line_items(db, order.id))

            order_id = str(order.id)

    logger.info("Applied gateway refund for payment %s (order %s)", payment_reference, order_id)
    return {"status": "ok", "order_id": order_id, "already_refunded": False}


def build_refund_saga(
    session_factory: async_sessionmaker,
    gateway: RefundGateway,
    *,
    notify_customer: bool = True,
) -> SagaOrchestrator:

    async def mark_refund_pending(ctx: dict) -> None:
        async with session_factory() as db:
            async with db.begin():
                order = await _lock_order(db, id=ctx["order_id"])
                if order is None:
                    raise LookupError(f"Order {ctx['order_id']} not found")
                order.transition_to("refund_pending")
                ctx["payment_reference"] = order.payment_reference
                ctx["amount_cents"] = order.total_cents
                ctx["purchaser_email"] = order.purchaser_email
                ctx["previous_ticket_statuses"] = {}
                for ticket in await _tickets(db, order.id):
                    if ticket.status in ("issued", "used"):
                        ctx["previous_ticket_statuses"][str(ticket.id)] = ticket.status
                        ticket.status = "cancelled"

    async def restore_order(ctx: dict) -> None:
        previous = ctx.get("previous_ticket_statuses", {})
        async with session_factory() as db:
            async with db.begin():
                order = await _lock_order(db, id=ctx["order_id"])
                if order is not None and order.status == "refund_pending":
                    order.transition_to("paid")
                for ticket in await _tickets(db, ctx["order_id"]):
                    if str(ticket.id) in previous and ticket.status == "cancelled":
                        ticket.status = previous[str(ticket.id)]

    async def issue_gateway_refund(ctx: dict) -> None:
        ctx["refund_id"] = await gateway.refund(
            payment_reference=ctx["payment_reference"],
            amount_cents=ctx["amount_cents"],
            idempotency_key=f"refund-{ctx['order_id']}",
        )

    async def release_order_inventory(ctx: dict) -> None:
        async with session_factory() as db:
            async with db.begin():
                order = await _lock_order(db, id=ctx["order_id"])
                # the gateway's refund webhook may have finished this already
                if order.status == "refunded":
                    return
                order.transition_to("refunded")
                for ticket in await _tickets(db, order.id):
                    if ticket.status == "cancelled":
                        ticket.status = "refunded"
                await release_inventory(db, await _line_items(db, order.id))

    async def notify(ctx: dict) -> None:
        async with session_factory() as db:
            async with db.begin():
                queue_email(
                    db,
                    kind="refund_notice",
                    recipient=ctx["purchaser_email"],
                    subject="Your refund has been issued",
                    body=(
                        f"We refunded {ctx['amount_cents'] / 100:.2f} for order "
                        f"{str(ctx['order_id'])[:8].upper()}. Your tickets are no longer valid."
                    ),
                    payload={"order_id": str(ctx["order_id"]), "refund_id": ctx.get("refund_id")},
                    related_order_id=ctx["order_id"],
                )
        await enqueue_email_delivery()

    steps = [
        SagaStep("MarkRefundPending", mark_refund_pending, compensate=restore_order),
        SagaStep("IssueGatewayRefund", issue_gateway_refund),
        SagaStep("ReleaseInventory", release_order_inventory),
    ]
    if notify_customer:
        steps.append(SagaStep("NotifyCustomer", notify, critical=False))
    return SagaOrchestrator("OrderRefund", steps)


async def refund_order(
    session_factory: async_sessionmaker,
    *,
    order_id: UUID,
    gateway: RefundGateway | None = None,
    reason: str | None = None,
    notify_customer: bool = True,
) -> SagaResult:
    saga = build_refund_saga(session_factory, gateway or StripeRefundGateway(), notify_customer=notify_customer)
    result = await saga.run({"order_id": order_id, "reason": reason})
    if result.ok:
        logger.info("Refunded order %s", order_id)
    elif isinstance(result.error, InvalidStatusTransition):
        logger.info("Refund refused for order %s: %s", order_id, result.error)
    return result
