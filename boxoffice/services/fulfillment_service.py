"""
The fulfillment transaction: inventory reservation, order row and signed
tickets persist together or not at all.
"""
from __future__ import annotations

import secrets
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from boxoffice.core.config import settings
from boxoffice.core.errors import (
    DuplicatePaymentReference,
    SigningSecretUnavailable,
    TransientFulfillmentError,
)
from boxoffice.core.logging import get_logger
from boxoffice.core.stripe_config import get_ticket_signing_secret
from boxoffice.models.order import Order, OrderLineItem
from boxoffice.models.ticket import Ticket
from boxoffice.schemas.fulfillment import FulfillmentRequest, FulfillmentResult, MintedTicket
from boxoffice.services.inventory_service import reserve_inventory
from boxoffice.services.signature_codec import sign_ticket

logger = get_logger(__name__)


def new_ticket_token() -> str:
    return secrets.token_urlsafe(24)


def new_ticket_code() -> str:
    return f"TCK-{uuid.uuid4().hex[:10].upper()}"


async def _order_id_for_payment(session_factory: async_sessionmaker, payment_reference: str):
    async with session_factory() as db:
        return (
            await db.execute(select(Order.id).where(Order.payment_reference == payment_reference))
        ).scalar_one_or_none()


async def fulfill_order(
    session_factory: async_sessionmaker,
    request: FulfillmentRequest,
) -> FulfillmentResult:
    """
    Raises:
        InsufficientInventory / UnknownTicketType: terminal, nothing persisted
        DuplicatePaymentReference: this payment already has an order (replay)
        SigningSecretUnavailable: credentials cannot be minted, nothing persisted
        TransientFulfillmentError or raw driver errors: safe to retry
    """
    if not get_ticket_signing_secret():
        raise SigningSecretUnavailable("TICKET_SIGNING_SECRET is not set")

    scheme = settings.TICKET_SIGNATURE_SCHEME

    try:
        async with session_factory() as db:
            async with db.begin():
                # 1) A replay that slipped past the ledger
                existing_id = (
                    await db.execute(
                        select(Order.id).where(Order.payment_reference == request.payment_reference)
                    )
                ).scalar_one_or_none()
                if existing_id is not None:
                    raise DuplicatePaymentReference(request.payment_reference, existing_id)

                # 2) Reserve every line item under row locks; any shortfall aborts the unit
                ticket_types = await reserve_inventory(
                    db,
                    [(li.ticket_type_id, li.quantity) for li in request.line_items],
                    event_id=request.event_id,
                )

                subtotal = sum(
                    ticket_types[li.ticket_type_id].unit_price_cents * li.quantity
                    for li in request.line_items
                )
                fees = sum(
                    ticket_types[li.ticket_type_id].unit_fee_cents * li.quantity
                    for li in request.line_items
                )
                total = subtotal + fees

                metadata: dict = {}
                if request.source_event_id:
                    metadata["source_event_id"] = request.source_event_id
                if request.amount_total_cents is not None and request.amount_total_cents != total:
                    # The charge is real; record the mismatch for reconciliation
                    logger.warning(
                        "Charged amount %s differs from computed total %s for payment %s",
                        request.amount_total_cents,
                        total,
                        request.payment_reference,
                    )
                    metadata["charged_cents"] = request.amount_total_cents

                # 3) Order row
                order = Order(
                    event_id=request.event_id,
                    purchaser_name=request.purchaser_name,
                    purchaser_email=request.purchaser_email,
                    payment_reference=request.payment_reference,
                    status="pending",
                    subtotal_cents=subtotal,
                    fees_cents=fees,
                    total_cents=total,
                    currency=request.currency.lower(),
                    order_metadata=metadata or None,
                )
                order.transition_to("paid")
                db.add(order)
                await db.flush()

                for li in request.line_items:
                    tt = ticket_types[li.ticket_type_id]
                    db.add(
                        OrderLineItem(
                            order_id=order.id,
                            ticket_type_id=tt.id,
                            quantity=li.quantity,
                            unit_price_cents=tt.unit_price_cents,
                            unit_fee_cents=tt.unit_fee_cents,
                        )
                    )

                # 4) One signed ticket per admission unit
                minted: list[MintedTicket] = []
                for li in request.line_items:
                    tt = ticket_types[li.ticket_type_id]
                    units = li.quantity * max(tt.guests_per_unit, 1)
                    for n in range(units):
                        token = new_ticket_token()
                        signature = sign_ticket(token, scheme)
                        holder = li.holder_names[n] if n < len(li.holder_names) else request.purchaser_name
                        ticket = Ticket(
                            id=uuid.uuid4(),
                            order_id=order.id,
                            ticket_type_id=tt.id,
                            event_id=request.event_id,
                            code=new_ticket_code(),
                            token=token,
                            signature=signature,
                            signature_scheme=scheme,
                            holder_name=holder,
                            guest_number=n + 1,
                            status="issued",
                            entry_count=0,
                            max_entries=tt.max_entries or settings.TICKET_DEFAULT_MAX_ENTRIES,
                        )
                        db.add(ticket)
                        minted.append(
                            MintedTicket(
                                ticket_id=ticket.id,
                                code=ticket.code,
                                token=token,
                                signature=signature,
                                ticket_type_id=tt.id,
                                ticket_type_name=tt.name,
                                holder_name=holder,
                                guest_number=n + 1,
                            )
                        )

                await db.flush()

                result = FulfillmentResult(
                    order_id=order.id,
                    event_id=order.event_id,
                    payment_reference=order.payment_reference,
                    purchaser_name=order.purchaser_name,
                    purchaser_email=order.purchaser_email,
                    subtotal_cents=subtotal,
                    fees_cents=fees,
                    total_cents=total,
                    currency=order.currency,
                    tickets=minted,
                )

    except IntegrityError as e:
        if "payment_reference" in str(e.orig):
            order_id = await _order_id_for_payment(session_factory, request.payment_reference)
            raise DuplicatePaymentReference(request.payment_reference, order_id) from e
        raise TransientFulfillmentError(f"Constraint conflict during fulfillment: {e.orig}") from e

    logger.info(
        "Fulfilled payment %s: order=%s tickets=%s total_cents=%s",
        result.payment_reference,
        result.order_id,
        len(result.tickets),
        result.total_cents,
    )
    return result
