import asyncio

import pytest
from sqlalchemy import func, select

from boxoffice.core.errors import (
    DuplicatePaymentReference,
    InsufficientInventory,
    SigningSecretUnavailable,
    UnknownTicketType,
)
from boxoffice.models.order import Order, OrderLineItem
from boxoffice.models.ticket import Ticket
from boxoffice.models.ticket_type import TicketType
from boxoffice.schemas.fulfillment import FulfillmentRequest, LineItemRequest
from boxoffice.services.fulfillment_service import fulfill_order
from boxoffice.services.signature_codec import verify_ticket

from conftest import EVENT_ID, fulfillment_request


async def _count(session_factory, model) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def _sold(session_factory, ticket_type) -> int:
    async with session_factory() as db:
        return (
            await db.execute(select(TicketType.tickets_sold).where(TicketType.id == ticket_type.id))
        ).scalar_one()


@pytest.mark.asyncio
async def test_two_ticket_order_creates_order_and_signed_tickets(session_factory, ticket_types):
    result = await fulfill_order(
        session_factory,
        fulfillment_request(ticket_types.ga, 2, payment_reference="pi_50", amount_total_cents=5000),
    )

    assert result.total_cents == 5000
    assert result.subtotal_cents == 5000
    assert result.fees_cents == 0
    assert len(result.tickets) == 2
    assert len({t.token for t in result.tickets}) == 2
    assert all(verify_ticket(t.token, t.signature) for t in result.tickets)
    assert all(t.code.startswith("TCK-") for t in result.tickets)

    async with session_factory() as db:
        order = (await db.execute(select(Order))).scalar_one()
        tickets = (await db.execute(select(Ticket))).scalars().all()
        line = (await db.execute(select(OrderLineItem))).scalar_one()

    assert order.status == "paid"
    assert order.paid_at is not None
    assert order.payment_reference == "pi_50"
    assert {t.order_id for t in tickets} == {order.id}
    assert {t.status for t in tickets} == {"issued"}
    assert line.quantity == 2
    assert await _sold(session_factory, ticket_types.ga) == 2


@pytest.mark.asyncio
async def test_vip_table_yields_one_pass_per_guest(session_factory, ticket_types):
    request = FulfillmentRequest(
        event_id=EVENT_ID,
        purchaser_name="Host",
        purchaser_email="host@example.com",
        payment_reference="pi_vip",
        line_items=[
            LineItemRequest(
                ticket_type_id=ticket_types.vip.id,
                quantity=1,
                holder_names=["Host", "Guest A", "Guest B"],
            )
        ],
    )
    result = await fulfill_order(session_factory, request)

    assert len(result.tickets) == 4
    assert [t.holder_name for t in result.tickets] == ["Host", "Guest A", "Guest B", "Host"]
    assert [t.guest_number for t in result.tickets] == [1, 2, 3, 4]
    assert result.total_cents == 42000
    # inventory counts tables, not guests
    assert await _sold(session_factory, ticket_types.vip) == 1

    async with session_factory() as db:
        max_entries = (await db.execute(select(Ticket.max_entries))).scalars().all()
    assert set(max_entries) == {2}


@pytest.mark.asyncio
async def test_shortfall_on_any_item_persists_nothing(session_factory, ticket_types):
    request = FulfillmentRequest(
        event_id=EVENT_ID,
        purchaser_email="fan@example.com",
        payment_reference="pi_partial",
        line_items=[
            LineItemRequest(ticket_type_id=ticket_types.ga.id, quantity=2),
            LineItemRequest(ticket_type_id=ticket_types.last.id, quantity=2),
        ],
    )

    with pytest.raises(InsufficientInventory) as exc_info:
        await fulfill_order(session_factory, request)

    assert exc_info.value.item == "Last Call"
    assert exc_info.value.requested == 2
    assert exc_info.value.available == 1
    assert await _count(session_factory, Order) == 0
    assert await _count(session_factory, Ticket) == 0
    assert await _sold(session_factory, ticket_types.ga) == 0
    assert await _sold(session_factory, ticket_types.last) == 0


@pytest.mark.asyncio
async def test_concurrent_buyers_never_oversell(session_factory, ticket_types):
    async with session_factory() as db:
        tt = await db.get(TicketType, ticket_types.ga.id)
        tt.total_inventory = 3
        await db.commit()

    results = await asyncio.gather(
        *[
            fulfill_order(session_factory, fulfillment_request(ticket_types.ga, 1, payment_reference=f"pi_{n}"))
            for n in range(4)
        ],
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 3
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientInventory)
    assert await _sold(session_factory, ticket_types.ga) == 3
    assert await _count(session_factory, Ticket) == 3


@pytest.mark.asyncio
async def test_last_unit_goes_to_exactly_one_of_two_buyers(session_factory, ticket_types):
    results = await asyncio.gather(
        fulfill_order(session_factory, fulfillment_request(ticket_types.last, 1, payment_reference="pi_a")),
        fulfill_order(session_factory, fulfillment_request(ticket_types.last, 1, payment_reference="pi_b")),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    err = errors[0]
    assert isinstance(err, InsufficientInventory)
    assert (err.item, err.requested, err.available) == ("Last Call", 1, 0)
    assert await _count(session_factory, Order) == 1
    assert await _count(session_factory, Ticket) == 1


@pytest.mark.asyncio
async def test_same_payment_reference_is_a_duplicate(session_factory, ticket_types):
    first = await fulfill_order(session_factory, fulfillment_request(ticket_types.ga, 1, payment_reference="pi_dup"))

    with pytest.raises(DuplicatePaymentReference) as exc_info:
        await fulfill_order(session_factory, fulfillment_request(ticket_types.ga, 1, payment_reference="pi_dup"))

    assert exc_info.value.order_id == first.order_id
    assert await _count(session_factory, Order) == 1
    assert await _sold(session_factory, ticket_types.ga) == 1


@pytest.mark.asyncio
async def test_unknown_ticket_type_is_rejected(session_factory, ticket_types):
    import uuid

    request = FulfillmentRequest(
        event_id=EVENT_ID,
        purchaser_email="fan@example.com",
        payment_reference="pi_unknown",
        line_items=[LineItemRequest(ticket_type_id=uuid.uuid4(), quantity=1)],
    )
    with pytest.raises(UnknownTicketType):
        await fulfill_order(session_factory, request)
    assert await _count(session_factory, Order) == 0


@pytest.mark.asyncio
async def test_missing_signing_secret_aborts_before_reserving(session_factory, ticket_types, monkeypatch):
    monkeypatch.delenv("TICKET_SIGNING_SECRET", raising=False)

    with pytest.raises(SigningSecretUnavailable):
        await fulfill_order(session_factory, fulfillment_request(ticket_types.ga, 1, payment_reference="pi_nosecret"))

    assert await _count(session_factory, Order) == 0
    assert await _sold(session_factory, ticket_types.ga) == 0
