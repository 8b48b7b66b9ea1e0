from __future__ import annotations

from collections import OrderedDict
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.core.errors import InsufficientInventory, PayloadValidationError, UnknownTicketType
from boxoffice.core.logging import get_logger
from boxoffice.models.ticket_type import TicketType

logger = get_logger(__name__)


def _aggregate(items: Iterable[tuple[UUID, int]]) -> "OrderedDict[UUID, int]":
    totals: dict[UUID, int] = {}
    for ticket_type_id, quantity in items:
        totals[ticket_type_id] = totals.get(ticket_type_id, 0) + quantity
    # Fixed lock order across transactions avoids deadlocks between multi-item orders
    return OrderedDict(sorted(totals.items(), key=lambda kv: str(kv[0])))


async def _lock_ticket_type(db: AsyncSession, ticket_type_id: UUID) -> TicketType | None:
    return (
        await db.execute(
            select(TicketType)
            .where(TicketType.id == ticket_type_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def reserve_inventory(
    db: AsyncSession,
    items: Iterable[tuple[UUID, int]],
    *,
    event_id: str | None = None,
) -> dict[UUID, TicketType]:
    """
    Reserve quantities against remaining inventory inside the caller's transaction.

    Each ticket type row is locked (SELECT ... FOR UPDATE) before it is read, so
    two buyers of the last unit serialize and the second sees available=0.
    Raises on the first item that cannot be satisfied; the caller's rollback
    undoes any reservations already made.
    """
    locked: dict[UUID, TicketType] = {}

    for ticket_type_id, quantity in _aggregate(items).items():
        tt = await _lock_ticket_type(db, ticket_type_id)
        if tt is None:
            raise UnknownTicketType(ticket_type_id)
        if event_id is not None and tt.event_id != event_id:
            raise PayloadValidationError(
                f"Ticket type {ticket_type_id} does not belong to event {event_id}"
            )

        if tt.total_inventory is not None:
            available = max(tt.total_inventory - tt.tickets_sold, 0)
            if quantity > available:
                logger.info(
                    "Reservation refused for %s: requested=%s available=%s",
                    tt.name,
                    quantity,
                    available,
                )
                raise InsufficientInventory(tt.name, quantity, available)

        tt.tickets_sold = tt.tickets_sold + quantity
        locked[ticket_type_id] = tt

    await db.flush()
    return locked


async def release_inventory(db: AsyncSession, items: Iterable[tuple[UUID, int]]) -> None:
    """Return previously reserved units (refunds). Never drives tickets_sold below zero."""
    for ticket_type_id, quantity in _aggregate(items).items():
        tt = await _lock_ticket_type(db, ticket_type_id)
        if tt is None:
            logger.warning("Cannot release inventory for missing ticket type %s", ticket_type_id)
            continue
        tt.tickets_sold = max(tt.tickets_sold - quantity, 0)
    await db.flush()
