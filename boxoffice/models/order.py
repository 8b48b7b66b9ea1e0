from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Uuid

from boxoffice.core.errors import InvalidStatusTransition
from boxoffice.db.base import Base, utcnow

# Status only moves forward; cancelled and refunded are terminal.
# refund_pending -> paid exists solely as the refund saga's compensation.
ORDER_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"paid", "cancelled"},
    "paid": {"refund_pending", "refunded", "cancelled"},
    "refund_pending": {"refunded", "paid"},
    "cancelled": set(),
    "refunded": set(),
}


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    event_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    purchaser_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    purchaser_email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)

    # No two orders may claim the same payment
    payment_reference: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)

    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fees_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    order_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def transition_to(self, new_status: str) -> None:
        if new_status not in ORDER_TRANSITIONS.get(self.status, set()):
            raise InvalidStatusTransition(
                f"Order {self.id} cannot move from {self.status} to {new_status}"
            )
        self.status = new_status
        if new_status == "paid" and self.paid_at is None:
            self.paid_at = utcnow()


class OrderLineItem(Base):
    """Quantity bought per ticket type; refunds release inventory from these rows."""
    __tablename__ = "order_line_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    ticket_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ticket_types.id"), nullable=False, index=True
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
