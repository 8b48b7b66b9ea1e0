from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import CheckConstraint, DateTime, Integer, String, Uuid

from boxoffice.db.base import Base, utcnow


class TicketType(Base):
    """
    A sellable inventory item for one event: a general-admission tier or a VIP table.

    ``total_inventory`` NULL means unlimited. ``tickets_sold`` is only ever
    changed inside a fulfillment or refund transaction while the row is locked.
    """
    __tablename__ = "ticket_types"
    __table_args__ = (
        CheckConstraint("tickets_sold >= 0", name="ck_ticket_types_sold_nonnegative"),
        CheckConstraint(
            "total_inventory IS NULL OR tickets_sold <= total_inventory",
            name="ck_ticket_types_no_oversell",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    event_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # "ga" or "vip_table"
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="ga")

    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    total_inventory: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tickets_sold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # A VIP table for N guests yields N passes per unit sold
    guests_per_unit: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_entries: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def remaining(self) -> int | None:
        if self.total_inventory is None:
            return None
        return max(self.total_inventory - self.tickets_sold, 0)
