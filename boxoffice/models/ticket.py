from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import DateTime, ForeignKey, Integer, String, Uuid

from boxoffice.db.base import Base, utcnow

ADMISSIBLE_STATUSES = ("issued", "used")


class Ticket(Base):
    """
    One admission credential. Created only by the fulfillment transaction,
    together with its order. Mutated by scanning or an administrative override.
    """
    __tablename__ = "tickets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    ticket_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ticket_types.id"), nullable=False, index=True
    )
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Human-readable code for support lookups; the token is the credential
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    signature: Mapped[str] = mapped_column(String(128), nullable=False)
    signature_scheme: Mapped[str] = mapped_column(String(16), nullable=False, default="hex")

    holder_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    guest_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # issued | used | cancelled | refunded
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="issued", index=True)

    entry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_entries: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scanned_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    @property
    def entries_remaining(self) -> int:
        if self.status not in ADMISSIBLE_STATUSES:
            return 0
        return max(self.max_entries - self.entry_count, 0)
