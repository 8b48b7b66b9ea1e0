from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, Uuid

from boxoffice.db.base import Base, utcnow


class PaymentFailure(Base):
    """
    A charge that succeeded but could not be fulfilled automatically.
    Operator-facing; never auto-deleted.
    """
    __tablename__ = "payment_failures"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # One record per gateway event, however many attempts preceded it
    event_reference: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    customer_contact: Mapped[str | None] = mapped_column(String(320), nullable=True)
    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    error_code: Mapped[str] = mapped_column(String(100), nullable=False)
    # Keep API "safe": only error_summary is exposed; error_detail stays internal.
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    failure_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )
