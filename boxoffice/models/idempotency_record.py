from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint, Uuid

from boxoffice.db.base import Base, utcnow


class IdempotencyRecord(Base):
    """
    "Have we already fully processed event X in pipeline Y", plus the response to replay.

    The (key, pipeline) unique constraint is what serializes concurrent
    duplicate deliveries: the first insert wins, everyone else reads.
    """
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("key", "pipeline", name="uq_idempotency_key_pipeline"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    key: Mapped[str] = mapped_column(String(255), nullable=False)
    pipeline: Mapped[str] = mapped_column(String(100), nullable=False)

    # pending | complete | error
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    cached_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cached_body: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    record_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # A pending record whose lease has lapsed may be taken over
    locked_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
