import uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, DateTime, Boolean, Uuid
from datetime import datetime

from boxoffice.db.base import Base, utcnow


class ApiKey(Base):
    """Device key for gate scanners. Only the SHA-256 hash is stored."""
    __tablename__ = "api_keys"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    key_hash: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
        index=True,
    )

    label: Mapped[str] = mapped_column(String(100), nullable=False)

    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="scanner",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
