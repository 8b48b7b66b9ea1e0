"""
Database base configuration
"""
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone


# Create declarative base for SQLAlchemy models
Base = declarative_base()


def import_models():
    """Import all models to register them with SQLAlchemy"""
    from boxoffice.models import (  # noqa: F401
        api_key,
        email_queue,
        idempotency_record,
        order,
        payment_event,
        payment_failure,
        security_event,
        ticket,
        ticket_type,
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
