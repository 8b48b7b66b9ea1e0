from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel


class PaymentFailureOut(BaseModel):
    id: UUID
    event_reference: str
    payment_reference: Optional[str] = None
    customer_contact: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    error_code: str
    error_summary: Optional[str] = None
    attempts: int
    resolved: bool
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class PaymentFailureList(BaseModel):
    items: List[PaymentFailureOut]
    count: int


class ResolveFailureRequest(BaseModel):
    notes: Optional[str] = None


class RefundRequest(BaseModel):
    reason: Optional[str] = None
    notify_customer: bool = True
