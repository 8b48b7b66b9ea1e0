from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class LineItemRequest(BaseModel):
    ticket_type_id: UUID
    quantity: int = Field(..., gt=0, le=100)
    holder_names: List[str] = Field(default_factory=list)


class FulfillmentRequest(BaseModel):
    """Validated order inputs for one confirmed charge."""
    event_id: str = Field(..., min_length=1, max_length=64)
    purchaser_name: Optional[str] = None
    purchaser_email: str = Field(..., min_length=3, max_length=320)
    payment_reference: str = Field(..., min_length=1, max_length=255)
    line_items: List[LineItemRequest] = Field(..., min_length=1)
    amount_total_cents: Optional[int] = None
    currency: str = "usd"
    source_event_id: Optional[str] = None


class MintedTicket(BaseModel):
    ticket_id: UUID
    code: str
    token: str
    signature: str
    ticket_type_id: UUID
    ticket_type_name: str
    holder_name: Optional[str] = None
    guest_number: int = 1


class FulfillmentResult(BaseModel):
    order_id: UUID
    event_id: str
    payment_reference: str
    purchaser_name: Optional[str] = None
    purchaser_email: str
    subtotal_cents: int
    fees_cents: int
    total_cents: int
    currency: str
    tickets: List[MintedTicket]

    def summary(self) -> dict:
        """Response-safe view: no tokens, no signatures."""
        return {
            "order_id": str(self.order_id),
            "payment_reference": self.payment_reference,
            "total_cents": self.total_cents,
            "currency": self.currency,
            "tickets_issued": len(self.tickets),
        }
