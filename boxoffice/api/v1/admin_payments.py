from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxoffice.api.deps import get_refund_gateway, require_admin
from boxoffice.db.session import get_db, get_session_factory
from boxoffice.schemas.admin import (
    PaymentFailureList,
    PaymentFailureOut,
    RefundRequest,
    ResolveFailureRequest,
)
from boxoffice.services.escalation_service import list_payment_failures, resolve_payment_failure
from boxoffice.services.refund_service import RefundGateway, refund_order

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@router.get("/payment-failures", response_model=PaymentFailureList)
async def admin_list_payment_failures(
    resolved: bool | None = Query(False, description="Filter by resolved flag; omit for unresolved only"),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    items = await list_payment_failures(db, resolved=resolved, limit=limit)
    return PaymentFailureList(
        items=[PaymentFailureOut.model_validate(f) for f in items],
        count=len(items),
    )


@router.post("/payment-failures/{failure_id}/resolve", response_model=PaymentFailureOut)
async def admin_resolve_payment_failure(
    failure_id: UUID,
    body: ResolveFailureRequest,
    db: AsyncSession = Depends(get_db),
):
    failure = await resolve_payment_failure(db, failure_id=failure_id, notes=body.notes)
    if failure is None:
        raise HTTPException(status_code=404, detail="Payment failure not found")
    return PaymentFailureOut.model_validate(failure)


@router.post("/orders/{order_id}/refund")
async def admin_refund_order(
    order_id: UUID,
    body: RefundRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    gateway: RefundGateway = Depends(get_refund_gateway),
):
    result = await refund_order(
        session_factory,
        order_id=order_id,
        gateway=gateway,
        reason=body.reason,
        notify_customer=body.notify_customer,
    )
    if result.failed_step == "MarkRefundPending":
        raise HTTPException(status_code=409, detail=result.to_dict())
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.to_dict())
    return result.to_dict()
