from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from boxoffice.api.deps import get_webhook_gate
from boxoffice.services.webhook_service import WebhookGate

router = APIRouter()


def _source(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@router.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    gate: WebhookGate = Depends(get_webhook_gate),
):
    # Raw bytes: the signature covers the body exactly as sent
    payload = await request.body()
    result = await gate.handle(payload, request.headers, source=_source(request))
    return JSONResponse(status_code=result.status_code, content=result.body)
