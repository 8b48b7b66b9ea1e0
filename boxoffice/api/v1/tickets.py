from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.api.deps import get_scanner_key
from boxoffice.db.session import get_db
from boxoffice.models.api_key import ApiKey
from boxoffice.schemas.verification import (
    ManifestResponse,
    OfflineSyncRequest,
    OfflineSyncResponse,
    ScanRequest,
    ScanResponse,
    VerifyRequest,
    VerifyResponse,
)
from boxoffice.services.verification_service import (
    admit,
    build_manifest,
    sync_offline_scans,
    verify_signature,
)

router = APIRouter(prefix="/tickets")


@router.post("/verify", response_model=VerifyResponse)
async def verify_ticket(body: VerifyRequest):
    """
    Recompute and compare. The answer is only ever {"valid": bool}; a missing
    secret and a wrong signature look the same from outside.
    """
    return VerifyResponse(valid=verify_signature(body.token, body.signature))


@router.post("/scan", response_model=ScanResponse)
async def scan_ticket(
    body: ScanRequest,
    db: AsyncSession = Depends(get_db),
    scanner: ApiKey = Depends(get_scanner_key),
):
    result = await admit(
        db,
        token=body.token,
        signature=body.signature,
        method=body.method,
        scanner=scanner.label,
    )
    ticket = result.ticket
    return ScanResponse(
        admitted=result.admitted,
        reason=result.reason,
        ticket_code=ticket.code if ticket else None,
        holder_name=ticket.holder_name if ticket else None,
        status=ticket.status if ticket else None,
        entries_remaining=ticket.entries_remaining if ticket else None,
    )


@router.get("/manifest", response_model=ManifestResponse)
async def ticket_manifest(
    event_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    scanner: ApiKey = Depends(get_scanner_key),
):
    return await build_manifest(db, event_id=event_id)


@router.post("/offline-sync", response_model=OfflineSyncResponse)
async def offline_sync(
    body: OfflineSyncRequest,
    db: AsyncSession = Depends(get_db),
    scanner: ApiKey = Depends(get_scanner_key),
):
    return await sync_offline_scans(db, body.scans, scanner=scanner.label)
