"""
Server side of ticket verification at the door.

``verify_signature`` is the stateless online check: recompute and compare.
``admit`` is the scanning transaction: signature, ticket state and the
re-entry bound, with the ticket row locked so two gates cannot both admit
the last entry.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.core.logging import get_logger
from boxoffice.db.base import utcnow
from boxoffice.models.ticket import Ticket
from boxoffice.schemas.verification import (
    ManifestEntry,
    ManifestResponse,
    OfflineScan,
    OfflineScanResult,
    OfflineSyncResponse,
)
from boxoffice.services.signature_codec import verify_ticket

logger = get_logger(__name__)

SIGNED_METHODS = ("camera", "tap")


@dataclass
class Admission:
    admitted: bool
    reason: str
    ticket: Ticket | None = None


def verify_signature(token: str, signature: str) -> bool:
    """Uniform answer: missing secret, unknown token shape and wrong tag all read False."""
    return verify_ticket(token or "", signature or "")


async def _lock_ticket(db: AsyncSession, token: str) -> Ticket | None:
    return (
        await db.execute(
            select(Ticket)
            .where(Ticket.token == token)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


def _check_credential(token: str, signature: str | None, method: str, scanner: str) -> str | None:
    """Reason to reject before looking the ticket up, or None."""
    if method in SIGNED_METHODS:
        if not signature:
            # unsigned is treated as forged for machine-read credentials
            logger.warning("Rejected unsigned %s scan by %s", method, scanner)
            return "missing_signature"
        if not verify_signature(token, signature):
            logger.warning("Rejected %s scan with bad signature by %s", method, scanner)
            return "invalid_signature"
    elif method == "manual":
        logger.warning("Manual entry by %s: signature check bypassed for token %s...", scanner, token[:6])
    else:
        return "unsupported_method"
    return None


def _apply_entry(ticket: Ticket, scanner: str, at: datetime) -> None:
    ticket.entry_count += 1
    if ticket.used_at is None:
        ticket.used_at = at
    ticket.status = "used"
    ticket.scanned_by = scanner


def _refusal(ticket: Ticket) -> str | None:
    if ticket.status in ("cancelled", "refunded"):
        return f"ticket_{ticket.status}"
    if ticket.entry_count >= ticket.max_entries:
        return "already_used"
    return None


async def admit(
    db: AsyncSession,
    *,
    token: str,
    signature: str | None,
    method: str,
    scanner: str,
) -> Admission:
    rejection = _check_credential(token, signature, method, scanner)
    if rejection:
        return Admission(False, rejection)

    ticket = await _lock_ticket(db, token)
    if ticket is None:
        await db.rollback()
        return Admission(False, "not_found")

    refusal = _refusal(ticket)
    if refusal:
        # nothing changed; commit releases the row lock and keeps the ticket loaded
        await db.commit()
        return Admission(False, refusal, ticket)

    _apply_entry(ticket, scanner, utcnow())
    await db.commit()
    logger.info(
        "Admitted %s via %s by %s (entry %s/%s)",
        ticket.code,
        method,
        scanner,
        ticket.entry_count,
        ticket.max_entries,
    )
    return Admission(True, "admitted" if ticket.entry_count == 1 else "re_entry", ticket)


async def build_manifest(db: AsyncSession, *, event_id: str) -> ManifestResponse:
    """Everything a scanner needs to verify offline. Never includes the secret."""
    tickets = (
        await db.execute(select(Ticket).where(Ticket.event_id == event_id).order_by(Ticket.issued_at))
    ).scalars().all()
    return ManifestResponse(
        event_id=event_id,
        generated_at=utcnow(),
        tickets=[
            ManifestEntry(
                token=t.token,
                signature=t.signature,
                code=t.code,
                status=t.status,
                holder_name=t.holder_name,
                entries_remaining=t.entries_remaining,
            )
            for t in tickets
        ],
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def sync_offline_scans(
    db: AsyncSession,
    scans: list[OfflineScan],
    *,
    scanner: str,
) -> OfflineSyncResponse:
    """
    Apply admissions recorded while a gate was offline. First scan wins: the
    batch is applied oldest first, and an entry the server already counted
    (or another device uploaded earlier) turns later duplicates into conflicts.
    """
    results: list[OfflineScanResult] = []
    accepted = conflicts = 0

    for scan in sorted(scans, key=lambda s: _as_utc(s.scanned_at)):
        device = scan.device_id or scanner
        rejection = _check_credential(scan.token, scan.signature, scan.method, device)
        if rejection:
            results.append(OfflineScanResult(token=scan.token, outcome="rejected", reason=rejection))
            continue

        ticket = await _lock_ticket(db, scan.token)
        if ticket is None:
            results.append(OfflineScanResult(token=scan.token, outcome="unknown", reason="not_found"))
            continue

        refusal = _refusal(ticket)
        if refusal:
            conflicts += 1
            logger.warning(
                "Offline scan conflict for %s from %s: %s (first admitted by %s)",
                ticket.code,
                device,
                refusal,
                ticket.scanned_by,
            )
            results.append(OfflineScanResult(token=scan.token, outcome="conflict", reason=refusal))
            continue

        _apply_entry(ticket, device, _as_utc(scan.scanned_at))
        accepted += 1
        results.append(OfflineScanResult(token=scan.token, outcome="accepted", reason="admitted"))

    await db.commit()
    return OfflineSyncResponse(results=results, accepted=accepted, conflicts=conflicts)
