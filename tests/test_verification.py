import logging
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from boxoffice.models.ticket import Ticket
from boxoffice.services.fulfillment_service import fulfill_order

from conftest import EVENT_ID, SCANNER_KEY, fulfillment_request

SCANNER = {"X-API-Key": SCANNER_KEY}


@pytest_asyncio.fixture
async def ga_order(session_factory, ticket_types):
    return await fulfill_order(
        session_factory, fulfillment_request(ticket_types.ga, 2, payment_reference="pi_door")
    )


@pytest_asyncio.fixture
async def vip_order(session_factory, ticket_types):
    return await fulfill_order(
        session_factory, fulfillment_request(ticket_types.vip, 1, payment_reference="pi_table")
    )


async def _ticket(session_factory, token) -> Ticket:
    async with session_factory() as db:
        return (await db.execute(select(Ticket).where(Ticket.token == token))).scalar_one()


@pytest.mark.asyncio
async def test_verify_accepts_issued_signature_only(client, ga_order):
    t = ga_order.tickets[0]
    other = ga_order.tickets[1]

    good = await client.post("/api/v1/tickets/verify", json={"token": t.token, "signature": t.signature})
    swapped = await client.post("/api/v1/tickets/verify", json={"token": t.token, "signature": other.signature})
    empty = await client.post("/api/v1/tickets/verify", json={})

    assert good.json() == {"valid": True}
    assert swapped.json() == {"valid": False}
    assert empty.status_code == 200
    assert empty.json() == {"valid": False}


@pytest.mark.asyncio
async def test_verify_without_secret_is_indistinguishable_from_forgery(client, ga_order, monkeypatch):
    t = ga_order.tickets[0]
    monkeypatch.delenv("TICKET_SIGNING_SECRET")

    resp = await client.post("/api/v1/tickets/verify", json={"token": t.token, "signature": t.signature})
    assert resp.status_code == 200
    assert resp.json() == {"valid": False}


@pytest.mark.asyncio
async def test_camera_scan_admits_once(client, session_factory, ga_order):
    t = ga_order.tickets[0]
    payload = {"token": t.token, "signature": t.signature, "method": "camera"}

    first = await client.post("/api/v1/tickets/scan", json=payload, headers=SCANNER)
    second = await client.post("/api/v1/tickets/scan", json=payload, headers=SCANNER)

    assert first.status_code == 200
    assert first.json()["admitted"] is True
    assert first.json()["reason"] == "admitted"
    assert first.json()["ticket_code"] == t.code
    assert first.json()["entries_remaining"] == 0

    assert second.json()["admitted"] is False
    assert second.json()["reason"] == "already_used"

    stored = await _ticket(session_factory, t.token)
    assert stored.status == "used"
    assert stored.entry_count == 1
    assert stored.scanned_by == "north-gate"
    assert stored.used_at is not None


@pytest.mark.asyncio
async def test_signed_methods_require_a_signature(client, ga_order):
    t = ga_order.tickets[0]

    unsigned = await client.post("/api/v1/tickets/scan", json={"token": t.token, "method": "tap"}, headers=SCANNER)
    forged = await client.post(
        "/api/v1/tickets/scan",
        json={"token": t.token, "signature": "0" * 64, "method": "camera"},
        headers=SCANNER,
    )

    assert unsigned.json() == {
        "admitted": False,
        "reason": "missing_signature",
        "ticket_code": None,
        "holder_name": None,
        "status": None,
        "entries_remaining": None,
    }
    assert forged.json()["reason"] == "invalid_signature"


@pytest.mark.asyncio
async def test_manual_entry_bypasses_signature_with_a_warning(client, ga_order, caplog):
    t = ga_order.tickets[1]
    caplog.set_level(logging.WARNING)

    resp = await client.post("/api/v1/tickets/scan", json={"token": t.token, "method": "manual"}, headers=SCANNER)

    assert resp.json()["admitted"] is True
    assert "signature check bypassed" in caplog.text


@pytest.mark.asyncio
async def test_unknown_token_is_not_found(client, ticket_types):
    resp = await client.post("/api/v1/tickets/scan", json={"token": "nope", "method": "manual"}, headers=SCANNER)
    assert resp.json()["admitted"] is False
    assert resp.json()["reason"] == "not_found"


@pytest.mark.asyncio
async def test_scanner_endpoints_need_a_valid_key(client, ga_order):
    t = ga_order.tickets[0]
    payload = {"token": t.token, "signature": t.signature}

    missing = await client.post("/api/v1/tickets/scan", json=payload)
    wrong = await client.post("/api/v1/tickets/scan", json=payload, headers={"X-API-Key": "guess"})
    manifest = await client.get("/api/v1/tickets/manifest", params={"event_id": EVENT_ID})

    assert missing.status_code == 422
    assert wrong.status_code == 401
    assert manifest.status_code == 422


@pytest.mark.asyncio
async def test_vip_pass_allows_bounded_re_entry(client, vip_order):
    t = vip_order.tickets[0]
    payload = {"token": t.token, "signature": t.signature, "method": "camera"}

    reasons = []
    for _ in range(3):
        resp = await client.post("/api/v1/tickets/scan", json=payload, headers=SCANNER)
        reasons.append((resp.json()["admitted"], resp.json()["reason"]))

    assert reasons == [(True, "admitted"), (True, "re_entry"), (False, "already_used")]


@pytest.mark.asyncio
async def test_refunded_ticket_is_refused(client, session_factory, ga_order):
    t = ga_order.tickets[0]
    async with session_factory() as db:
        await db.execute(update(Ticket).where(Ticket.token == t.token).values(status="refunded"))
        await db.commit()

    resp = await client.post(
        "/api/v1/tickets/scan",
        json={"token": t.token, "signature": t.signature},
        headers=SCANNER,
    )
    assert resp.json()["admitted"] is False
    assert resp.json()["reason"] == "ticket_refunded"
    assert resp.json()["status"] == "refunded"


@pytest.mark.asyncio
async def test_manifest_lists_event_tickets_without_secret(client, ga_order, vip_order):
    resp = await client.get("/api/v1/tickets/manifest", params={"event_id": EVENT_ID}, headers=SCANNER)

    assert resp.status_code == 200
    data = resp.json()
    assert data["event_id"] == EVENT_ID
    assert len(data["tickets"]) == 6
    by_token = {entry["token"]: entry for entry in data["tickets"]}
    vip = vip_order.tickets[0]
    assert by_token[vip.token]["signature"] == vip.signature
    assert by_token[vip.token]["entries_remaining"] == 2
    assert "ticket-signing-secret" not in resp.text


@pytest.mark.asyncio
async def test_offline_sync_first_scan_wins(client, session_factory, ga_order):
    t = ga_order.tickets[0]
    base = datetime(2026, 7, 4, 21, 0, tzinfo=timezone.utc)
    scans = [
        {
            "token": t.token,
            "signature": t.signature,
            "scanned_at": (base + timedelta(minutes=5)).isoformat(),
            "device_id": "south-gate",
        },
        {
            "token": t.token,
            "signature": t.signature,
            "scanned_at": base.isoformat(),
            "device_id": "east-gate",
        },
        {"token": "ghost", "signature": "x", "scanned_at": base.isoformat()},
        {"token": ga_order.tickets[1].token, "scanned_at": base.isoformat()},
    ]

    resp = await client.post("/api/v1/tickets/offline-sync", json={"scans": scans}, headers=SCANNER)

    assert resp.status_code == 200
    data = resp.json()
    assert data["accepted"] == 1
    assert data["conflicts"] == 1
    outcomes = sorted((r["outcome"], r["reason"]) for r in data["results"])
    assert outcomes == [
        ("accepted", "admitted"),
        ("conflict", "already_used"),
        ("rejected", "invalid_signature"),
        ("rejected", "missing_signature"),
    ]

    stored = await _ticket(session_factory, t.token)
    assert stored.scanned_by == "east-gate"
    assert stored.entry_count == 1
