import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from boxoffice.db.base import utcnow
from boxoffice.models.idempotency_record import IdempotencyRecord
from boxoffice.services import idempotency_service as ledger


@pytest.mark.asyncio
async def test_first_claim_acquires_and_second_sees_in_progress(session_factory):
    first = await ledger.claim(session_factory, key="evt_1")
    second = await ledger.claim(session_factory, key="evt_1")

    assert first.acquired
    assert second.outcome == ledger.IN_PROGRESS

    record = await ledger.get_record(session_factory, key="evt_1")
    assert record.status == "pending"


@pytest.mark.asyncio
async def test_completed_record_replays_cached_response_from_the_database(session_factory):
    await ledger.claim(session_factory, key="evt_1")
    body = {"status": "ok", "order_id": "abc", "tickets_issued": 2}
    await ledger.complete(session_factory, key="evt_1", status_code=200, body=body)

    # force the durable path
    ledger.response_cache.clear()
    replay = await ledger.claim(session_factory, key="evt_1")

    assert replay.outcome == ledger.REPLAY
    assert replay.status_code == 200
    assert replay.body == body


@pytest.mark.asyncio
async def test_error_outcome_is_cached_too(session_factory):
    await ledger.claim(session_factory, key="evt_bad")
    await ledger.fail(session_factory, key="evt_bad", status_code=200, body={"escalated": True})

    replay = await ledger.claim(session_factory, key="evt_bad")
    assert replay.outcome == ledger.REPLAY
    assert replay.body == {"escalated": True}

    record = await ledger.get_record(session_factory, key="evt_bad")
    assert record.status == "error"


@pytest.mark.asyncio
async def test_pipelines_are_independent(session_factory):
    a = await ledger.claim(session_factory, key="evt_1", pipeline="payment_fulfillment")
    b = await ledger.claim(session_factory, key="evt_1", pipeline="refund")
    assert a.acquired and b.acquired


@pytest.mark.asyncio
async def test_concurrent_claims_have_exactly_one_winner(session_factory):
    results = await asyncio.gather(*[ledger.claim(session_factory, key="evt_race") for _ in range(5)])

    assert sum(1 for r in results if r.acquired) == 1
    assert all(r.outcome == ledger.IN_PROGRESS for r in results if not r.acquired)

    async with session_factory() as db:
        count = (await db.execute(select(func.count(IdempotencyRecord.id)))).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_stale_pending_record_is_taken_over_once(session_factory):
    await ledger.claim(session_factory, key="evt_stale", lease_seconds=0)
    await asyncio.sleep(0.01)

    takeover = await ledger.claim(session_factory, key="evt_stale")
    again = await ledger.claim(session_factory, key="evt_stale")

    assert takeover.acquired and takeover.taken_over
    # the takeover renewed the lease
    assert again.outcome == ledger.IN_PROGRESS

    record = await ledger.get_record(session_factory, key="evt_stale")
    assert record.attempts == 2


@pytest.mark.asyncio
async def test_release_lets_the_next_delivery_start_fresh(session_factory):
    await ledger.claim(session_factory, key="evt_retry")
    await ledger.release(session_factory, key="evt_retry")

    assert (await ledger.claim(session_factory, key="evt_retry")).acquired


@pytest.mark.asyncio
async def test_purge_removes_only_expired_records(session_factory):
    await ledger.claim(session_factory, key="evt_fresh")
    async with session_factory() as db:
        db.add(
            IdempotencyRecord(
                key="evt_old",
                pipeline=ledger.PIPELINE_PAYMENT_FULFILLMENT,
                status="complete",
                cached_status=200,
                cached_body={},
                locked_until=utcnow() - timedelta(days=31),
                expires_at=utcnow() - timedelta(days=1),
            )
        )
        await db.commit()

    assert await ledger.purge_expired(session_factory) == 1
    assert await ledger.get_record(session_factory, key="evt_old") is None
    assert await ledger.get_record(session_factory, key="evt_fresh") is not None


def test_response_cache_expires_and_evicts(monkeypatch):
    cache = ledger.ResponseCache(ttl_seconds=10, max_items=2)
    cache.put("p", "a", 200, {"a": 1})
    cache.put("p", "b", 200, {"b": 1})
    cache.put("p", "c", 200, {"c": 1})

    assert cache.get("p", "a") is None
    assert cache.get("p", "c") == (200, {"c": 1})

    now = ledger.time.monotonic()
    monkeypatch.setattr(ledger.time, "monotonic", lambda: now + 11)
    assert cache.get("p", "c") is None
