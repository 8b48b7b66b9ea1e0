import hashlib
import hmac
import json
import os
import tempfile
import time
from types import SimpleNamespace

# Configure the environment before any boxoffice module reads it
_TMP = tempfile.mkdtemp(prefix="boxoffice-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP}/unused.db"
os.environ["USE_ARQ_WORKER"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["TICKET_SIGNING_SECRET"] = "ticket-signing-secret"
os.environ["LOG_DIR"] = _TMP
os.environ["ADMIN_API_ENABLED"] = "true"
os.environ["ADMIN_KEY"] = "admin-test-key"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from boxoffice.api.deps import get_refund_gateway, get_webhook_gate
from boxoffice.db.base import Base, import_models
from boxoffice.db.session import get_db, get_session_factory, make_async_engine, make_session_factory
from boxoffice.main import app
from boxoffice.models.api_key import ApiKey
from boxoffice.models.ticket_type import TicketType
from boxoffice.schemas.fulfillment import FulfillmentRequest, LineItemRequest
from boxoffice.security.api_key import hash_key
from boxoffice.services import idempotency_service, security_service
from boxoffice.services.background import BackgroundDispatcher
from boxoffice.services.retry_service import RetryPolicy
from boxoffice.services.webhook_service import WebhookGate

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
EVENT_ID = "evt-summer-party"
SCANNER_KEY = "scanner-test-key"
ADMIN_HEADERS = {"X-Admin-Key": "admin-test-key"}

NO_DELAY = RetryPolicy(attempts=5, base_delay=0, max_delay=0, jitter=0)


async def no_sleep(_delay):
    return None


def sign_webhook(body: bytes, *, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def checkout_event(
    event_id: str,
    line_items: list[dict],
    *,
    payment_intent: str | None = None,
    amount_total: int = 5000,
    email: str = "fan@example.com",
    name: str = "Sam Fan",
) -> dict:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": int(time.time()),
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "object": "checkout.session",
                "payment_intent": payment_intent or f"pi_{event_id}",
                "payment_status": "paid",
                "amount_total": amount_total,
                "currency": "usd",
                "customer_details": {"email": email, "name": name},
                "metadata": {
                    "event_id": EVENT_ID,
                    "customer_email": email,
                    "customer_name": name,
                    "line_items": json.dumps(line_items),
                },
            }
        },
    }


def webhook_request(event: dict, **sign_kwargs) -> tuple[bytes, dict]:
    body = json.dumps(event).encode()
    return body, {"stripe-signature": sign_webhook(body, **sign_kwargs), "content-type": "application/json"}


def fulfillment_request(ticket_type, quantity: int = 1, *, payment_reference: str, **kwargs) -> FulfillmentRequest:
    return FulfillmentRequest(
        event_id=EVENT_ID,
        purchaser_name=kwargs.pop("purchaser_name", "Sam Fan"),
        purchaser_email=kwargs.pop("purchaser_email", "fan@example.com"),
        payment_reference=payment_reference,
        line_items=[LineItemRequest(ticket_type_id=ticket_type.id, quantity=quantity)],
        **kwargs,
    )


@pytest.fixture(autouse=True)
def _reset_local_caches():
    idempotency_service.response_cache.clear()
    security_service.clear_local_blocks()
    yield
    idempotency_service.response_cache.clear()
    security_service.clear_local_blocks()


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = make_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'boxoffice.db'}")
    import_models()
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def ticket_types(session_factory):
    async with session_factory() as db:
        ga = TicketType(
            event_id=EVENT_ID,
            name="General Admission",
            kind="ga",
            unit_price_cents=2500,
            unit_fee_cents=0,
            total_inventory=100,
            tickets_sold=0,
            guests_per_unit=1,
            max_entries=1,
        )
        vip = TicketType(
            event_id=EVENT_ID,
            name="VIP Table",
            kind="vip_table",
            unit_price_cents=40000,
            unit_fee_cents=2000,
            total_inventory=2,
            tickets_sold=0,
            guests_per_unit=4,
            max_entries=2,
        )
        last = TicketType(
            event_id=EVENT_ID,
            name="Last Call",
            kind="ga",
            unit_price_cents=2500,
            unit_fee_cents=0,
            total_inventory=1,
            tickets_sold=0,
            guests_per_unit=1,
            max_entries=1,
        )
        db.add_all([ga, vip, last])
        db.add(ApiKey(key_hash=hash_key(SCANNER_KEY), label="north-gate", role="scanner", is_active=True))
        await db.commit()
    return SimpleNamespace(ga=ga, vip=vip, last=last)


@pytest_asyncio.fixture
async def dispatcher(engine):
    d = BackgroundDispatcher()
    yield d
    # detached work (confirmation emails) must finish before the engine is disposed
    await d.drain(timeout=5)


@pytest.fixture
def gate(session_factory, dispatcher):
    return WebhookGate(
        session_factory,
        dispatcher=dispatcher,
        retry_policy=NO_DELAY,
        sleep=no_sleep,
    )


class FakeRefundGateway:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def refund(self, *, payment_reference, amount_cents, idempotency_key):
        self.calls.append((payment_reference, amount_cents, idempotency_key))
        if self.fail:
            raise RuntimeError("gateway declined refund")
        return f"re_{len(self.calls)}"


@pytest.fixture
def refund_gateway():
    return FakeRefundGateway()


@pytest_asyncio.fixture
async def client(session_factory, gate, refund_gateway):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_webhook_gate] = lambda: gate
    app.dependency_overrides[get_refund_gateway] = lambda: refund_gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
