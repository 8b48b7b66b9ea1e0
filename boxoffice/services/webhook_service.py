"""
Webhook ingestion gate for payment gateway notifications.

Order of operations for one delivery:

1. refuse sources over the suspicious-activity threshold (429)
2. authenticate ``t=<unix>,v1=<hmac>`` over ``timestamp + "." + body`` (401)
3. parse the envelope (400)
4. claim the event in the idempotency ledger (replay / 409 / proceed)
5. route by event type; fulfillment runs under the retry controller and
   escalates to an operator when it cannot finish
6. answer within the acknowledgment budget; slower work finishes detached,
   and a failure after the 202 is escalated since no redelivery will follow
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import stripe
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from boxoffice.core.config import settings
from boxoffice.core.errors import (
    DuplicatePaymentReference,
    PayloadValidationError,
    PipelineError,
    RetryExhausted,
    SourceBlocked,
    UnsupportedEventType,
    WebhookAuthenticationError,
    error_code,
)
from boxoffice.core.logging import get_logger
from boxoffice.core.stripe_config import get_webhook_secret
from boxoffice.schemas.fulfillment import FulfillmentRequest, FulfillmentResult
from boxoffice.services import idempotency_service as ledger
from boxoffice.services.background import BackgroundDispatcher, dispatcher as default_dispatcher
from boxoffice.services.escalation_service import escalate_payment_failure
from boxoffice.services.fulfillment_service import fulfill_order
from boxoffice.services.notification_service import queue_confirmation_email
from boxoffice.services.payment_event_service import archive_payment_event
from boxoffice.services.refund_service import apply_gateway_refund
from boxoffice.services.retry_service import RetryPolicy, retry_with_backoff
from boxoffice.services.security_service import is_blocked, record_auth_failure

logger = get_logger(__name__)

SIGNATURE_HEADER = "stripe-signature"

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"
EVENT_CHARGE_REFUNDED = "charge.refunded"

FULFILLMENT_EVENT_TYPES = (EVENT_CHECKOUT_COMPLETED, EVENT_PAYMENT_SUCCEEDED)
SUPPORTED_EVENT_TYPES = FULFILLMENT_EVENT_TYPES + (EVENT_PAYMENT_FAILED, EVENT_CHARGE_REFUNDED)

TRANSIENT_BODY = {"error": "transient_failure", "message": "Temporary failure, retry later"}

Fulfill = Callable[[async_sessionmaker, FulfillmentRequest], Awaitable[FulfillmentResult]]


@dataclass
class GateResponse:
    status_code: int
    body: dict[str, Any]


# -----------------------------
# Authentication
# -----------------------------
def parse_signature_timestamp(header: str) -> int | None:
    for part in header.split(","):
        name, _, value = part.strip().partition("=")
        if name == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None


def verify_webhook_signature(
    raw_body: bytes,
    header: str | None,
    secret: str,
    *,
    tolerance: int,
    now: float | None = None,
) -> None:
    """Raise WebhookAuthenticationError unless the header authenticates the body and is fresh."""
    if not header:
        raise WebhookAuthenticationError("Missing signature header")

    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookAuthenticationError("Body is not valid UTF-8") from e

    timestamp = parse_signature_timestamp(header)
    if timestamp is None:
        raise WebhookAuthenticationError("Signature header has no timestamp")

    # The gateway library only rejects stale timestamps; future ones are ours to refuse
    if timestamp > (now or time.time()) + tolerance:
        raise WebhookAuthenticationError("Timestamp outside the tolerance zone")

    try:
        stripe.WebhookSignature.verify_header(payload, header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise WebhookAuthenticationError(str(e)) from e


# -----------------------------
# Envelope + payload parsing
# -----------------------------
def parse_event(raw_body: bytes) -> dict:
    try:
        event = json.loads(raw_body)
    except ValueError as e:
        raise PayloadValidationError("Body is not valid JSON") from e

    if not isinstance(event, dict):
        raise PayloadValidationError("Event envelope must be an object")
    if not isinstance(event.get("id"), str) or not event["id"]:
        raise PayloadValidationError("Event id missing")
    if not isinstance(event.get("type"), str) or not event["type"]:
        raise PayloadValidationError("Event type missing")
    if not isinstance((event.get("data") or {}).get("object"), dict):
        raise PayloadValidationError("Event data.object missing")
    return event


def _event_object(event: dict) -> dict:
    return event["data"]["object"]


def customer_contact(obj: dict) -> str | None:
    metadata = obj.get("metadata") or {}
    details = obj.get("customer_details") or {}
    return (
        metadata.get("customer_email")
        or obj.get("customer_email")
        or details.get("email")
        or obj.get("receipt_email")
    )


def charged_amount(obj: dict) -> int | None:
    for field in ("amount_total", "amount_received", "amount"):
        value = obj.get(field)
        if isinstance(value, int):
            return value
    return None


def build_fulfillment_request(event: dict) -> FulfillmentRequest:
    """
    Metadata written at checkout: ``event_id``, ``customer_name``,
    ``customer_email`` and ``line_items`` (JSON list of
    ``{ticket_type_id, quantity, holder_names?}``).
    """
    obj = _event_object(event)
    metadata = obj.get("metadata") or {}
    details = obj.get("customer_details") or {}

    if event["type"] == EVENT_CHECKOUT_COMPLETED:
        payment_reference = obj.get("payment_intent") or obj.get("id")
    else:
        payment_reference = obj.get("id")

    line_items = metadata.get("line_items")
    if isinstance(line_items, str):
        try:
            line_items = json.loads(line_items)
        except ValueError as e:
            raise PayloadValidationError("metadata.line_items is not valid JSON") from e

    try:
        return FulfillmentRequest(
            event_id=metadata.get("event_id"),
            purchaser_name=metadata.get("customer_name") or details.get("name"),
            purchaser_email=customer_contact(obj),
            payment_reference=payment_reference,
            line_items=line_items,
            amount_total_cents=charged_amount(obj),
            currency=obj.get("currency") or "usd",
            source_event_id=event["id"],
        )
    except ValidationError as e:
        raise PayloadValidationError(
            f"Fulfillment metadata invalid ({e.error_count()} errors): "
            + "; ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        ) from e


# -----------------------------
# Gate
# -----------------------------
class WebhookGate:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        dispatcher: BackgroundDispatcher | None = None,
        retry_policy: RetryPolicy | None = None,
        fulfill: Fulfill = fulfill_order,
        ack_budget: float | None = None,
        tolerance: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        pipeline: str = ledger.PIPELINE_PAYMENT_FULFILLMENT,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher or default_dispatcher
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.fulfill = fulfill
        self.ack_budget = ack_budget if ack_budget is not None else settings.WEBHOOK_ACK_BUDGET_SECONDS
        self.tolerance = tolerance if tolerance is not None else settings.WEBHOOK_TOLERANCE_SECONDS
        self.sleep = sleep
        self.pipeline = pipeline
        # event id -> loop time after which the gateway has been answered 202
        self._ack_deadlines: dict[str, float] = {}

    async def handle(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        *,
        source: str = "unknown",
    ) -> GateResponse:
        try:
            return await self._handle(raw_body, headers, source)
        except Exception:
            logger.exception("Webhook gate failed before processing could start")
            return GateResponse(500, dict(TRANSIENT_BODY))

    async def _handle(self, raw_body: bytes, headers: Mapping[str, str], source: str) -> GateResponse:
        # 1) Temporarily blocked source
        if await is_blocked(self.session_factory, source):
            return GateResponse(429, SourceBlocked("Too many failed authentication attempts").to_dict())

        # 2) Authenticate before trusting anything in the body
        secret = get_webhook_secret()
        if not secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not set; refusing webhook")
            return GateResponse(500, {"error": "webhook_not_configured", "message": "Webhook not configured"})

        header = headers.get(SIGNATURE_HEADER)
        try:
            verify_webhook_signature(raw_body, header, secret, tolerance=self.tolerance)
        except WebhookAuthenticationError as e:
            await record_auth_failure(self.session_factory, source=source, reason=e.message)
            return GateResponse(401, {"error": e.code, "message": "Signature verification failed"})

        # 3) Envelope
        try:
            event = parse_event(raw_body)
        except PayloadValidationError as e:
            logger.warning("Rejecting malformed webhook from %s: %s", source, e.message)
            return GateResponse(400, e.to_dict())

        event_id = event["id"]
        event_type = event["type"]

        await archive_payment_event(
            self.session_factory, event=event, signature_header=header, source=source
        )

        # 4) Ledger
        claim = await ledger.claim(
            self.session_factory,
            key=event_id,
            pipeline=self.pipeline,
            metadata={"event_type": event_type, "source": source},
        )
        if claim.outcome == ledger.REPLAY:
            logger.info("Replaying cached response for %s", event_id)
            return GateResponse(claim.status_code, claim.body)
        if claim.outcome == ledger.IN_PROGRESS:
            return GateResponse(409, {"status": "processing", "event_id": event_id})

        # 5) + 6) Process within the ack budget; the task keeps running if we stop waiting
        self._ack_deadlines[event_id] = asyncio.get_running_loop().time() + self.ack_budget
        task = self.dispatcher.dispatch(self._process(event), name=f"webhook:{event_id}")
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.ack_budget)
        except asyncio.TimeoutError:
            logger.warning(
                "Event %s exceeded the %.1fs acknowledgment budget; finishing in background",
                event_id,
                self.ack_budget,
            )
            return GateResponse(202, {"status": "accepted", "event_id": event_id, "processing": True})

    async def _process(self, event: dict) -> GateResponse:
        event_id = event["id"]
        event_type = event["type"]
        try:
            if event_type in FULFILLMENT_EVENT_TYPES:
                return await self._fulfil(event)
            if event_type == EVENT_PAYMENT_FAILED:
                return await self._payment_failed(event)
            if event_type == EVENT_CHARGE_REFUNDED:
                return await self._charge_refunded(event)

            err = UnsupportedEventType(f"Unsupported event type: {event_type}")
            logger.warning("Rejecting %s: %s", event_id, err.message)
            body = err.to_dict()
            await ledger.fail(self.session_factory, key=event_id, pipeline=self.pipeline, status_code=400, body=body)
            return GateResponse(400, body)

        except Exception as e:
            if self._acknowledged(event_id):
                # the gateway already has a 2xx and will not redeliver
                logger.exception("Processing %s failed after acknowledgment; escalating", event_id)
                return await self._escalate(event, e, request=None, attempts=0)
            logger.exception("Processing %s failed; releasing claim so the gateway retries", event_id)
            await self._release(event_id)
            return GateResponse(500, dict(TRANSIENT_BODY))
        finally:
            self._ack_deadlines.pop(event_id, None)

    async def _fulfil(self, event: dict) -> GateResponse:
        event_id = event["id"]
        obj = _event_object(event)

        if event["type"] == EVENT_CHECKOUT_COMPLETED and obj.get("payment_status", "paid") != "paid":
            body = {"status": "ok", "event_id": event_id, "ignored": True, "reason": "payment_not_captured"}
            await self._complete(event_id, 200, body)
            return GateResponse(200, body)

        if event["type"] == EVENT_PAYMENT_SUCCEEDED and not (obj.get("metadata") or {}).get("line_items"):
            # checkout payments are fulfilled from checkout.session.completed
            body = {"status": "ok", "event_id": event_id, "ignored": True, "reason": "no_fulfillment_metadata"}
            await self._complete(event_id, 200, body)
            return GateResponse(200, body)

        try:
            request = build_fulfillment_request(event)
        except PayloadValidationError as e:
            # The charge is real but we cannot tell what was bought
            return await self._escalate(event, e, request=None, attempts=0)

        attempts = 0

        async def attempt() -> FulfillmentResult:
            nonlocal attempts
            attempts += 1
            return await self.fulfill(self.session_factory, request)

        try:
            result = await retry_with_backoff(
                attempt,
                policy=self.retry_policy,
                sleep=self.sleep,
                label=f"fulfillment of {event_id}",
            )
        except DuplicatePaymentReference as e:
            logger.info("Payment %s already fulfilled; treating %s as replay", e.payment_reference, event_id)
            body = {
                "status": "ok",
                "event_id": event_id,
                "duplicate": True,
                "order_id": str(e.order_id) if e.order_id else None,
            }
            await self._complete(event_id, 200, body)
            return GateResponse(200, body)
        except (RetryExhausted, PipelineError) as e:
            return await self._escalate(event, e, request=request, attempts=attempts)

        self.dispatcher.dispatch(
            queue_confirmation_email(self.session_factory, result),
            name=f"confirmation:{result.order_id}",
        )

        body = {"status": "ok", "event_id": event_id, "fulfilled": True, **result.summary()}
        await self._complete(event_id, 200, body)
        return GateResponse(200, body)

    async def _payment_failed(self, event: dict) -> GateResponse:
        obj = _event_object(event)
        logger.info(
            "Payment %s failed at the gateway (%s); nothing to fulfil",
            obj.get("id"),
            (obj.get("last_payment_error") or {}).get("code"),
        )
        body = {"status": "ok", "event_id": event["id"], "action": "none"}
        await self._complete(event["id"], 200, body)
        return GateResponse(200, body)

    async def _charge_refunded(self, event: dict) -> GateResponse:
        obj = _event_object(event)
        payment_reference = obj.get("payment_intent") or obj.get("id")

        if not obj.get("refunded"):
            body = {"status": "ok", "event_id": event["id"], "action": "none", "reason": "partial_refund"}
        else:
            outcome = await retry_with_backoff(
                lambda: apply_gateway_refund(self.session_factory, payment_reference=payment_reference),
                policy=self.retry_policy,
                sleep=self.sleep,
                label=f"refund of {payment_reference}",
            )
            body = {"event_id": event["id"], **outcome}

        await self._complete(event["id"], 200, body)
        return GateResponse(200, body)

    async def _escalate(
        self,
        event: dict,
        error: BaseException,
        *,
        request: FulfillmentRequest | None,
        attempts: int,
    ) -> GateResponse:
        """
        Automated retry stops here; a human takes over. The gateway is told the
        event was received so it does not redeliver into the same failure.
        """
        event_id = event["id"]
        obj = _event_object(event)
        try:
            escalation = await escalate_payment_failure(
                self.session_factory,
                event_reference=event_id,
                error=error,
                payment_reference=request.payment_reference if request else obj.get("payment_intent") or obj.get("id"),
                customer_contact=request.purchaser_email if request else customer_contact(obj),
                amount_cents=charged_amount(obj),
                currency=obj.get("currency"),
                attempts=attempts,
                metadata={"event_type": event["type"], "metadata": obj.get("metadata") or {}},
            )
        except Exception as e:
            if self._acknowledged(event_id):
                # no redelivery will come; the pending record stays for the operator
                logger.critical(
                    "Escalation for %s failed after acknowledgment; claim left pending: %s", event_id, e
                )
            else:
                logger.error("Escalation for %s failed, asking the gateway to retry: %s", event_id, e)
                await self._release(event_id)
            return GateResponse(500, {"error": "escalation_failed", "message": "Temporary failure, retry later"})

        body: dict[str, Any] = {
            "status": "received",
            "event_id": event_id,
            "fulfilled": False,
            "escalated": True,
            "failure_id": escalation["failure_id"],
            "error": error_code(error),
        }
        cause = error.last_error if isinstance(error, RetryExhausted) else error
        if isinstance(cause, PipelineError):
            body["detail"] = cause.to_dict()

        await ledger.fail(self.session_factory, key=event_id, pipeline=self.pipeline, status_code=200, body=body)
        return GateResponse(200, body)

    def _acknowledged(self, event_id: str) -> bool:
        deadline = self._ack_deadlines.get(event_id)
        return deadline is not None and asyncio.get_running_loop().time() >= deadline

    async def _complete(self, event_id: str, status_code: int, body: dict) -> None:
        await ledger.complete(
            self.session_factory, key=event_id, pipeline=self.pipeline, status_code=status_code, body=body
        )

    async def _release(self, event_id: str) -> None:
        try:
            await ledger.release(self.session_factory, key=event_id, pipeline=self.pipeline)
        except Exception as e:
            # the lease expires on its own; a later delivery takes the record over
            logger.error("Could not release idempotency claim for %s: %s", event_id, e)
