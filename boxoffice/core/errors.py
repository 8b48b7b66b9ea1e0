"""
Error taxonomy for the payment-to-fulfillment pipeline.

Each error carries a stable ``code`` (what operators and API clients see), the
HTTP status it maps to when it reaches a route, and whether the retry
controller may try the failed step again.
"""
from __future__ import annotations

import asyncio

import httpx
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class PipelineError(Exception):
    code = "pipeline_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


# (a) authentication
class WebhookAuthenticationError(PipelineError):
    code = "invalid_signature"
    http_status = 401


class SourceBlocked(PipelineError):
    code = "source_blocked"
    http_status = 429


# (b) validation
class PayloadValidationError(PipelineError):
    code = "invalid_payload"
    http_status = 400


class UnsupportedEventType(PayloadValidationError):
    code = "unsupported_event_type"


class UnknownTicketType(PayloadValidationError):
    code = "unknown_ticket_type"

    def __init__(self, ticket_type_id):
        super().__init__(f"Unknown ticket type: {ticket_type_id}")
        self.ticket_type_id = ticket_type_id


# (c) inventory / business
class InsufficientInventory(PipelineError):
    code = "insufficient_inventory"
    http_status = 409

    def __init__(self, item: str, requested: int, available: int):
        super().__init__(
            f"Not enough tickets available for {item}. "
            f"Requested: {requested}, Available: {available}"
        )
        self.item = item
        self.requested = requested
        self.available = available

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(item=self.item, requested=self.requested, available=self.available)
        return data


class DuplicatePaymentReference(PipelineError):
    code = "duplicate_payment_reference"
    http_status = 409

    def __init__(self, payment_reference: str, order_id=None):
        super().__init__(f"Payment {payment_reference} already fulfilled")
        self.payment_reference = payment_reference
        self.order_id = order_id


class InvalidStatusTransition(PipelineError):
    code = "invalid_status_transition"
    http_status = 409


class SigningSecretUnavailable(PipelineError):
    code = "signing_secret_unavailable"
    http_status = 500


# (d) transient infrastructure
class TransientFulfillmentError(PipelineError):
    code = "transient_failure"
    http_status = 500
    retryable = True


# (e) delivery
class DeliveryError(PipelineError):
    code = "delivery_failed"
    http_status = 502
    retryable = True


class RetryExhausted(PipelineError):
    code = "retries_exhausted"
    http_status = 500

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


_TRANSIENT_TYPES = (
    OperationalError,
    InterfaceError,
    PoolTimeoutError,
    ConnectionError,
    asyncio.TimeoutError,
    TimeoutError,
    httpx.TransportError,
)


def is_retryable(err: BaseException) -> bool:
    if isinstance(err, PipelineError):
        return err.retryable
    if isinstance(err, _TRANSIENT_TYPES):
        return True
    # Disconnects surface as DBAPIError with connection_invalidated set
    if isinstance(err, DBAPIError) and err.connection_invalidated:
        return True
    return False


def safe_error_summary(err: BaseException | str | None, max_len: int = 200) -> str | None:
    if not err:
        return None
    s = str(err).replace("\n", " ").replace("\r", " ").strip()
    if len(s) <= max_len:
        return s
    return s[:max_len] + "…"


def error_code(err: BaseException) -> str:
    if isinstance(err, RetryExhausted):
        return error_code(err.last_error)
    if isinstance(err, PipelineError):
        return err.code
    return type(err).__name__
