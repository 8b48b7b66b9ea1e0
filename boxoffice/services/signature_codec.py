"""
HMAC-SHA256 authentication tags for ticket tokens.

Two encodings of the same MAC are in circulation:

* ``hex``    - produced at issuance (current scheme)
* ``base64`` - produced by the database-side signer of the previous system

Both verify while ``TICKET_SIGNATURE_ACCEPT_LEGACY`` is on. Which one becomes
authoritative is a product decision; until then neither is dropped.

Verification fails closed: a missing secret, an empty input or any error
while computing the tag yields ``False``.
"""
from __future__ import annotations

import base64
import hashlib
import hmac

from boxoffice.core.config import settings
from boxoffice.core.errors import SigningSecretUnavailable
from boxoffice.core.logging import get_logger
from boxoffice.core.stripe_config import get_ticket_signing_secret

logger = get_logger(__name__)

SCHEME_HEX = "hex"
SCHEME_BASE64 = "base64"
SCHEMES = (SCHEME_HEX, SCHEME_BASE64)


def _mac(token: str, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).digest()


def _encode(mac: bytes, scheme: str) -> str:
    if scheme == SCHEME_HEX:
        return mac.hex()
    if scheme == SCHEME_BASE64:
        return base64.b64encode(mac).decode("ascii")
    raise ValueError(f"Unknown signature scheme: {scheme}")


def constant_time_equals(a: str, b: str) -> bool:
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def sign(token: str, secret: str, scheme: str = SCHEME_HEX) -> str:
    if not secret:
        raise SigningSecretUnavailable("Ticket signing secret is not configured")
    return _encode(_mac(token, secret), scheme)


def verify(
    token: str,
    signature: str,
    secret: str | None,
    *,
    accept_legacy: bool | None = None,
) -> bool:
    if not secret or not token or not signature:
        return False
    if accept_legacy is None:
        accept_legacy = settings.TICKET_SIGNATURE_ACCEPT_LEGACY

    try:
        mac = _mac(token, secret)
        schemes = SCHEMES if accept_legacy else (SCHEME_HEX,)
        # every scheme is compared; no early exit on the first match
        matched = False
        for scheme in schemes:
            matched |= constant_time_equals(_encode(mac, scheme), signature)
        return matched
    except Exception:
        logger.exception("Signature verification raised; rejecting")
        return False


def sign_ticket(token: str, scheme: str | None = None) -> str:
    """Sign with the server-held secret, read at call time."""
    secret = get_ticket_signing_secret()
    if not secret:
        raise SigningSecretUnavailable("TICKET_SIGNING_SECRET is not set")
    return sign(token, secret, scheme or settings.TICKET_SIGNATURE_SCHEME)


def verify_ticket(token: str, signature: str) -> bool:
    secret = get_ticket_signing_secret()
    if not secret:
        logger.error("TICKET_SIGNING_SECRET is not set; all ticket verification fails closed")
        return False
    return verify(token, signature, secret)
