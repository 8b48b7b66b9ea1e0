"""
QR / NFC credential payloads.

Accepted shapes:

* ``{"token": "...", "signature": "...", "meta": {...}}`` (issued today)
* ``token|signature``
* a bare token (manual entry, old printouts) - parses with no signature
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field


class InvalidPayload(ValueError):
    pass


@dataclass(frozen=True)
class ScannedCredential:
    token: str
    signature: str | None = None
    meta: dict = field(default_factory=dict)


def encode_qr_payload(token: str, signature: str, meta: dict | None = None) -> str:
    data: dict = {"token": token, "signature": signature}
    if meta:
        data["meta"] = meta
    return json.dumps(data, separators=(",", ":"))


def parse_qr_payload(raw: str) -> ScannedCredential:
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidPayload("empty payload")
    raw = raw.strip()

    if raw.startswith("{"):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise InvalidPayload("payload is not valid JSON") from e
        token = data.get("token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise InvalidPayload("payload has no token")
        signature = data.get("signature")
        meta = data.get("meta")
        return ScannedCredential(
            token=token,
            signature=signature if isinstance(signature, str) and signature else None,
            meta=meta if isinstance(meta, dict) else {},
        )

    if "|" in raw:
        token, _, signature = raw.partition("|")
        if not token:
            raise InvalidPayload("payload has no token")
        return ScannedCredential(token=token, signature=signature or None)

    return ScannedCredential(token=raw)
