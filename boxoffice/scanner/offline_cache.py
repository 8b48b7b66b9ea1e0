"""
Offline verification from a manifest synced ahead of time.

The device never holds the signing secret. A presented signature is accepted
only if it equals, in constant time, the signature cached for that token.
Admissions made offline are queued and uploaded once the device reconnects;
the server resolves conflicts (first scan wins).
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from boxoffice.core.logging import get_logger
from boxoffice.scanner.online import ScannerApiClient
from boxoffice.services.signature_codec import constant_time_equals

logger = get_logger(__name__)

SIGNED_METHODS = ("camera", "tap")


@dataclass
class CachedTicket:
    token: str
    signature: str
    code: str
    status: str
    entries_remaining: int
    holder_name: str | None = None


class OfflineTicketCache:
    def __init__(self, event_id: str | None = None):
        self.event_id = event_id
        self.synced_at: str | None = None
        self._tickets: dict[str, CachedTicket] = {}
        self._pending: list[dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self._tickets)

    def __contains__(self, token: str) -> bool:
        return token in self._tickets

    def get(self, token: str) -> CachedTicket | None:
        return self._tickets.get(token)

    @property
    def pending_scans(self) -> list[dict[str, Any]]:
        return list(self._pending)

    def load_manifest(self, manifest: dict[str, Any]) -> int:
        """Replace the cache with a manifest as served by the API."""
        tickets: dict[str, CachedTicket] = {}
        for entry in manifest.get("tickets", []):
            tickets[entry["token"]] = CachedTicket(
                token=entry["token"],
                signature=entry["signature"],
                code=entry.get("code", ""),
                status=entry.get("status", "issued"),
                entries_remaining=int(entry.get("entries_remaining", 1)),
                holder_name=entry.get("holder_name"),
            )
        # entries admitted here but not yet uploaded stay spent
        for scan in self._pending:
            cached = tickets.get(scan["token"])
            if cached is not None and cached.entries_remaining > 0:
                cached.entries_remaining -= 1

        self._tickets = tickets
        self.event_id = manifest.get("event_id", self.event_id)
        self.synced_at = manifest.get("generated_at") or datetime.now(timezone.utc).isoformat()
        logger.info("Offline cache loaded %s tickets for event %s", len(tickets), self.event_id)
        return len(tickets)

    async def sync(self, client: ScannerApiClient, event_id: str | None = None) -> int:
        event_id = event_id or self.event_id
        if not event_id:
            raise ValueError("event_id is required to sync the offline cache")
        return self.load_manifest(await client.fetch_manifest(event_id))

    def verify(self, token: str, signature: str | None) -> bool:
        cached = self._tickets.get(token)
        if cached is None or not signature:
            return False
        return constant_time_equals(cached.signature, signature)

    def admit(
        self,
        token: str,
        signature: str | None,
        *,
        method: str = "camera",
        device_id: str | None = None,
        now: datetime | None = None,
    ) -> tuple[bool, str]:
        cached = self._tickets.get(token)

        if method in SIGNED_METHODS:
            if not signature:
                return False, "missing_signature"
            if not self.verify(token, signature):
                return False, "not_in_cache" if cached is None else "invalid_signature"
        elif method == "manual":
            logger.warning("Offline manual entry by %s: signature check bypassed", device_id or "device")
            if cached is None:
                return False, "not_in_cache"
        else:
            return False, "unsupported_method"

        if cached.status in ("cancelled", "refunded"):
            return False, f"ticket_{cached.status}"
        if cached.entries_remaining <= 0:
            return False, "already_used"

        cached.entries_remaining -= 1
        cached.status = "used"
        self._pending.append(
            {
                "token": token,
                "signature": signature,
                "method": method,
                "scanned_at": (now or datetime.now(timezone.utc)).isoformat(),
                "device_id": device_id,
            }
        )
        return True, "admitted"

    async def flush(self, client: ScannerApiClient) -> dict[str, Any] | None:
        """Upload queued admissions; they are dropped locally only after the server accepts the batch."""
        if not self._pending:
            return None
        batch = list(self._pending)
        result = await client.upload_scans(batch)
        del self._pending[: len(batch)]
        if result.get("conflicts"):
            logger.warning("Server reported %s offline scan conflicts", result["conflicts"])
        return result

    # -----------------------------
    # Persistence across restarts
    # -----------------------------
    def save(self, path: str | Path) -> None:
        data = {
            "event_id": self.event_id,
            "synced_at": self.synced_at,
            "tickets": [asdict(t) for t in self._tickets.values()],
            "pending": self._pending,
        }
        Path(path).write_text(json.dumps(data), encoding="utf-8")

    @classmethod
    def load(cls, path: str | Path) -> "OfflineTicketCache":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        cache = cls(event_id=data.get("event_id"))
        cache.synced_at = data.get("synced_at")
        cache._tickets = {t["token"]: CachedTicket(**t) for t in data.get("tickets", [])}
        cache._pending = list(data.get("pending", []))
        return cache
