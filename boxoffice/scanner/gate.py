from __future__ import annotations

from dataclasses import dataclass

from boxoffice.core.logging import get_logger
from boxoffice.scanner.offline_cache import OfflineTicketCache
from boxoffice.scanner.online import ScannerApiClient
from boxoffice.scanner.payload import InvalidPayload, parse_qr_payload

logger = get_logger(__name__)

ONLINE = "online"
OFFLINE = "offline"
SIGNED_METHODS = ("camera", "tap")


@dataclass
class ScanDecision:
    admitted: bool
    reason: str
    mode: str
    token: str | None = None


class GateScanner:
    """
    Door-side decision maker. The mode is explicit: online asks the server,
    offline uses the synced cache. An online failure is a rejection, not a
    silent switch to offline.
    """

    def __init__(
        self,
        *,
        mode: str = ONLINE,
        client: ScannerApiClient | None = None,
        cache: OfflineTicketCache | None = None,
        device_id: str | None = None,
    ):
        if mode not in (ONLINE, OFFLINE):
            raise ValueError(f"Unknown scanner mode: {mode}")
        if mode == ONLINE and client is None:
            raise ValueError("Online mode needs a ScannerApiClient")
        if mode == OFFLINE and cache is None:
            raise ValueError("Offline mode needs an OfflineTicketCache")
        self.mode = mode
        self.client = client
        self.cache = cache
        self.device_id = device_id

    def go_offline(self) -> None:
        if self.cache is None:
            raise ValueError("No offline cache configured")
        self.mode = OFFLINE

    def go_online(self) -> None:
        if self.client is None:
            raise ValueError("No API client configured")
        self.mode = ONLINE

    async def scan(self, raw: str, *, method: str = "camera") -> ScanDecision:
        try:
            credential = parse_qr_payload(raw)
        except InvalidPayload as e:
            logger.info("Unreadable credential: %s", e)
            return ScanDecision(False, "unreadable", self.mode)

        token = credential.token
        if method in SIGNED_METHODS and not credential.signature:
            return ScanDecision(False, "missing_signature", self.mode, token)

        if self.mode == ONLINE:
            result = await self.client.scan(token, credential.signature, method)
            return ScanDecision(bool(result.get("admitted")), result.get("reason", "rejected"), self.mode, token)

        admitted, reason = self.cache.admit(
            token,
            credential.signature,
            method=method,
            device_id=self.device_id,
        )
        return ScanDecision(admitted, reason, self.mode, token)
