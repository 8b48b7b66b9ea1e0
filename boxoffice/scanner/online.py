from __future__ import annotations

from typing import Any

import httpx

from boxoffice.core.logging import get_logger

logger = get_logger(__name__)


class ScannerApiClient:
    """
    HTTP client a gate device uses to talk to the box office API.

    ``verify`` and ``scan`` fail closed: any transport error, non-2xx answer
    or unexpected body counts as a rejection, never as an admission.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"X-API-Key": api_key} if api_key else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._headers = headers
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def verify(self, token: str, signature: str) -> bool:
        try:
            resp = await self._client.post(
                "/api/v1/tickets/verify",
                json={"token": token, "signature": signature},
                headers=self._headers,
            )
            if resp.status_code != 200:
                return False
            return resp.json().get("valid") is True
        except Exception as e:
            logger.warning("Online verification unavailable, rejecting: %s", e)
            return False

    async def scan(self, token: str, signature: str | None, method: str) -> dict[str, Any]:
        try:
            resp = await self._client.post(
                "/api/v1/tickets/scan",
                json={"token": token, "signature": signature, "method": method},
                headers=self._headers,
            )
            resp.raise_for_status()
            data = resp.json()
        except Exception as e:
            logger.warning("Online scan failed, rejecting: %s", e)
            return {"admitted": False, "reason": "network_error"}

        if not isinstance(data, dict):
            return {"admitted": False, "reason": "rejected"}
        if data.get("admitted") is not True:
            return {**data, "admitted": False}
        return data

    async def fetch_manifest(self, event_id: str) -> dict[str, Any]:
        resp = await self._client.get(
            "/api/v1/tickets/manifest",
            params={"event_id": event_id},
            headers=self._headers,
        )
        resp.raise_for_status()
        return resp.json()

    async def upload_scans(self, scans: list[dict[str, Any]]) -> dict[str, Any]:
        resp = await self._client.post(
            "/api/v1/tickets/offline-sync",
            json={"scans": scans},
            headers=self._headers,
        )
        resp.raise_for_status()
        return resp.json()
