from __future__ import annotations

from typing import Any

import httpx


class IngestClient:
    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 30.0,
        dispatch_timeout_seconds: float = 420.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self.timeout_seconds = timeout_seconds
        self.dispatch_timeout_seconds = dispatch_timeout_seconds
        self._client = client

    async def dispatch(self, limit: int = 20) -> dict[str, Any]:
        return await self._post("/crawl/dispatch", limit=limit, timeout=self.dispatch_timeout_seconds)

    async def run_refresh(self, limit: int = 50) -> dict[str, Any]:
        return await self._post("/refresh/run", limit=limit, timeout=self.timeout_seconds)

    async def run_normalize(self, limit: int = 20) -> dict[str, Any]:
        return await self._post("/normalize/run", limit=limit, timeout=self.timeout_seconds)

    async def _post(self, path: str, *, limit: int, timeout: float) -> dict[str, Any]:
        if self._client is not None:
            return await self._send(self._client, path, limit=limit, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await self._send(client, path, limit=limit, timeout=timeout)

    async def _send(self, client: httpx.AsyncClient, path: str, *, limit: int, timeout: float) -> dict[str, Any]:
        response = await client.post(
            f"{self.base_url}{path}",
            params={"limit": limit},
            headers=self.headers,
            timeout=timeout,
        )
        response.raise_for_status()
        payload = response.json()
        return payload if isinstance(payload, dict) else {}
