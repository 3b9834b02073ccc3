from __future__ import annotations

from typing import Any

import httpx


class DispatchClient:
    """Admin client for the dispatch API's maintenance endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key}
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def reconcile_job_status(self, limit: int = 200, *, dry_run: bool = False) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/dispatch/reconcile/job-status",
                json={"limit": limit, "dry_run": dry_run},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

    async def get_schema(self) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.get(f"{self.base_url}/dispatch/schema", headers=self.headers)
            response.raise_for_status()
            return response.json()
