from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from dispatch_api.services.store import (
    Filters,
    Row,
    StoreColumnMissingError,
    StoreConflictError,
    StoreQueryError,
    StoreTableMissingError,
    StoreTimeoutError,
    StoreUnavailableError,
    is_multi_value,
)

logger = logging.getLogger(__name__)

_TABLE_MISSING_CODES = {"42P01", "PGRST205", "PGRST106"}
_COLUMN_MISSING_CODES = {"42703", "PGRST204", "PGRST100"}
_CONFLICT_CODES = {"23505"}
_RESERVED_FILTER_CHARS = set(',()."\\ ')


class PostgrestStore:
    """Structured store backed by a Supabase/PostgREST endpoint."""

    def __init__(
        self,
        base_url: str | None,
        service_key: str | None,
        *,
        timeout_seconds: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.service_key = service_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        limit: int | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[Row]:
        params = encode_filters(filters or {})
        params.append(("select", "*"))
        if order_by:
            direction = "desc" if descending else "asc"
            params.append(("order", f"{order_by}.{direction}.nullslast"))
        if limit is not None:
            params.append(("limit", str(max(0, limit))))
        response = await self._request("GET", table, params=params)
        return _as_rows(response)

    async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> list[Row]:
        response = await self._request(
            "PATCH",
            table,
            params=encode_filters(filters),
            json=dict(patch),
            prefer="return=representation",
        )
        return _as_rows(response)

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        response = await self._request("POST", table, json=dict(row), prefer="return=representation")
        rows = _as_rows(response)
        return rows[0] if rows else dict(row)

    async def delete(self, table: str, filters: Filters) -> list[Row]:
        response = await self._request(
            "DELETE",
            table,
            params=encode_filters(filters),
            prefer="return=representation",
        )
        return _as_rows(response)

    def _get_client(self) -> httpx.AsyncClient:
        if not self.base_url or not self.service_key:
            raise StoreUnavailableError("Supabase URL and service key are required")
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/rest/v1",
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {self.service_key}",
                    "Accept": "application/json",
                },
                timeout=self.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: list[tuple[str, str]] | None = None,
        json: dict[str, Any] | None = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        client = self._get_client()
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await client.request(method, f"/{table}", params=params, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise StoreTimeoutError(f"{method} {table} timed out") from exc
        except httpx.HTTPError as exc:
            raise StoreUnavailableError(f"{method} {table} failed: {exc}") from exc

        if response.status_code >= 400:
            raise _error_for_response(table, response)
        return response


def encode_filters(filters: Filters) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = []
    for column, value in filters.items():
        if value is None:
            params.append((column, "is.null"))
        elif is_multi_value(value):
            joined = ",".join(_quote_filter_value(item) for item in value)
            params.append((column, f"in.({joined})"))
        else:
            params.append((column, f"eq.{_format_scalar(value)}"))
    return params


def _format_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quote_filter_value(value: Any) -> str:
    text = _format_scalar(value)
    if any(char in _RESERVED_FILTER_CHARS for char in text):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def _as_rows(response: httpx.Response) -> list[Row]:
    if not response.content:
        return []
    payload = response.json()
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    if isinstance(payload, dict):
        return [payload]
    return []


def _error_for_response(table: str, response: httpx.Response) -> Exception:
    code = ""
    message = response.text
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = str(body.get("code") or "")
        message = str(body.get("message") or message)

    detail = f"{table}: {message}" if message else table
    if code in _TABLE_MISSING_CODES or response.status_code == 404:
        return StoreTableMissingError(detail)
    if code in _COLUMN_MISSING_CODES:
        return StoreColumnMissingError(detail)
    if code in _CONFLICT_CODES or response.status_code == 409:
        return StoreConflictError(detail)
    if response.status_code >= 500:
        return StoreUnavailableError(detail)
    if response.status_code in {401, 403}:
        logger.warning("postgrest denied request table=%s status=%s code=%s", table, response.status_code, code)
    return StoreQueryError(detail)
