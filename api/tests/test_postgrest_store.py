from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from dispatch_api.services.postgrest import PostgrestStore, encode_filters
from dispatch_api.services.store import (
    StoreColumnMissingError,
    StoreConflictError,
    StoreTableMissingError,
    StoreTimeoutError,
    StoreUnavailableError,
)


def _store(handler) -> PostgrestStore:
    return PostgrestStore(
        "https://project.supabase.co/",
        "service-key",
        transport=httpx.MockTransport(handler),
    )


def test_encode_filters_covers_eq_in_and_null() -> None:
    params = encode_filters({"job_id": "job-1", "state": ["accepted", "offer sent"], "pro_email": None})
    assert params == [
        ("job_id", "eq.job-1"),
        ("state", 'in.(accepted,"offer sent")'),
        ("pro_email", "is.null"),
    ]


def test_select_sends_filters_order_and_auth_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"job_id": "job-1", "status": "accepted"}])

    async def scenario() -> list[dict]:
        store = _store(handler)
        try:
            return await store.select("h2s_dispatch_jobs", {"job_id": "job-1"}, limit=1, order_by="created_at", descending=True)
        finally:
            await store.close()

    rows = asyncio.run(scenario())

    assert rows == [{"job_id": "job-1", "status": "accepted"}]
    request = seen[0]
    assert request.url.path == "/rest/v1/h2s_dispatch_jobs"
    assert request.url.params["job_id"] == "eq.job-1"
    assert request.url.params["order"] == "created_at.desc.nullslast"
    assert request.url.params["limit"] == "1"
    assert request.headers["apikey"] == "service-key"
    assert request.headers["authorization"] == "Bearer service-key"


def test_update_asks_for_representation() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    async def scenario() -> list[dict]:
        store = _store(handler)
        try:
            return await store.update("assignments", {"job_id": "job-1", "pro_id": "pro-9"}, {"state": "accepted"})
        finally:
            await store.close()

    assert asyncio.run(scenario()) == []
    request = seen[0]
    assert request.method == "PATCH"
    assert request.headers["prefer"] == "return=representation"
    assert json.loads(request.content) == {"state": "accepted"}


@pytest.mark.parametrize(
    ("status_code", "body", "expected"),
    [
        (404, {"code": "PGRST205", "message": "Could not find the table"}, StoreTableMissingError),
        (400, {"code": "42703", "message": "column does not exist"}, StoreColumnMissingError),
        (409, {"code": "23505", "message": "duplicate key"}, StoreConflictError),
        (503, {"message": "upstream unavailable"}, StoreUnavailableError),
    ],
)
def test_error_responses_map_to_store_errors(status_code: int, body: dict, expected: type[Exception]) -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body)

    async def scenario() -> None:
        store = _store(handler)
        try:
            await store.insert("assignments", {"job_id": "job-1"})
        finally:
            await store.close()

    with pytest.raises(expected):
        asyncio.run(scenario())


def test_transport_timeout_maps_to_timeout_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async def scenario() -> None:
        store = _store(handler)
        try:
            await store.select("assignments")
        finally:
            await store.close()

    with pytest.raises(StoreTimeoutError):
        asyncio.run(scenario())


def test_missing_configuration_is_unavailable() -> None:
    store = PostgrestStore(None, None)
    with pytest.raises(StoreUnavailableError):
        asyncio.run(store.select("assignments"))
