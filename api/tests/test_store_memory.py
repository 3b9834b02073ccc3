from __future__ import annotations

import asyncio

import pytest

from dispatch_api.services.store import (
    InMemoryStore,
    StoreColumnMissingError,
    StoreConflictError,
    StoreTableMissingError,
    StoreUnavailableError,
)


def _store() -> InMemoryStore:
    store = InMemoryStore()
    store.create_table(
        "assignments",
        columns={"id", "job_id", "pro_id", "state", "created_at"},
        rows=[
            {"id": "a1", "job_id": "job-1", "pro_id": "pro-1", "state": "offer_sent", "created_at": "2024-01-02"},
            {"id": "a2", "job_id": "job-1", "pro_id": "pro-2", "state": "declined", "created_at": "2024-01-03"},
            {"id": "a3", "job_id": 7, "pro_id": "pro-1", "state": "accepted", "created_at": None},
        ],
        unique=[("job_id", "pro_id")],
    )
    return store


def test_select_filters_by_equality_and_membership() -> None:
    store = _store()

    async def scenario() -> None:
        rows = await store.select("assignments", {"job_id": "job-1", "state": ["declined", "accepted"]})
        assert [row["id"] for row in rows] == ["a2"]

        # Mixed id types compare textually, like PostgREST filters.
        numeric = await store.select("assignments", {"job_id": "7"})
        assert [row["id"] for row in numeric] == ["a3"]

    asyncio.run(scenario())


def test_select_orders_with_nulls_last_and_limits() -> None:
    store = _store()
    rows = asyncio.run(store.select("assignments", order_by="created_at", descending=True, limit=2))
    assert [row["id"] for row in rows] == ["a2", "a1"]

    everything = asyncio.run(store.select("assignments", order_by="created_at"))
    assert everything[-1]["id"] == "a3"


def test_update_with_no_match_returns_empty_list() -> None:
    store = _store()
    assert asyncio.run(store.update("assignments", {"job_id": "job-9"}, {"state": "accepted"})) == []


def test_unknown_table_and_column_raise_typed_errors() -> None:
    store = _store()
    with pytest.raises(StoreTableMissingError):
        asyncio.run(store.select("nope"))
    with pytest.raises(StoreColumnMissingError):
        asyncio.run(store.select("assignments", {"tech_id": "pro-1"}))
    with pytest.raises(StoreColumnMissingError):
        asyncio.run(store.insert("assignments", {"job_id": "job-2", "tech_email": "x@example.com"}))


def test_insert_generates_id_and_enforces_unique_keys() -> None:
    store = _store()
    row = asyncio.run(store.insert("assignments", {"job_id": "job-2", "pro_id": "pro-1", "state": "offer_sent"}))
    assert row["id"]

    with pytest.raises(StoreConflictError):
        asyncio.run(store.insert("assignments", {"job_id": "job-2", "pro_id": "pro-1", "state": "accepted"}))
    assert len(store.rows("assignments")) == 4


def test_unreachable_store_fails_every_call() -> None:
    store = _store()
    store.reachable = False
    with pytest.raises(StoreUnavailableError):
        asyncio.run(store.select("assignments"))
    with pytest.raises(StoreUnavailableError):
        asyncio.run(store.delete("assignments", {"id": "a1"}))


def test_delete_returns_removed_rows() -> None:
    store = _store()
    removed = asyncio.run(store.delete("assignments", {"pro_id": "pro-1"}))
    assert sorted(row["id"] for row in removed) == ["a1", "a3"]
    assert [row["id"] for row in store.rows("assignments")] == ["a2"]
