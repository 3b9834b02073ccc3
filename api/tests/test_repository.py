from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from dispatch_api.services.assignments import ProRef
from dispatch_api.services.repository import (
    DispatchRepository,
    JobFilter,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from dispatch_api.services.schema import ProbeHints
from dispatch_api.services.store import InMemoryStore

ASSIGNMENTS = "h2s_dispatch_job_assignments"
JOBS = "h2s_dispatch_jobs"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _listing_store() -> InMemoryStore:
    store = InMemoryStore()
    store.create_table(
        JOBS,
        rows=[
            {"job_id": "job-1", "status": "accepted", "assigned_to": "pro-9", "order_id": "ord-1", "created_at": _now()},
            {"job_id": "job-2", "status": "pending_assign", "created_at": "2020-01-01T00:00:00Z"},
        ],
    )
    store.create_table(
        "h2s_orders",
        rows=[
            {"order_id": "ord-1", "total": 250, "created_at": _now()},
            {"order_id": "ord-9", "payment_status": "paid", "subtotal": 100},
        ],
    )
    store.create_table("h2s_payouts_ledger", rows=[{"id": "p1", "job_id": "job-1", "amount": 87.5, "status": "approved"}])
    store.create_table("h2s_dispatch_pros", rows=[{"pro_id": "pro-9", "name": "Pat", "phone": "555-0100"}])
    return store


def _listing_repository(store: InMemoryStore) -> DispatchRepository:
    return DispatchRepository(store, payout_tables=["h2s_payouts_ledger"], pro_tables=["h2s_dispatch_pros"])


def test_job_filter_parse_clamps_values() -> None:
    parsed = JobFilter.parse(status=" Accepted ", days="9999", pro="  ", limit="0")
    assert (parsed.status, parsed.days, parsed.pro, parsed.limit) == ("accepted", 365, None, 1)

    defaults = JobFilter.parse(days="abc", limit="many")
    assert (defaults.status, defaults.days, defaults.limit) == ("all", 30, 200)


def test_list_enriched_jobs_merges_jobs_orders_and_payouts() -> None:
    views = asyncio.run(_listing_repository(_listing_store()).list_enriched_jobs())

    assert [(view.job_id, view.kind) for view in views] == [("job-1", "persisted"), ("order:ord-9", "synthesized")]
    job = views[0]
    assert job.service_amount == 250.0
    assert job.payout_estimated == 87.5
    assert job.payout_status == "approved"
    assert job.assigned_pro_name == "Pat"
    assert views[1].status == "pending_assign"


def test_list_enriched_jobs_applies_filters() -> None:
    repository = _listing_repository(_listing_store())

    accepted = asyncio.run(repository.list_enriched_jobs(JobFilter(status="accepted")))
    by_pro = asyncio.run(repository.list_enriched_jobs(JobFilter(pro="PRO-9")))
    long_window = asyncio.run(repository.list_enriched_jobs(JobFilter(days=3650)))
    limited = asyncio.run(repository.list_enriched_jobs(JobFilter(limit=1)))

    assert [view.job_id for view in accepted] == ["job-1"]
    assert [view.job_id for view in by_pro] == ["job-1"]
    assert {view.job_id for view in long_window} == {"job-1", "job-2", "order:ord-9"}
    assert len(limited) == 1


def test_list_enriched_jobs_is_empty_when_store_unreachable() -> None:
    store = _listing_store()
    store.reachable = False
    assert asyncio.run(_listing_repository(store).list_enriched_jobs()) == []


def test_list_enriched_jobs_without_job_table_still_shows_orders() -> None:
    store = InMemoryStore()
    store.create_table("h2s_orders", rows=[{"order_id": "ord-1", "payment_status": "pending"}])

    views = asyncio.run(DispatchRepository(store).list_enriched_jobs())

    assert [(view.job_id, view.status) for view in views] == [("order:ord-1", "pending_payment")]


def test_resolve_schema_is_none_when_unreachable() -> None:
    repository = DispatchRepository(InMemoryStore(reachable=False))
    assert asyncio.run(repository.resolve_schema(ProbeHints(pro_value="pro-9"))) is None


def _drift_store() -> InMemoryStore:
    store = InMemoryStore()
    store.create_table(
        ASSIGNMENTS,
        rows=[
            {"id": "a1", "job_id": "job-1", "pro_id": "pro-9", "assign_state": "accepted"},
            {"id": "a2", "job_id": "job-2", "pro_id": "pro-4", "assign_state": "accepted"},
            {"id": "a3", "job_id": "job-3", "pro_id": "pro-5", "assign_state": "accepted"},
            {"id": "a4", "job_id": "job-4", "pro_id": "pro-6", "assign_state": "offer_sent"},
        ],
    )
    store.create_table(
        JOBS,
        rows=[
            {"job_id": "job-1", "status": "offer_sent"},
            {"job_id": "job-2", "status": "accepted"},
            {"job_id": "job-4", "status": "offer_sent"},
        ],
    )
    return store


def test_reconcile_repairs_jobs_left_behind_by_accepts() -> None:
    store = _drift_store()
    report = asyncio.run(DispatchRepository(store).reconcile_job_status())

    assert (report.scanned, report.drifted, report.repaired, report.failed) == (3, 2, 1, 1)
    assert {item.job_id: item.job_found for item in report.drift} == {"job-1": True, "job-3": False}
    statuses = {row["job_id"]: row["status"] for row in store.rows(JOBS)}
    assert statuses == {"job-1": "accepted", "job-2": "accepted", "job-4": "offer_sent"}


def test_reconcile_dry_run_writes_nothing() -> None:
    store = _drift_store()
    report = asyncio.run(DispatchRepository(store).reconcile_job_status(dry_run=True))

    assert report.drifted == 2
    assert report.repaired == 0
    assert store.rows(JOBS)[0]["status"] == "offer_sent"


def test_blank_job_id_is_rejected() -> None:
    with pytest.raises(RepositoryValidationError):
        asyncio.run(DispatchRepository(InMemoryStore()).accept("  ", ProRef(pro_id="pro-9")))


def test_descriptor_cache_is_dropped_after_exhausted_write() -> None:
    store = InMemoryStore()
    store.create_table(ASSIGNMENTS, columns={"id", "job_id"})
    store.create_table(JOBS, columns={"job_id", "status"})
    repository = DispatchRepository(store, schema_cache_ttl_seconds=60)
    key = ProbeHints(pro_value="pro-9", job_id="job-1").cache_key()

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(repository.accept("job-1", ProRef(pro_id="pro-9")))

    assert repository.cache.get(key) is None


def test_descriptor_cache_is_reused_between_writes() -> None:
    store = InMemoryStore()
    store.create_table(ASSIGNMENTS, columns={"id", "job_id", "pro_id", "assign_state"})
    store.create_table(JOBS, rows=[{"job_id": "job-1", "status": "offer_sent"}])
    repository = DispatchRepository(store, schema_cache_ttl_seconds=60)

    asyncio.run(repository.accept("job-1", ProRef(pro_id="pro-9")))
    assert repository.cache.get(ProbeHints(pro_value="pro-9", job_id="job-1").cache_key()) is not None
