from __future__ import annotations

import asyncio

from dispatch_api.core.config import Settings
from dispatch_api.services.schema import (
    DescriptorCache,
    ProbeHints,
    SchemaRegistry,
    SchemaResolver,
    probe_columns,
    resolve_table,
    validate_registry,
    with_pinned,
)
from dispatch_api.services.store import InMemoryStore, StoreUnavailableError


def test_probe_columns_reports_observed_fields_and_never_raises() -> None:
    store = InMemoryStore()
    store.create_table("jobs", rows=[{"job_id": "job-1", "status": "queued"}])
    store.create_table("empty_jobs", columns={"job_id", "status"})

    assert asyncio.run(probe_columns(store, "jobs")) == {"job_id", "status"}
    assert asyncio.run(probe_columns(store, "empty_jobs")) == set()
    assert asyncio.run(probe_columns(store, "missing")) == set()

    store.reachable = False
    assert asyncio.run(probe_columns(store, "jobs")) == set()


def test_resolves_table_that_contains_probe_value() -> None:
    store = InMemoryStore()
    store.create_table("jobs", rows=[{"id": "job-7", "pro_id": "pro-123", "status": "offer_sent"}])

    resolver = SchemaResolver(store)
    descriptor = asyncio.run(
        resolver.resolve(
            ProbeHints(pro_value="pro-123"),
            assignment_tables=["job_assignments"],
            job_tables=["jobs_v2", "jobs"],
        )
    )

    assert descriptor is not None
    assert descriptor.jobs_table == "jobs"
    assert descriptor.jobs_id_col == "id"
    assert descriptor.jobs_status_col == "status"
    assert descriptor.jobs_confirmed
    # No assignment table exists; writes still get a destination.
    assert descriptor.assignments_table == "job_assignments"
    assert not descriptor.assignments_confirmed


def test_prefers_table_with_relevant_data_over_first_existing() -> None:
    store = InMemoryStore()
    store.create_table("h2s_dispatch_job_assignments", rows=[{"job_id": "job-1", "pro_id": "pro-1", "assign_state": "offer_sent"}])
    store.create_table("dispatch_assignments", rows=[{"job_id": "job-2", "tech_id": "pro-9", "status": "offer_sent"}])
    store.create_table("h2s_dispatch_jobs", rows=[{"job_id": "job-2", "status": "offer_sent"}])

    descriptor = asyncio.run(SchemaResolver(store).resolve(ProbeHints(pro_value="pro-9", job_id="job-2")))

    assert descriptor is not None
    assert descriptor.assignments_table == "dispatch_assignments"
    assert descriptor.assignments_pro_col == "tech_id"
    assert descriptor.assignments_state_col == "status"
    assert descriptor.source == "probed"


def test_empty_table_still_resolves_with_default_columns() -> None:
    store = InMemoryStore()
    store.create_table("h2s_dispatch_job_assignments", columns={"id", "job_id", "pro_id", "assign_state"})
    store.create_table("h2s_dispatch_jobs", columns={"job_id", "status"})

    descriptor = asyncio.run(SchemaResolver(store).resolve())

    assert descriptor is not None
    assert descriptor.assignments_table == "h2s_dispatch_job_assignments"
    assert descriptor.assignments_confirmed and descriptor.jobs_confirmed
    assert (descriptor.assignments_job_col, descriptor.assignments_pro_col, descriptor.assignments_state_col) == (
        "job_id",
        "pro_id",
        "assign_state",
    )


def test_email_hint_prefers_email_column() -> None:
    store = InMemoryStore()
    store.create_table(
        "job_assignments",
        rows=[{"job_id": "job-1", "pro_id": "p-1", "pro_email": "pat@example.com", "state": "offer_sent"}],
    )
    store.create_table("jobs", rows=[{"job_id": "job-1", "status": "offer_sent"}])

    descriptor = asyncio.run(SchemaResolver(store).resolve(ProbeHints(email="pat@example.com")))

    assert descriptor is not None
    assert descriptor.assignments_pro_col == "pro_email"
    assert descriptor.assignments_pro_email_col == "pro_email"


def test_skips_tables_whose_rows_do_not_look_like_assignments() -> None:
    store = InMemoryStore()
    store.create_table("assignments", rows=[{"id": 1, "title": "homework"}])
    store.create_table("job_assignments", columns={"job_id", "pro_id", "state"})

    resolver = SchemaResolver(store)
    descriptor = asyncio.run(resolver.resolve(assignment_tables=["assignments", "job_assignments"], job_tables=["jobs"]))

    assert descriptor is not None
    assert descriptor.assignments_table == "job_assignments"


def test_unreachable_store_resolves_to_none() -> None:
    store = InMemoryStore(reachable=False)
    resolver = SchemaResolver(store)

    assert asyncio.run(resolver.resolve(ProbeHints(pro_value="pro-1"))) is None
    assert resolver.last_failure == "unreachable"


def test_no_candidate_tables_resolves_to_none() -> None:
    resolver = SchemaResolver(InMemoryStore())

    assert asyncio.run(resolver.resolve()) is None
    assert resolver.last_failure == "not_found"


def test_pinned_registry_skips_probing() -> None:
    store = InMemoryStore()
    registry = SchemaRegistry.from_settings(
        Settings(
            _env_file=None,
            assignments_table="offers",
            assignments_pro_col="tech_email",
            jobs_table="work_orders",
            jobs_id_col="work_order_id",
        )
    )

    descriptor = asyncio.run(SchemaResolver(store, registry).resolve(ProbeHints(pro_value="pro-1")))

    assert descriptor is not None
    assert descriptor.source == "pinned"
    assert descriptor.assignments_table == "offers"
    assert descriptor.assignments_pro_col == "tech_email"
    assert descriptor.jobs_id_col == "work_order_id"
    assert store.calls == []


def test_partially_pinned_registry_probes_the_rest() -> None:
    store = InMemoryStore()
    store.create_table("offers", rows=[{"job_id": "job-1", "pro_id": "pro-1", "assign_state": "offer_sent"}])
    store.create_table("h2s_dispatch_jobs", rows=[{"job_id": "job-1", "status": "offer_sent"}])
    registry = with_pinned(SchemaRegistry(), assignments_table="offers")

    descriptor = asyncio.run(SchemaResolver(store, registry).resolve(ProbeHints(pro_value="pro-1", job_id="job-1")))

    assert descriptor is not None
    assert descriptor.source == "probed"
    assert descriptor.assignments_table == "offers"
    assert descriptor.jobs_table == "h2s_dispatch_jobs"
    assert store.calls != []


def test_validate_registry_reports_missing_pinned_identifiers() -> None:
    store = InMemoryStore()
    store.create_table("offers", rows=[{"job_id": "job-1", "pro_id": "pro-1", "assign_state": "offer_sent"}])
    registry = with_pinned(
        SchemaRegistry(),
        assignments_table="offers",
        assignments_state_col="state",
        jobs_table="work_orders",
    )

    problems = asyncio.run(validate_registry(store, registry))

    assert problems == [
        "pinned column offers.state not observed",
        "pinned table work_orders does not exist",
    ]


def test_descriptor_cache_expires_and_invalidates() -> None:
    now = [100.0]
    cache = DescriptorCache(30.0, clock=lambda: now[0])
    store = InMemoryStore()
    store.create_table("jobs", rows=[{"job_id": "job-1", "status": "queued"}])
    descriptor = asyncio.run(SchemaResolver(store).resolve(job_tables=["jobs"], assignment_tables=["a"]))
    assert descriptor is not None

    key = ProbeHints(pro_value="pro-1").cache_key()
    cache.put(key, descriptor)
    assert cache.get(key) is descriptor

    now[0] = 131.0
    assert cache.get(key) is None

    cache.put(key, descriptor)
    cache.invalidate(key)
    assert cache.get(key) is None


def test_zero_ttl_cache_never_reuses() -> None:
    cache = DescriptorCache(0)
    store = InMemoryStore()
    store.create_table("jobs", rows=[{"job_id": "job-1"}])
    descriptor = asyncio.run(SchemaResolver(store).resolve(job_tables=["jobs"], assignment_tables=["a"]))
    assert descriptor is not None

    cache.put(("k",), descriptor)
    assert cache.get(("k",)) is None


class FlakyTableStore(InMemoryStore):
    def __init__(self, flaky: str) -> None:
        super().__init__()
        self.flaky = flaky

    async def select(self, table, filters=None, **kwargs):
        if table == self.flaky:
            self.calls.append(("select", table))
            raise StoreUnavailableError(f"{table} timed out")
        return await super().select(table, filters, **kwargs)


def test_one_unreachable_candidate_does_not_mark_the_store_unreachable() -> None:
    store = FlakyTableStore("flaky_assignments")

    resolution = asyncio.run(
        resolve_table(
            store,
            ["flaky_assignments", "absent_assignments"],
            probe_cols=("pro_id",),
            probe_values=("pro-1",),
        )
    )

    assert resolution is None
    assert store.calls.count(("select", "flaky_assignments")) == 2
