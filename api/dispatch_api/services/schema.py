from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal

from dispatch_api.core.config import Settings
from dispatch_api.services.shapes import DEFAULT_POLICY, ShapePolicy, first_match
from dispatch_api.services.store import (
    StoreColumnMissingError,
    StoreError,
    StoreTableMissingError,
    StoreUnavailableError,
    StructuredStore,
)

logger = logging.getLogger(__name__)

DescriptorSource = Literal["pinned", "probed"]
ResolutionFailure = Literal["unreachable", "not_found"]


@dataclass(frozen=True, slots=True)
class PinnedSchema:
    assignments_table: str | None = None
    assignments_job_col: str | None = None
    assignments_pro_col: str | None = None
    assignments_pro_email_col: str | None = None
    assignments_state_col: str | None = None
    jobs_table: str | None = None
    jobs_id_col: str | None = None
    jobs_status_col: str | None = None


@dataclass(frozen=True, slots=True)
class SchemaRegistry:
    """Versioned map from logical roles to ranked physical spellings."""

    version: str = "2024.1"
    assignment_tables: tuple[str, ...] = (
        "h2s_dispatch_job_assignments",
        "dispatch_job_assignments",
        "dispatch_assignments",
        "job_assignments",
        "job_assignment",
        "assignments",
        "h2s_job_assignments",
        "h2s_dispatch_assignments",
        "h2s_assignments",
    )
    job_tables: tuple[str, ...] = (
        "h2s_dispatch_jobs",
        "dispatch_jobs",
        "h2s_jobs",
        "jobs",
        "job",
        "work_orders",
        "workorders",
        "h2s_work_orders",
        "tickets",
        "h2s_tickets",
    )
    assignment_job_cols: tuple[str, ...] = (
        "job_id",
        "dispatch_job_id",
        "work_order_id",
        "workorder_id",
        "ticket_id",
        "order_id",
    )
    pro_id_cols: tuple[str, ...] = (
        "pro_id",
        "tech_id",
        "assigned_pro_id",
        "technician_id",
        "pro_uuid",
        "tech_uuid",
        "user_id",
    )
    pro_email_cols: tuple[str, ...] = ("pro_email", "tech_email", "email")
    assignment_state_cols: tuple[str, ...] = ("assign_state", "assignment_state", "status", "state")
    job_id_cols: tuple[str, ...] = ("job_id", "dispatch_job_id", "work_order_id", "workorder_id", "ticket_id", "id")
    job_status_cols: tuple[str, ...] = ("status", "job_status", "state")
    job_assignee_cols: tuple[str, ...] = (
        "assigned_to",
        "assigned_pro_id",
        "pro_id",
        "tech_id",
        "technician_id",
        "assigned_email",
        "assigned_pro_email",
        "pro_email",
        "tech_email",
        "email",
    )
    pinned: PinnedSchema = field(default_factory=PinnedSchema)

    @classmethod
    def from_settings(cls, settings: Settings) -> SchemaRegistry:
        return cls(
            version=settings.schema_registry_version,
            pinned=PinnedSchema(
                assignments_table=settings.assignments_table,
                assignments_job_col=settings.assignments_job_col,
                assignments_pro_col=settings.assignments_pro_col,
                assignments_pro_email_col=settings.assignments_pro_email_col,
                assignments_state_col=settings.assignments_state_col,
                jobs_table=settings.jobs_table,
                jobs_id_col=settings.jobs_id_col,
                jobs_status_col=settings.jobs_status_col,
            ),
        )

    @property
    def pro_cols(self) -> tuple[str, ...]:
        return (*self.pro_id_cols, *self.pro_email_cols)


DEFAULT_REGISTRY = SchemaRegistry()


@dataclass(frozen=True, slots=True)
class ProbeHints:
    """Values the caller already knows, used to prefer tables that hold them."""

    pro_value: str | None = None
    email: str | None = None
    job_id: str | None = None

    @property
    def prefers_email(self) -> bool:
        return looks_like_email(self.pro_value) or looks_like_email(self.email)

    @property
    def pro_values(self) -> tuple[str, ...]:
        values: list[str] = []
        for raw in (self.pro_value, self.email):
            text = (raw or "").strip()
            if text and text not in values:
                values.append(text)
        return tuple(values)

    def cache_key(self) -> tuple[str, ...]:
        return (self.pro_value or "", (self.email or "").lower(), self.job_id or "")


@dataclass(frozen=True, slots=True)
class SchemaDescriptor:
    assignments_table: str
    assignments_job_col: str
    assignments_pro_col: str
    assignments_pro_email_col: str | None
    assignments_state_col: str
    jobs_table: str
    jobs_id_col: str
    jobs_status_col: str
    assignments_confirmed: bool = True
    jobs_confirmed: bool = True
    source: DescriptorSource = "probed"
    registry_version: str = DEFAULT_REGISTRY.version
    resolved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "assignments_table": self.assignments_table,
            "assignments_job_col": self.assignments_job_col,
            "assignments_pro_col": self.assignments_pro_col,
            "assignments_pro_email_col": self.assignments_pro_email_col,
            "assignments_state_col": self.assignments_state_col,
            "jobs_table": self.jobs_table,
            "jobs_id_col": self.jobs_id_col,
            "jobs_status_col": self.jobs_status_col,
            "assignments_confirmed": self.assignments_confirmed,
            "jobs_confirmed": self.jobs_confirmed,
            "source": self.source,
            "registry_version": self.registry_version,
            "resolved_at": self.resolved_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class TableProbe:
    table: str
    exists: bool
    columns: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class TableResolution:
    table: str
    columns: frozenset[str]
    matched_probe: bool
    confirmed: bool = True


def looks_like_email(value: str | None) -> bool:
    text = (value or "").strip()
    return "@" in text and "." in text and len(text) <= 254


def pick_column(observed: frozenset[str] | set[str], ranked: Sequence[str]) -> str | None:
    for column in ranked:
        if column in observed:
            return column
    return None


async def probe_table(store: StructuredStore, table: str) -> TableProbe:
    """Fetch at most one row; absence and read failures both report ``exists=False``.

    ``StoreUnavailableError`` propagates so callers can tell an unreachable
    store apart from a missing table.
    """
    try:
        rows = await store.select(table, limit=1)
    except StoreUnavailableError:
        raise
    except StoreError:
        return TableProbe(table=table, exists=False)
    columns = frozenset(rows[0].keys()) if rows else frozenset()
    return TableProbe(table=table, exists=True, columns=columns)


async def probe_columns(store: StructuredStore, table: str) -> set[str]:
    """Observed field names of one sample row; empty when absent, empty or unreadable."""
    try:
        probe = await probe_table(store, table)
    except StoreError:
        return set()
    return set(probe.columns)


async def resolve_table(
    store: StructuredStore,
    candidates: Sequence[str],
    *,
    probe_cols: Sequence[str] = (),
    probe_values: Sequence[str] = (),
    accept: Callable[[frozenset[str]], bool] | None = None,
    policy: ShapePolicy = DEFAULT_POLICY,
) -> TableResolution | None:
    """Pick one physical table for a role.

    The first candidate holding a row that matches a probe value wins. If none
    does, the first candidate that merely exists (possibly empty) is used so
    writes still have a destination. Returns ``None`` when nothing exists;
    raises ``StoreUnavailableError`` when nothing was reachable.
    """
    probes: dict[str, TableProbe] = {}
    unreachable: set[str] = set()

    async def existing(table: str) -> TableProbe | None:
        try:
            probe = await probe_table(store, table)
        except StoreUnavailableError:
            unreachable.add(table)
            return None
        unreachable.discard(table)
        probes[table] = probe
        if not probe.exists:
            return None
        if accept is not None and probe.columns and not accept(probe.columns):
            logger.debug("table %s rejected for columns %s", table, sorted(probe.columns))
            return None
        return probe

    async def holds_probe_value(table: str) -> TableProbe | None:
        probe = await existing(table)
        if probe is None or not probe.columns:
            return None
        columns = [column for column in probe_cols if column in probe.columns]
        for column in columns:
            for value in probe_values:
                try:
                    rows = await store.select(table, {column: value}, limit=1)
                except StoreColumnMissingError:
                    break
                except StoreTableMissingError:
                    return None
                if rows:
                    return TableProbe(table=table, exists=True, columns=probe.columns | frozenset(rows[0].keys()))
        return None

    if probe_cols and probe_values:
        hit = await first_match(candidates, holds_probe_value, policy=policy, label="probe table")
        if hit.value is not None:
            return TableResolution(table=hit.value.table, columns=hit.value.columns, matched_probe=True)

    for table in candidates:
        probe = probes.get(table)
        if probe is None:
            probe = await existing(table)
        elif not probe.exists or (accept is not None and probe.columns and not accept(probe.columns)):
            probe = None
        if probe is not None:
            return TableResolution(table=table, columns=probe.columns, matched_probe=False)

    if candidates and unreachable.issuperset(candidates):
        raise StoreUnavailableError("no candidate table was reachable")
    return None


class SchemaResolver:
    """Resolves a ``SchemaDescriptor`` against the live store.

    The pinned part of the registry wins over probing; a fully pinned registry
    never probes at all.
    """

    def __init__(
        self,
        store: StructuredStore,
        registry: SchemaRegistry = DEFAULT_REGISTRY,
        *,
        policy: ShapePolicy = DEFAULT_POLICY,
    ) -> None:
        self.store = store
        self.registry = registry
        self.policy = policy
        self.last_failure: ResolutionFailure | None = None

    async def resolve(
        self,
        hints: ProbeHints | None = None,
        *,
        assignment_tables: Sequence[str] | None = None,
        job_tables: Sequence[str] | None = None,
    ) -> SchemaDescriptor | None:
        hints = hints or ProbeHints()
        registry = self.registry
        pinned = registry.pinned

        if pinned.assignments_table and pinned.jobs_table and assignment_tables is None and job_tables is None:
            return self._pinned_descriptor(hints, pinned.assignments_table, pinned.jobs_table)

        assign_candidates = list(assignment_tables or ([pinned.assignments_table] if pinned.assignments_table else registry.assignment_tables))
        job_candidates = list(job_tables or ([pinned.jobs_table] if pinned.jobs_table else registry.job_tables))

        try:
            assign = await resolve_table(
                self.store,
                assign_candidates,
                probe_cols=registry.pro_cols,
                probe_values=hints.pro_values,
                accept=self._looks_like_assignments,
                policy=self.policy,
            )
        except StoreUnavailableError:
            assign = None
            assign_unreachable = True
        else:
            assign_unreachable = False

        job_probe_cols: list[str] = []
        job_probe_values: list[str] = []
        if hints.job_id:
            job_probe_cols.extend(registry.job_id_cols)
            job_probe_values.append(hints.job_id)
        if hints.pro_values:
            job_probe_cols.extend(registry.job_assignee_cols)
            job_probe_values.extend(hints.pro_values)

        try:
            jobs = await resolve_table(
                self.store,
                job_candidates,
                probe_cols=tuple(dict.fromkeys(job_probe_cols)),
                probe_values=tuple(dict.fromkeys(job_probe_values)),
                accept=self._looks_like_jobs,
                policy=self.policy,
            )
        except StoreUnavailableError:
            jobs = None
            jobs_unreachable = True
        else:
            jobs_unreachable = False

        if assign is None and jobs is None:
            if assign_unreachable or jobs_unreachable:
                self.last_failure = "unreachable"
                logger.warning("schema resolution failed: store unreachable")
            else:
                self.last_failure = "not_found"
                logger.warning("schema resolution found no candidate tables")
            return None
        self.last_failure = None

        if assign is None:
            assign = TableResolution(table=assign_candidates[0], columns=frozenset(), matched_probe=False, confirmed=False)
        if jobs is None:
            jobs = TableResolution(table=job_candidates[0], columns=frozenset(), matched_probe=False, confirmed=False)

        descriptor = self._build_descriptor(assign, jobs, hints)
        logger.info(
            "schema resolved assignments=%s(%s,%s,%s) jobs=%s(%s,%s)",
            descriptor.assignments_table,
            descriptor.assignments_job_col,
            descriptor.assignments_pro_col,
            descriptor.assignments_state_col,
            descriptor.jobs_table,
            descriptor.jobs_id_col,
            descriptor.jobs_status_col,
        )
        return descriptor

    def _looks_like_assignments(self, columns: frozenset[str]) -> bool:
        registry = self.registry
        has_pro = pick_column(columns, registry.pro_cols) is not None
        has_job = pick_column(columns, registry.assignment_job_cols) is not None
        return has_pro and has_job

    def _looks_like_jobs(self, columns: frozenset[str]) -> bool:
        return pick_column(columns, self.registry.job_id_cols) is not None

    def _build_descriptor(self, assign: TableResolution, jobs: TableResolution, hints: ProbeHints) -> SchemaDescriptor:
        registry = self.registry
        pinned = registry.pinned
        a_cols = assign.columns
        j_cols = jobs.columns

        ranked_pro = (
            (*registry.pro_email_cols, *registry.pro_id_cols) if hints.prefers_email else registry.pro_cols
        )
        if a_cols:
            pro_col = pick_column(a_cols, ranked_pro) or ranked_pro[0]
            job_col = pick_column(a_cols, registry.assignment_job_cols) or registry.assignment_job_cols[0]
            state_col = pick_column(a_cols, registry.assignment_state_cols) or registry.assignment_state_cols[0]
            email_col = pick_column(a_cols, registry.pro_email_cols)
        else:
            pro_col = ranked_pro[0]
            job_col = registry.assignment_job_cols[0]
            state_col = registry.assignment_state_cols[0]
            email_col = None

        if j_cols:
            if job_col in j_cols:
                jobs_id_col = job_col
            else:
                jobs_id_col = pick_column(j_cols, registry.job_id_cols) or registry.job_id_cols[0]
            jobs_status_col = pick_column(j_cols, registry.job_status_cols) or registry.job_status_cols[0]
        else:
            jobs_id_col = registry.job_id_cols[0]
            jobs_status_col = registry.job_status_cols[0]

        return SchemaDescriptor(
            assignments_table=assign.table,
            assignments_job_col=pinned.assignments_job_col or job_col,
            assignments_pro_col=pinned.assignments_pro_col or pro_col,
            assignments_pro_email_col=pinned.assignments_pro_email_col or email_col,
            assignments_state_col=pinned.assignments_state_col or state_col,
            jobs_table=jobs.table,
            jobs_id_col=pinned.jobs_id_col or jobs_id_col,
            jobs_status_col=pinned.jobs_status_col or jobs_status_col,
            assignments_confirmed=assign.confirmed,
            jobs_confirmed=jobs.confirmed,
            source="probed",
            registry_version=registry.version,
        )

    def _pinned_descriptor(self, hints: ProbeHints, assignments_table: str, jobs_table: str) -> SchemaDescriptor:
        registry = self.registry
        pinned = registry.pinned
        default_pro = registry.pro_email_cols[0] if hints.prefers_email else registry.pro_id_cols[0]
        return SchemaDescriptor(
            assignments_table=assignments_table,
            assignments_job_col=pinned.assignments_job_col or "job_id",
            assignments_pro_col=pinned.assignments_pro_col or default_pro,
            assignments_pro_email_col=pinned.assignments_pro_email_col,
            assignments_state_col=pinned.assignments_state_col or "assign_state",
            jobs_table=jobs_table,
            jobs_id_col=pinned.jobs_id_col or "job_id",
            jobs_status_col=pinned.jobs_status_col or "status",
            source="pinned",
            registry_version=registry.version,
        )


class DescriptorCache:
    """TTL cache for descriptors; a TTL of zero disables cross-operation reuse.

    Entries are dropped when they expire or when a caller reports that a write
    against the cached descriptor matched nothing anywhere.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = max(0.0, ttl_seconds)
        self._clock = clock
        self._entries: dict[tuple[str, ...], tuple[float, SchemaDescriptor]] = {}

    def get(self, key: tuple[str, ...]) -> SchemaDescriptor | None:
        if self.ttl_seconds <= 0:
            return None
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, descriptor = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return descriptor

    def put(self, key: tuple[str, ...], descriptor: SchemaDescriptor) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[key] = (self._clock() + self.ttl_seconds, descriptor)

    def invalidate(self, key: tuple[str, ...] | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)


async def validate_registry(store: StructuredStore, registry: SchemaRegistry) -> list[str]:
    """Check pinned identifiers against the live store; returns the problems found."""
    problems: list[str] = []
    pinned = registry.pinned
    checks: list[tuple[str | None, list[str | None]]] = [
        (
            pinned.assignments_table,
            [
                pinned.assignments_job_col,
                pinned.assignments_pro_col,
                pinned.assignments_pro_email_col,
                pinned.assignments_state_col,
            ],
        ),
        (pinned.jobs_table, [pinned.jobs_id_col, pinned.jobs_status_col]),
    ]
    for table, columns in checks:
        if not table:
            continue
        try:
            probe = await probe_table(store, table)
        except StoreUnavailableError:
            problems.append(f"store unreachable while validating {table}")
            continue
        if not probe.exists:
            problems.append(f"pinned table {table} does not exist")
            continue
        if not probe.columns:
            continue
        for column in columns:
            if column and column not in probe.columns:
                problems.append(f"pinned column {table}.{column} not observed")

    for problem in problems:
        logger.warning("schema registry %s: %s", registry.version, problem)
    return problems


def with_pinned(registry: SchemaRegistry, **overrides: str | None) -> SchemaRegistry:
    return replace(registry, pinned=replace(registry.pinned, **overrides))
