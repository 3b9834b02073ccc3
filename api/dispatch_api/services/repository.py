from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from dispatch_api.core.config import Settings, get_settings
from dispatch_api.services.assignments import AssignmentCoordinator, AssignmentResult, OfferResult, ProRef
from dispatch_api.services.merge import JobView, load_pros_index, merge_view
from dispatch_api.services.payouts import load_payouts
from dispatch_api.services.postgres import PostgresStore
from dispatch_api.services.postgrest import PostgrestStore
from dispatch_api.services.reconcile import RepairReport, repair_status_drift
from dispatch_api.services.schema import (
    DescriptorCache,
    ProbeHints,
    SchemaDescriptor,
    SchemaRegistry,
    SchemaResolver,
    validate_registry,
)
from dispatch_api.services.shapes import DEFAULT_POLICY, ShapePolicy, ShapeRaceError, UpsertFailedError
from dispatch_api.services.store import InMemoryStore, Row, StoreError, StoreUnavailableError, StructuredStore

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the store is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when every candidate table and shape was exhausted."""


class RepositoryConflictError(RepositoryError):
    """Raised when a guarded assignment write lost a race."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


JOB_LIST_MAX_LIMIT = 1000


@dataclass(slots=True)
class JobFilter:
    status: str = "all"
    days: int = 30
    pro: str | None = None
    limit: int = 200

    @classmethod
    def parse(cls, status: Any = None, days: Any = None, pro: Any = None, limit: Any = None) -> JobFilter:
        return cls(
            status=str(status or "").strip().lower() or "all",
            days=_parse_days(days),
            pro=str(pro or "").strip() or None,
            limit=_parse_limit(limit),
        )


def _parse_days(raw: Any) -> int:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 30
    if value != value or value <= 0:
        return 30
    return min(365, max(1, int(value)))


def _parse_limit(raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return 200
    return min(JOB_LIST_MAX_LIMIT, max(1, value))


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DispatchRepository:
    """Entry point used by HTTP handlers; never lets a raw store error escape."""

    def __init__(
        self,
        store: StructuredStore,
        *,
        commerce_store: StructuredStore | None = None,
        ledger_store: StructuredStore | None = None,
        registry: SchemaRegistry | None = None,
        schema_cache_ttl_seconds: float = 0.0,
        policy: ShapePolicy = DEFAULT_POLICY,
        orders_table: str = "h2s_orders",
        orders_limit: int = 1500,
        payout_tables: Sequence[str] = (),
        pro_tables: Sequence[str] = (),
        payout_rate: float = 0.35,
        saga_log_table: str | None = None,
    ) -> None:
        self.store = store
        self.commerce_store = commerce_store or store
        self.ledger_store = ledger_store or store
        self.registry = registry or SchemaRegistry()
        self.cache = DescriptorCache(schema_cache_ttl_seconds)
        self.policy = policy
        self.orders_table = orders_table
        self.orders_limit = max(1, orders_limit)
        self.payout_tables = list(payout_tables)
        self.pro_tables = list(pro_tables)
        self.payout_rate = payout_rate
        self.saga_log_table = saga_log_table

    async def close(self) -> None:
        closed: set[int] = set()
        for store in (self.store, self.commerce_store, self.ledger_store):
            if id(store) in closed:
                continue
            closed.add(id(store))
            await store.close()

    async def validate_schema(self) -> list[str]:
        return await validate_registry(self.store, self.registry)

    async def resolve_schema(
        self,
        hints: ProbeHints | None = None,
        *,
        assignment_tables: Sequence[str] | None = None,
        job_tables: Sequence[str] | None = None,
    ) -> SchemaDescriptor | None:
        """Non-fatal resolution: ``None`` means unreachable or nothing found."""
        descriptor, _ = await self._resolve(hints, assignment_tables=assignment_tables, job_tables=job_tables)
        return descriptor

    async def ensure_offer(self, job_id: str, pro: ProRef, state: str = "offer_sent") -> OfferResult:
        job_id = _require_job_id(job_id)
        hints = ProbeHints(pro_value=pro.pro_id, email=pro.email, job_id=job_id)
        coordinator = await self._coordinator(hints)
        try:
            return await coordinator.ensure_offer(job_id, pro, state)
        except (ValueError, StoreError) as exc:
            raise self._map_write_error(exc, hints) from exc

    async def accept(self, job_id: str, pro: ProRef) -> AssignmentResult:
        return await self._transition("accept", job_id, pro)

    async def decline(self, job_id: str, pro: ProRef) -> AssignmentResult:
        return await self._transition("decline", job_id, pro)

    async def list_enriched_jobs(self, job_filter: JobFilter | None = None) -> list[JobView]:
        job_filter = job_filter or JobFilter()
        descriptor, failure = await self._resolve(ProbeHints())
        if failure == "unreachable":
            logger.warning("job list degraded to empty: dispatch store unreachable")
            return []

        jobs: list[Row] = []
        if descriptor is not None and descriptor.jobs_confirmed:
            jobs = await self._select_recent(self.store, descriptor.jobs_table, self.orders_limit)

        orders = await self._select_recent(self.commerce_store, self.orders_table, self.orders_limit)
        payouts = (await load_payouts(self.ledger_store, self.payout_tables)).payouts if self.payout_tables else []
        pros_index = await load_pros_index(self.store, self.pro_tables) if self.pro_tables else {}

        views = merge_view(
            jobs,
            orders,
            payouts,
            jobs_id_col=descriptor.jobs_id_col if descriptor else None,
            jobs_status_col=descriptor.jobs_status_col if descriptor else "status",
            payout_rate=self.payout_rate,
            pros_index=pros_index,
        )
        return _apply_filter(views, job_filter)

    async def reconcile_job_status(self, *, limit: int = 200, dry_run: bool = False) -> RepairReport:
        coordinator = await self._coordinator(ProbeHints())
        try:
            return await repair_status_drift(coordinator, limit=max(1, limit), dry_run=dry_run)
        except StoreUnavailableError as exc:
            raise RepositoryUnavailableError("dispatch store unavailable") from exc
        except StoreError as exc:
            raise RepositoryNotFoundError(f"assignment table unreadable: {exc}") from exc

    async def _transition(self, action: str, job_id: str, pro: ProRef) -> AssignmentResult:
        job_id = _require_job_id(job_id)
        if pro.empty:
            raise RepositoryValidationError("a pro id or email is required")
        hints = ProbeHints(pro_value=pro.pro_id, email=pro.email, job_id=job_id)
        coordinator = await self._coordinator(hints)
        try:
            if action == "accept":
                return await coordinator.accept(job_id, pro)
            return await coordinator.decline(job_id, pro)
        except (ValueError, StoreError) as exc:
            raise self._map_write_error(exc, hints) from exc

    async def _coordinator(self, hints: ProbeHints) -> AssignmentCoordinator:
        descriptor, failure = await self._resolve(hints)
        if descriptor is None:
            if failure == "unreachable":
                raise RepositoryUnavailableError("dispatch store not configured or unreachable")
            raise RepositoryNotFoundError("no assignment or job table found")
        return AssignmentCoordinator(
            self.store,
            descriptor,
            registry=self.registry,
            policy=self.policy,
            saga_log_table=self.saga_log_table,
        )

    async def _resolve(
        self,
        hints: ProbeHints | None,
        *,
        assignment_tables: Sequence[str] | None = None,
        job_tables: Sequence[str] | None = None,
    ) -> tuple[SchemaDescriptor | None, str | None]:
        hints = hints or ProbeHints()
        overridden = assignment_tables is not None or job_tables is not None
        key = hints.cache_key()
        if not overridden:
            cached = self.cache.get(key)
            if cached is not None:
                return cached, None

        resolver = SchemaResolver(self.store, self.registry, policy=self.policy)
        descriptor = await resolver.resolve(hints, assignment_tables=assignment_tables, job_tables=job_tables)
        if descriptor is not None and not overridden:
            self.cache.put(key, descriptor)
        return descriptor, resolver.last_failure

    def _map_write_error(self, exc: Exception, hints: ProbeHints) -> RepositoryError:
        if isinstance(exc, ValueError):
            return RepositoryValidationError(str(exc))
        if isinstance(exc, StoreUnavailableError):
            return RepositoryUnavailableError("dispatch store unavailable")
        if isinstance(exc, ShapeRaceError):
            return RepositoryConflictError(str(exc))
        if isinstance(exc, UpsertFailedError):
            self.cache.invalidate(hints.cache_key())
            logger.warning("assignment write exhausted %s shape attempts", len(exc.attempts))
            return RepositoryNotFoundError("assignment not found and could not be created")
        return RepositoryUnavailableError(f"dispatch store error: {exc}")

    async def _select_recent(self, store: StructuredStore, table: str, limit: int) -> list[Row]:
        try:
            return await store.select(table, limit=limit, order_by="created_at", descending=True)
        except StoreUnavailableError:
            logger.warning("%s unreachable; continuing without it", table)
            return []
        except StoreError:
            pass
        try:
            return await store.select(table, limit=limit)
        except StoreError as exc:
            logger.debug("%s unreadable: %s", table, exc)
            return []


def _require_job_id(job_id: str) -> str:
    text = str(job_id or "").strip()
    if not text:
        raise RepositoryValidationError("job_id is required")
    return text


def _apply_filter(views: list[JobView], job_filter: JobFilter) -> list[JobView]:
    since = datetime.now(timezone.utc) - timedelta(days=job_filter.days)
    pro = (job_filter.pro or "").lower()
    out: list[JobView] = []
    for view in views:
        if job_filter.status != "all" and view.status.lower() != job_filter.status:
            continue
        if pro and (view.assigned_pro or "").lower() != pro:
            continue
        created = _parse_timestamp(view.created_at)
        if created is not None and created < since:
            continue
        out.append(view)
        if len(out) >= job_filter.limit:
            break
    return out


def build_store(
    settings: Settings,
    *,
    supabase_url: str | None = None,
    service_key: str | None = None,
    database_url: str | None = None,
) -> StructuredStore:
    backend = settings.store_backend.strip().lower()
    if backend == "memory":
        return InMemoryStore()
    if backend == "postgres":
        return PostgresStore(
            database_url or settings.database_url,
            min_pool_size=settings.database_pool_min_size,
            max_pool_size=settings.database_pool_max_size,
            timeout_seconds=settings.store_timeout_seconds,
        )
    return PostgrestStore(
        supabase_url or settings.supabase_url,
        service_key or settings.supabase_service_key,
        timeout_seconds=settings.store_timeout_seconds,
    )


def build_repository(settings: Settings) -> DispatchRepository:
    store = build_store(settings)
    commerce_store = None
    if settings.commerce_supabase_url or settings.commerce_database_url:
        commerce_store = build_store(
            settings,
            supabase_url=settings.commerce_supabase_url,
            service_key=settings.commerce_supabase_service_key,
            database_url=settings.commerce_database_url,
        )
    ledger_store = None
    if settings.ledger_supabase_url or settings.ledger_database_url:
        ledger_store = build_store(
            settings,
            supabase_url=settings.ledger_supabase_url,
            service_key=settings.ledger_supabase_service_key,
            database_url=settings.ledger_database_url,
        )
    return DispatchRepository(
        store,
        commerce_store=commerce_store,
        ledger_store=ledger_store,
        registry=SchemaRegistry.from_settings(settings),
        schema_cache_ttl_seconds=settings.schema_cache_ttl_seconds,
        policy=ShapePolicy(timeout_seconds=settings.store_timeout_seconds),
        orders_table=settings.orders_table,
        orders_limit=settings.orders_limit,
        payout_tables=settings.payout_table_candidates,
        pro_tables=settings.pro_table_candidates,
        payout_rate=settings.payout_rate,
        saga_log_table=settings.saga_log_table or None,
    )


@lru_cache
def get_repository() -> DispatchRepository:
    return build_repository(get_settings())
