from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from dispatch_api.services.payouts import Payout, index_payouts, to_number
from dispatch_api.services.store import Row, StoreError, StoreUnavailableError, StructuredStore

logger = logging.getLogger(__name__)

DEFAULT_PAYOUT_RATE = 0.35
DEFAULT_PRO_TABLES = ("h2s_dispatch_pros", "h2s_pros")

JOB_ID_KEYS = ("job_id", "dispatch_job_id", "work_order_id", "workorder_id", "ticket_id", "id")
ASSIGNEE_KEYS = (
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


@dataclass(frozen=True, slots=True)
class PersistedJob:
    """A physical job row, with whatever order and payout could be linked to it."""

    job_id: str
    row: Row
    order: Row | None = None
    payout: Payout | None = None
    kind: Literal["persisted"] = "persisted"


@dataclass(frozen=True, slots=True)
class SynthesizedJob:
    """A job projected from an order that has no job row yet."""

    job_id: str
    order: Row
    payout: Payout | None = None
    kind: Literal["synthesized"] = "synthesized"


JobSource = Union[PersistedJob, SynthesizedJob]


@dataclass(slots=True)
class JobView:
    source: JobSource
    job_id: str
    status: str
    order_id: str | None = None
    service_name: str = "Service"
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    service_address: str = ""
    service_city: str = ""
    service_state: str = ""
    service_zip: str = ""
    description: str = ""
    line_items: list[Any] = field(default_factory=list)
    service_amount: float | None = None
    payout_estimated: float | None = None
    payout_status: str | None = None
    assigned_pro: str | None = None
    assigned_pro_name: str | None = None
    assigned_pro_phone: str | None = None
    delivery_date: str | None = None
    delivery_time: str | None = None
    created_at: Any = None

    @property
    def kind(self) -> str:
        return self.source.kind

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "job_id": self.job_id,
            "status": self.status,
            "order_id": self.order_id,
            "service_name": self.service_name,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "service_address": self.service_address,
            "service_city": self.service_city,
            "service_state": self.service_state,
            "service_zip": self.service_zip,
            "description": self.description,
            "line_items": self.line_items,
            "service_amount": self.service_amount,
            "payout_estimated": self.payout_estimated,
            "payout_status": self.payout_status,
            "assigned_pro": self.assigned_pro,
            "assigned_pro_name": self.assigned_pro_name,
            "assigned_pro_phone": self.assigned_pro_phone,
            "delivery_date": self.delivery_date,
            "delivery_time": self.delivery_time,
            "created_at": self.created_at,
        }


def order_metadata(order: Mapping[str, Any] | None) -> dict[str, Any]:
    if not order:
        return {}
    raw = order.get("metadata_json") or order.get("metadata") or {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    return dict(raw) if isinstance(raw, Mapping) else {}


def job_id_of(row: Mapping[str, Any], id_col: str | None = None) -> str:
    keys = (id_col, *JOB_ID_KEYS) if id_col else JOB_ID_KEYS
    for key in keys:
        if key is None:
            continue
        text = str(row.get(key) or "").strip()
        if text:
            return text
    return ""


def order_job_id(order: Mapping[str, Any]) -> str:
    meta = order_metadata(order)
    return str(meta.get("dispatch_job_id") or meta.get("job_id") or "").strip()


def assigned_pro_of(row: Mapping[str, Any]) -> str:
    for key in ASSIGNEE_KEYS:
        text = str(row.get(key) or "").strip()
        if text:
            return text
    return ""


def _first(*values: Any, default: Any = "") -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return default


def _first_number(*values: Any) -> float | None:
    for value in values:
        number = to_number(value)
        if number is not None:
            return number
    return None


def _line_items(*values: Any) -> list[Any]:
    for value in values:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                continue
        if isinstance(value, list):
            return value
    return []


def synthesized_status(order: Mapping[str, Any]) -> str:
    """Derive a dispatch status from the order's payment state."""
    meta = order_metadata(order)
    payment = str(order.get("payment_status") or order.get("status") or "").strip().lower()
    if any(token in payment for token in ("cancel", "refund")):
        return "cancelled"
    if any(token in payment for token in ("paid", "succeeded", "complete")) and "unpaid" not in payment:
        has_date = _first(order.get("delivery_date"), meta.get("delivery_date"), meta.get("install_date"))
        has_time = _first(order.get("delivery_time"), meta.get("delivery_time"), meta.get("install_window"))
        return "scheduled" if has_date and has_time else "pending_assign"
    return "pending_payment"


def estimate_payout(
    job: Mapping[str, Any],
    order: Mapping[str, Any] | None,
    payout: Payout | None,
    *,
    rate: float = DEFAULT_PAYOUT_RATE,
) -> float | None:
    meta = order_metadata(order)
    explicit = _first_number(
        job.get("payout_estimated"),
        order.get("payout_estimated") if order else None,
        meta.get("tech_payout_dollars"),
        meta.get("payout_estimated"),
        meta.get("estimated_payout"),
    )
    if explicit is not None:
        return round(explicit, 2)
    cents = to_number(meta.get("tech_payout_cents"))
    if cents is not None:
        return round(cents / 100, 2)
    if payout is not None and payout.amount:
        return round(payout.amount, 2)
    subtotal = _first_number(
        order.get("subtotal") if order else None,
        order.get("order_subtotal") if order else None,
        meta.get("subtotal"),
    )
    if subtotal is not None:
        return round(subtotal * rate, 2)
    return None


def service_amount(
    job: Mapping[str, Any],
    order: Mapping[str, Any] | None,
    payout: Payout | None,
    *,
    rate: float = DEFAULT_PAYOUT_RATE,
) -> float | None:
    """Job amount, then order amount, then the payout grossed up by the payout rate."""
    meta = order_metadata(order)
    amount = _first_number(
        job.get("service_amount"),
        job.get("amount"),
        job.get("total"),
        order.get("total") if order else None,
        order.get("total_amount") if order else None,
        meta.get("total_amount"),
    )
    if amount is not None:
        return amount
    if payout is not None and payout.amount and rate > 0:
        return round(payout.amount / rate, 2)
    return None


def build_pros_index(rows: Sequence[Mapping[str, Any]]) -> dict[str, Mapping[str, Any]]:
    index: dict[str, Mapping[str, Any]] = {}
    for row in rows:
        pro_id = str(row.get("pro_id") or row.get("tech_id") or row.get("id") or "").strip()
        email = str(row.get("email") or row.get("pro_email") or row.get("tech_email") or "").strip().lower()
        if pro_id:
            index[pro_id] = row
        if email:
            index[email] = row
    return index


async def load_pros_index(
    store: StructuredStore,
    tables: Sequence[str] = DEFAULT_PRO_TABLES,
    *,
    limit: int = 2000,
) -> dict[str, Mapping[str, Any]]:
    for table in tables:
        try:
            rows = await store.select(table, limit=limit)
        except StoreUnavailableError:
            return {}
        except StoreError:
            continue
        return build_pros_index(rows)
    return {}


def _view(
    source: JobSource,
    job: Mapping[str, Any],
    order: Mapping[str, Any] | None,
    payout: Payout | None,
    *,
    status: str,
    rate: float,
    pros_index: Mapping[str, Mapping[str, Any]],
) -> JobView:
    meta = order_metadata(order)
    o = order or {}
    job_meta = job.get("metadata") if isinstance(job.get("metadata"), Mapping) else {}

    assigned = assigned_pro_of(job) or None
    pro_row = pros_index.get(assigned) or pros_index.get(assigned.lower()) if assigned else None
    pro_row = pro_row or {}

    return JobView(
        source=source,
        job_id=source.job_id,
        status=status,
        order_id=_first(job.get("order_id"), o.get("order_id"), default=None),
        service_name=_first(job.get("service_name"), o.get("service_name"), meta.get("service_name"), default="Service"),
        customer_name=_first(job.get("customer_name"), o.get("customer_name"), meta.get("customer_name")),
        customer_email=_first(job.get("customer_email"), o.get("customer_email"), meta.get("customer_email")),
        customer_phone=_first(job.get("customer_phone"), o.get("customer_phone"), meta.get("customer_phone")),
        service_address=_first(job.get("service_address"), o.get("address"), meta.get("service_address")),
        service_city=_first(job.get("service_city"), o.get("city"), meta.get("service_city")),
        service_state=_first(job.get("service_state"), o.get("state"), meta.get("service_state")),
        service_zip=_first(job.get("service_zip"), o.get("zip"), meta.get("service_zip")),
        description=_first(job.get("description"), o.get("special_instructions"), meta.get("description")),
        line_items=_line_items(job.get("line_items"), o.get("items"), meta.get("items_json")),
        service_amount=service_amount(job, order, payout, rate=rate),
        payout_estimated=estimate_payout(job, order, payout, rate=rate),
        payout_status=payout.status if payout is not None else None,
        assigned_pro=assigned,
        assigned_pro_name=_first(
            job.get("assigned_pro_name"),
            job.get("pro_name"),
            job_meta.get("pro_name"),
            pro_row.get("name"),
            pro_row.get("pro_name"),
            default=None,
        ),
        assigned_pro_phone=_first(
            job.get("assigned_pro_phone"),
            job.get("pro_phone"),
            job_meta.get("pro_phone"),
            pro_row.get("phone"),
            pro_row.get("pro_phone"),
            default=None,
        ),
        delivery_date=_first(job.get("delivery_date"), o.get("delivery_date"), meta.get("delivery_date"), default=None),
        delivery_time=_first(job.get("delivery_time"), o.get("delivery_time"), meta.get("delivery_time"), default=None),
        created_at=_first(job.get("created_at"), o.get("created_at"), default=None),
    )


def merge_view(
    jobs: Sequence[Row],
    orders: Sequence[Row],
    payouts: Sequence[Payout] = (),
    *,
    jobs_id_col: str | None = None,
    jobs_status_col: str = "status",
    payout_rate: float = DEFAULT_PAYOUT_RATE,
    pros_index: Mapping[str, Mapping[str, Any]] | None = None,
) -> list[JobView]:
    """Join jobs, orders and payouts into one list; orders without a job become synthesized jobs.

    Read-only: nothing here writes back to any store.
    """
    pros_index = pros_index or {}
    payout_by_job = index_payouts(payouts)

    order_by_job: dict[str, Row] = {}
    order_by_order_id: dict[str, Row] = {}
    for order in orders:
        linked = order_job_id(order)
        if linked:
            order_by_job.setdefault(linked, order)
        order_id = str(order.get("order_id") or "").strip()
        if order_id:
            order_by_order_id.setdefault(order_id, order)

    views: list[JobView] = []
    claimed: set[int] = set()
    persisted_ids: set[str] = set()
    for row in jobs:
        job_id = job_id_of(row, jobs_id_col)
        if job_id:
            persisted_ids.add(job_id)
        order = order_by_job.get(job_id)
        if order is None:
            order_id = str(row.get("order_id") or "").strip()
            order = order_by_order_id.get(order_id) if order_id else None
        if order is not None:
            claimed.add(id(order))
        payout = payout_by_job.get(job_id)
        source = PersistedJob(job_id=job_id, row=row, order=order, payout=payout)
        status = str(row.get(jobs_status_col) or row.get("status") or "").strip() or "pending_assign"
        views.append(_view(source, row, order, payout, status=status, rate=payout_rate, pros_index=pros_index))

    for order in orders:
        if id(order) in claimed or order_job_id(order) in persisted_ids:
            continue
        job_id = order_job_id(order) or f"order:{order.get('order_id') or order.get('id') or ''}"
        payout = payout_by_job.get(job_id)
        source = SynthesizedJob(job_id=job_id, order=order, payout=payout)
        views.append(
            _view(
                source,
                {},
                order,
                payout,
                status=synthesized_status(order),
                rate=payout_rate,
                pros_index=pros_index,
            )
        )

    synthesized = sum(1 for view in views if view.kind == "synthesized")
    if synthesized:
        logger.debug("merge synthesized %s job(s) from %s order(s)", synthesized, len(orders))
    return views
