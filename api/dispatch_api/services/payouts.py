from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from dispatch_api.services.store import Row, StoreError, StoreUnavailableError, StructuredStore

logger = logging.getLogger(__name__)

PayoutStatus = Literal["pending", "approved", "paid", "rejected"]

DEFAULT_PAYOUT_TABLES = (
    "h2s_payouts_ledger",
    "h2s_dispatch_payouts_ledger",
    "h2s_dispatch_payouts",
    "dispatch_payouts",
    "h2s_payouts",
    "payouts",
)


@dataclass(frozen=True, slots=True)
class Payout:
    payout_id: str
    job_id: str
    pro_id: str
    amount: float
    status: PayoutStatus
    created_at: Any = None
    raw: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payout_id": self.payout_id,
            "job_id": self.job_id,
            "pro_id": self.pro_id,
            "amount": self.amount,
            "status": self.status,
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class PayoutLoad:
    table: str | None
    payouts: list[Payout]


def normalize_payout_status(row: Mapping[str, Any]) -> PayoutStatus:
    values = [str(row.get(key) or "").strip().lower() for key in ("payout_status", "status", "state")]
    values = [value for value in values if value]
    if any("unpaid" in value for value in values):
        return "pending"

    def has(*needles: str) -> bool:
        return any(needle in value for value in values for needle in needles)

    if has("paid", "sent", "processed"):
        return "paid"
    if has("approve"):
        return "approved"
    if has("reject", "decline"):
        return "rejected"
    return "pending"


def to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:
        return None
    return number


def _first_text(row: Mapping[str, Any], keys: Sequence[str]) -> str:
    for key in keys:
        text = str(row.get(key) or "").strip()
        if text:
            return text
    return ""


def normalize_payout(row: Row) -> Payout:
    amount = None
    for key in ("amount", "total_amount", "payout_amount"):
        amount = to_number(row.get(key))
        if amount is not None:
            break
    return Payout(
        payout_id=_first_text(row, ("payout_id", "entry_id", "id")),
        job_id=_first_text(row, ("job_id", "dispatch_job_id", "work_order_id", "ticket_id")),
        pro_id=_first_text(row, ("pro_id", "tech_id", "assigned_pro_id")),
        amount=amount or 0.0,
        status=normalize_payout_status(row),
        created_at=row.get("created_at") or row.get("earned_at") or row.get("updated_at"),
        raw=row,
    )


async def load_payouts(
    store: StructuredStore,
    tables: Sequence[str] = DEFAULT_PAYOUT_TABLES,
    *,
    limit: int = 2000,
) -> PayoutLoad:
    """Read the first candidate table holding rows, else the first that exists.

    Missing tables are skipped; an unreachable store yields an empty load.
    """
    first_empty: str | None = None
    for table in tables:
        try:
            rows = await store.select(table, limit=limit)
        except StoreUnavailableError as exc:
            logger.warning("payout store unreachable: %s", exc)
            return PayoutLoad(table=None, payouts=[])
        except StoreError:
            logger.debug("payout table %s unavailable", table)
            continue
        if rows:
            return PayoutLoad(table=table, payouts=[normalize_payout(row) for row in rows])
        if first_empty is None:
            first_empty = table
    return PayoutLoad(table=first_empty, payouts=[])


def index_payouts(payouts: Sequence[Payout]) -> dict[str, Payout]:
    """Latest payout per job id; later rows win."""
    index: dict[str, Payout] = {}
    for payout in payouts:
        if payout.job_id:
            index[payout.job_id] = payout
    return index
