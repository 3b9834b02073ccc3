from __future__ import annotations

import asyncio

from dispatch_api.services.payouts import (
    index_payouts,
    load_payouts,
    normalize_payout,
    normalize_payout_status,
    to_number,
)
from dispatch_api.services.store import InMemoryStore


def test_normalize_payout_status() -> None:
    assert normalize_payout_status({"status": "Paid"}) == "paid"
    assert normalize_payout_status({"payout_status": "transfer_sent"}) == "paid"
    assert normalize_payout_status({"state": "approved"}) == "approved"
    assert normalize_payout_status({"status": "declined_by_admin"}) == "rejected"
    assert normalize_payout_status({"status": "queued"}) == "pending"
    assert normalize_payout_status({"status": "unpaid"}) == "pending"
    assert normalize_payout_status({}) == "pending"


def test_to_number_rejects_non_numeric_values() -> None:
    assert to_number("12.5") == 12.5
    assert to_number(3) == 3.0
    assert to_number(None) is None
    assert to_number(True) is None
    assert to_number("n/a") is None
    assert to_number(float("nan")) is None


def test_normalize_payout_reads_alternate_columns() -> None:
    payout = normalize_payout(
        {"entry_id": "e1", "dispatch_job_id": "job-1", "tech_id": "t-1", "total_amount": "42.5", "status": "processed"}
    )

    assert payout.payout_id == "e1"
    assert payout.job_id == "job-1"
    assert payout.pro_id == "t-1"
    assert payout.amount == 42.5
    assert payout.status == "paid"


def test_load_payouts_prefers_first_table_with_rows() -> None:
    store = InMemoryStore()
    store.create_table("h2s_payouts_ledger", columns={"id", "job_id", "amount"})
    store.create_table("dispatch_payouts", rows=[{"id": "p1", "job_id": "job-1", "amount": 80, "status": "approved"}])

    load = asyncio.run(load_payouts(store))

    assert load.table == "dispatch_payouts"
    assert [(p.job_id, p.amount, p.status) for p in load.payouts] == [("job-1", 80.0, "approved")]


def test_load_payouts_reports_first_existing_empty_table() -> None:
    store = InMemoryStore()
    store.create_table("h2s_dispatch_payouts")
    store.create_table("payouts")

    load = asyncio.run(load_payouts(store))

    assert load.table == "h2s_dispatch_payouts"
    assert load.payouts == []


def test_load_payouts_degrades_when_unreachable() -> None:
    load = asyncio.run(load_payouts(InMemoryStore(reachable=False)))
    assert load.table is None
    assert load.payouts == []


def test_index_payouts_keeps_latest_row_per_job() -> None:
    first = normalize_payout({"id": "p1", "job_id": "job-1", "amount": 10})
    second = normalize_payout({"id": "p2", "job_id": "job-1", "amount": 20})
    orphan = normalize_payout({"id": "p3", "amount": 5})

    index = index_payouts([first, second, orphan])

    assert list(index) == ["job-1"]
    assert index["job-1"].payout_id == "p2"
