from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from dispatch_api.services.assignments import ACCEPTED, AssignmentCoordinator, normalize_state
from dispatch_api.services.store import StoreError

logger = logging.getLogger(__name__)

PRE_ACCEPT_STATUSES = frozenset({"", "pending_assign", "offer_sent", "queued"})


@dataclass(frozen=True, slots=True)
class StatusDrift:
    job_id: str
    job_status: str | None
    job_found: bool

    def to_dict(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "job_status": self.job_status, "job_found": self.job_found}


@dataclass(slots=True)
class RepairReport:
    scanned: int = 0
    drifted: int = 0
    repaired: int = 0
    failed: int = 0
    drift: list[StatusDrift] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "drifted": self.drifted,
            "repaired": self.repaired,
            "failed": self.failed,
            "drift": [item.to_dict() for item in self.drift],
        }


async def find_status_drift(coordinator: AssignmentCoordinator, *, limit: int = 200) -> tuple[int, list[StatusDrift]]:
    """Accepted assignments whose job row still shows a pre-accept status.

    Returns the number of accepted assignments scanned and the drifted jobs.
    A job row that cannot be found at all is reported with ``job_found=False``.
    """
    descriptor = coordinator.descriptor
    store = coordinator.store
    rows = await store.select(
        descriptor.assignments_table,
        {descriptor.assignments_state_col: ACCEPTED},
        limit=limit,
    )
    job_ids = list(dict.fromkeys(str(row[descriptor.assignments_job_col]) for row in rows if row.get(descriptor.assignments_job_col)))
    if not job_ids:
        return len(rows), []

    statuses: dict[str, str | None] = {}
    try:
        jobs = await store.select(descriptor.jobs_table, {descriptor.jobs_id_col: job_ids}, limit=len(job_ids))
    except StoreError as exc:
        logger.warning("drift scan could not read %s: %s", descriptor.jobs_table, exc)
        return len(rows), []
    for job in jobs:
        statuses[str(job.get(descriptor.jobs_id_col))] = job.get(descriptor.jobs_status_col)

    drift: list[StatusDrift] = []
    for job_id in job_ids:
        if job_id not in statuses:
            drift.append(StatusDrift(job_id=job_id, job_status=None, job_found=False))
            continue
        status = statuses[job_id]
        if normalize_state(status) in PRE_ACCEPT_STATUSES:
            drift.append(StatusDrift(job_id=job_id, job_status=status, job_found=True))
    return len(rows), drift


async def repair_status_drift(coordinator: AssignmentCoordinator, *, limit: int = 200, dry_run: bool = False) -> RepairReport:
    scanned, drift = await find_status_drift(coordinator, limit=limit)
    report = RepairReport(scanned=scanned, drifted=len(drift), drift=drift)
    if dry_run:
        return report

    for item in drift:
        if not item.job_found:
            report.failed += 1
            continue
        outcome = await coordinator.set_job_status(item.job_id, ACCEPTED, step="job_accepted_repair")
        if outcome.status == "applied":
            report.repaired += 1
        else:
            report.failed += 1

    if report.drifted:
        logger.info(
            "status drift repair scanned=%s drifted=%s repaired=%s failed=%s",
            report.scanned,
            report.drifted,
            report.repaired,
            report.failed,
        )
    return report
