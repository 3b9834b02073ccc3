from __future__ import annotations

from typing import Any


def reconcile_due(last_run_at: float | None, now: float, interval_seconds: float) -> bool:
    if last_run_at is None:
        return True
    return now - last_run_at >= interval_seconds


def summarize_report(report: dict[str, Any]) -> str | None:
    """One log line for a reconcile report, or ``None`` when nothing drifted."""
    drifted = int(report.get("drifted") or 0)
    if drifted <= 0:
        return None
    missing = sum(1 for item in report.get("drift") or [] if not item.get("job_found", True))
    return (
        f"scanned={int(report.get('scanned') or 0)} drifted={drifted} "
        f"repaired={int(report.get('repaired') or 0)} failed={int(report.get('failed') or 0)} "
        f"missing_jobs={missing}"
    )


def next_backoff(current: float, *, base: float, ceiling: float, jitter: float) -> float:
    return min(max(current, base) * (2.0 + jitter), ceiling)


def describe_schema(payload: dict[str, Any]) -> str | None:
    """Tables and state columns the API resolved, or ``None`` when it resolved nothing."""
    descriptor = payload.get("descriptor") if payload.get("resolved") else None
    if not descriptor:
        return None
    return (
        f"assignments={descriptor.get('assignments_table')}.{descriptor.get('assignments_state_col')} "
        f"jobs={descriptor.get('jobs_table')}.{descriptor.get('jobs_status_col')}"
    )
