from dispatch_workers.jobs.status_reconciler import describe_schema, next_backoff, reconcile_due, summarize_report


def test_reconcile_due_on_first_run_and_after_interval() -> None:
    assert reconcile_due(None, now=10.0, interval_seconds=300.0)
    assert not reconcile_due(10.0, now=200.0, interval_seconds=300.0)
    assert reconcile_due(10.0, now=310.0, interval_seconds=300.0)


def test_summarize_report_skips_clean_runs() -> None:
    assert summarize_report({"scanned": 40, "drifted": 0, "repaired": 0, "failed": 0, "drift": []}) is None
    assert summarize_report({}) is None


def test_summarize_report_counts_missing_jobs() -> None:
    summary = summarize_report(
        {
            "scanned": 12,
            "drifted": 2,
            "repaired": 1,
            "failed": 1,
            "drift": [
                {"job_id": "job-1", "job_status": "offer_sent", "job_found": True},
                {"job_id": "job-3", "job_status": None, "job_found": False},
            ],
        }
    )
    assert summary == "scanned=12 drifted=2 repaired=1 failed=1 missing_jobs=1"


def test_next_backoff_grows_and_caps() -> None:
    assert next_backoff(5.0, base=5.0, ceiling=60.0, jitter=0.0) == 10.0
    assert next_backoff(1.0, base=5.0, ceiling=60.0, jitter=0.5) == 12.5
    assert next_backoff(50.0, base=5.0, ceiling=60.0, jitter=0.0) == 60.0


def test_describe_schema_names_resolved_tables() -> None:
    payload = {
        "resolved": True,
        "descriptor": {
            "assignments_table": "h2s_dispatch_job_assignments",
            "assignments_state_col": "assign_state",
            "jobs_table": "h2s_dispatch_jobs",
            "jobs_status_col": "status",
        },
    }

    assert describe_schema(payload) == "assignments=h2s_dispatch_job_assignments.assign_state jobs=h2s_dispatch_jobs.status"
    assert describe_schema({"resolved": False, "descriptor": None}) is None
    assert describe_schema({}) is None
