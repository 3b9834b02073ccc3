from __future__ import annotations

import pytest
from opentelemetry.sdk.resources import SERVICE_NAME

from dispatch_workers.core.config import Settings
from dispatch_workers.core.telemetry import (
    build_span_exporter,
    parse_otlp_headers,
    reconcile_span_attributes,
    setup_worker_telemetry,
    worker_resource,
)


def test_disabled_telemetry_installs_nothing() -> None:
    runtime = setup_worker_telemetry(Settings(otel_enabled=False))
    assert runtime.enabled is False
    assert runtime.provider is None


def test_worker_resource_describes_reconcile_target() -> None:
    settings = Settings(api_base_url="http://dispatch.internal", reconcile_batch_size=50, reconcile_dry_run=True)

    attributes = worker_resource(settings).attributes

    assert attributes[SERVICE_NAME] == "fieldwork-dispatch-workers"
    assert attributes["dispatch.api_base_url"] == "http://dispatch.internal"
    assert attributes["dispatch.reconcile.batch_size"] == 50
    assert attributes["dispatch.reconcile.dry_run"] is True


def test_reconcile_span_attributes_count_missing_jobs() -> None:
    report = {
        "scanned": 7,
        "drifted": 2,
        "repaired": "1",
        "drift": [{"job_id": "job-1", "job_found": True}, {"job_id": "job-3", "job_found": False}],
    }

    assert reconcile_span_attributes(report) == {
        "dispatch.reconcile.scanned": 7,
        "dispatch.reconcile.drifted": 2,
        "dispatch.reconcile.repaired": 1,
        "dispatch.reconcile.failed": 0,
        "dispatch.reconcile.missing_jobs": 1,
    }


def test_parse_otlp_headers_skips_malformed_items() -> None:
    assert parse_otlp_headers("authorization=Bearer abc, x-team = dispatch ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "dispatch",
    }
    assert parse_otlp_headers(None) == {}


def test_span_exporter_needs_an_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)

    assert build_span_exporter(None, "authorization=x") is None
    assert build_span_exporter("http://collector:4318/v1/traces", None) is not None
