from __future__ import annotations

import asyncio
import logging
import random
import time

import httpx
from opentelemetry import trace

from dispatch_workers.core.config import get_settings
from dispatch_workers.core.telemetry import (
    configure_worker_logging,
    reconcile_span_attributes,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from dispatch_workers.jobs.status_reconciler import describe_schema, next_backoff, reconcile_due, summarize_report
from dispatch_workers.services.dispatch_client import DispatchClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def check_dispatch_schema(client: DispatchClient) -> bool:
    """Log which tables the API resolved; a failed check never stops the worker."""
    try:
        payload = await client.get_schema()
    except httpx.HTTPError as exc:
        logger.warning("dispatch schema check failed: %s", exc)
        return False
    described = describe_schema(payload)
    if described is None:
        logger.warning("dispatch API resolved no schema")
        return False
    logger.info("dispatch schema %s", described)
    return True


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = DispatchClient(
        base_url=settings.api_base_url,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = settings.poll_interval_seconds
    last_reconcile_at: float | None = None

    try:
        await check_dispatch_schema(client)
        while True:
            try:
                now = time.monotonic()
                if reconcile_due(last_reconcile_at, now, settings.reconcile_interval_seconds):
                    with tracer.start_as_current_span("worker.reconcile_job_status") as span:
                        report = await client.reconcile_job_status(
                            limit=settings.reconcile_batch_size,
                            dry_run=settings.reconcile_dry_run,
                        )
                        span.set_attributes(reconcile_span_attributes(report))
                        summary = summarize_report(report)
                        if summary:
                            logger.info("job status reconcile %s", summary)
                    last_reconcile_at = now

                backoff = settings.poll_interval_seconds
                await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                sleep_for = next_backoff(
                    backoff,
                    base=settings.poll_interval_seconds,
                    ceiling=settings.max_backoff_seconds,
                    jitter=random.uniform(0.0, 0.5),
                )
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
