from __future__ import annotations

import asyncio
import json
import os
import subprocess
import sys
from pathlib import Path

from dispatch_api.services.repository import DispatchRepository
from dispatch_api.services.schema import ProbeHints
from dispatch_api.services.store import InMemoryStore
from probe_schema import probe, render_descriptor

ROOT = Path(__file__).resolve().parents[2]
SCRIPT_PATH = ROOT / "scripts" / "probe_schema.py"


def _run_script(*args: str) -> subprocess.CompletedProcess[str]:
    env = {
        **os.environ,
        "FD_STORE_BACKEND": "memory",
        "PYTHONPATH": os.pathsep.join(filter(None, [str(ROOT / "api"), os.environ.get("PYTHONPATH")])),
    }
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=False,
        capture_output=True,
        text=True,
        env=env,
    )


def test_script_reports_unresolved_schema_on_empty_store() -> None:
    completed = _run_script("--pro", "pro-9")

    assert completed.returncode == 0
    payload = json.loads(completed.stdout)
    assert payload == {"descriptor": None, "registry_problems": [], "resolved": False}


def test_script_strict_mode_fails_when_unresolved() -> None:
    completed = _run_script("--strict")
    assert completed.returncode == 2


def test_probe_resolves_against_given_tables() -> None:
    store = InMemoryStore()
    store.create_table("dispatch_assignments", rows=[{"job_id": "job-1", "tech_id": "t-1", "status": "offer_sent"}])
    store.create_table("work_orders", rows=[{"work_order_id": "job-1", "status": "offer_sent"}])

    descriptor, problems = asyncio.run(
        probe(
            DispatchRepository(store),
            ProbeHints(pro_value="t-1", job_id="job-1"),
            assignment_tables=["dispatch_assignments"],
            job_tables=["work_orders"],
        )
    )

    assert problems == []
    payload = json.loads(render_descriptor(descriptor, problems))
    assert payload["resolved"] is True
    assert payload["descriptor"]["assignments_pro_col"] == "tech_id"
    assert payload["descriptor"]["jobs_id_col"] == "work_order_id"
