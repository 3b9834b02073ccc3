#!/usr/bin/env python3
"""Resolve the dispatch schema descriptor against the configured store and print it as JSON."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence

from dispatch_api.core.config import get_settings
from dispatch_api.services.repository import DispatchRepository, build_repository
from dispatch_api.services.schema import ProbeHints, SchemaDescriptor


def render_descriptor(descriptor: SchemaDescriptor | None, problems: Sequence[str] = ()) -> str:
    payload = {
        "resolved": descriptor is not None,
        "descriptor": descriptor.to_dict() if descriptor is not None else None,
        "registry_problems": list(problems),
    }
    return json.dumps(payload, indent=2, sort_keys=True)


async def probe(
    repository: DispatchRepository,
    hints: ProbeHints,
    *,
    assignment_tables: Sequence[str] | None = None,
    job_tables: Sequence[str] | None = None,
) -> tuple[SchemaDescriptor | None, list[str]]:
    try:
        problems = await repository.validate_schema()
        descriptor = await repository.resolve_schema(
            hints,
            assignment_tables=assignment_tables,
            job_tables=job_tables,
        )
    finally:
        await repository.close()
    return descriptor, problems


def _csv(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    return [chunk.strip() for chunk in raw.split(",") if chunk.strip()] or None


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Print the resolved dispatch schema descriptor.")
    parser.add_argument("--pro", help="Pro id or email expected to appear in the assignment/job tables")
    parser.add_argument("--job-id", help="Job id expected to appear in the jobs table")
    parser.add_argument("--assignment-tables", help="Comma-separated candidate assignment tables")
    parser.add_argument("--job-tables", help="Comma-separated candidate job tables")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit non-zero when nothing resolves or pinned identifiers are missing",
    )
    args = parser.parse_args(argv)

    repository = build_repository(get_settings())
    descriptor, problems = asyncio.run(
        probe(
            repository,
            ProbeHints(pro_value=args.pro, job_id=args.job_id),
            assignment_tables=_csv(args.assignment_tables),
            job_tables=_csv(args.job_tables),
        )
    )
    print(render_descriptor(descriptor, problems))
    if args.strict and (descriptor is None or problems):
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
