from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

from dispatch_api.services.store import (
    Row,
    StoreConflictError,
    StoreError,
    StoreTimeoutError,
    StoreUnavailableError,
    StructuredStore,
)

logger = logging.getLogger(__name__)

C = TypeVar("C")
T = TypeVar("T")

AttemptOutcome = Literal["hit", "miss", "error", "timeout"]
UpsertMode = Literal["updated", "unchanged", "inserted"]


@dataclass(frozen=True, slots=True)
class ShapePolicy:
    """Retry policy shared by every candidate search.

    Each candidate gets ``timeout_seconds`` for its whole attempt; the search
    gives up after ``max_attempts`` candidates.
    """

    timeout_seconds: float = 8.0
    max_attempts: int = 64


DEFAULT_POLICY = ShapePolicy()


@dataclass(frozen=True, slots=True)
class ShapeCandidate:
    """One guessed physical shape for a logical write.

    ``filters`` locate the row (physical column -> value); ``values`` are the
    extra columns written when the shape is used for an insert.
    """

    name: str
    filters: Mapping[str, Any]
    values: Mapping[str, Any] = field(default_factory=dict)

    def insert_row(self) -> dict[str, Any]:
        return {**self.filters, **self.values}

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class RoleBinding:
    """Ranked (column, value) options for one logical role."""

    role: str
    options: tuple[tuple[str, Any], ...]


@dataclass(slots=True)
class Attempt:
    candidate: str
    outcome: AttemptOutcome
    detail: str | None = None


@dataclass(slots=True)
class MatchResult(Generic[C, T]):
    candidate: C | None
    value: T | None
    attempts: list[Attempt]

    @property
    def matched(self) -> bool:
        return self.candidate is not None


@dataclass(slots=True)
class UpsertResult:
    mode: UpsertMode
    row: Row
    shape: ShapeCandidate
    attempts: list[Attempt]

    @property
    def created(self) -> bool:
        return self.mode == "inserted"


class UpsertFailedError(StoreError):
    """Raised when no candidate shape could be updated or inserted."""

    def __init__(self, message: str, attempts: list[Attempt]) -> None:
        super().__init__(message)
        self.attempts = attempts


class ShapeRaceError(StoreError):
    """Raised when a guarded update finds the row changed underneath it."""


WritePlan = Callable[[Row], Sequence[Mapping[str, Any]]]


async def first_match(
    candidates: Iterable[C],
    attempt: Callable[[C], Awaitable[T | None]],
    *,
    policy: ShapePolicy = DEFAULT_POLICY,
    reraise: tuple[type[BaseException], ...] = (),
    label: str = "candidate",
) -> MatchResult[C, T]:
    """Try candidates in order and return the first one whose attempt yields a value.

    ``None`` and empty collections count as a miss. Query errors and timeouts
    mark the candidate failed and move on; an unreachable store stops the
    search because every remaining candidate would fail the same way.
    """
    attempts: list[Attempt] = []
    for index, candidate in enumerate(candidates):
        if index >= policy.max_attempts:
            logger.warning("%s search stopped after %s attempts", label, policy.max_attempts)
            break
        name = str(candidate)
        try:
            value = await asyncio.wait_for(attempt(candidate), timeout=policy.timeout_seconds)
        except StoreUnavailableError:
            raise
        except reraise:
            raise
        except (asyncio.TimeoutError, StoreTimeoutError):
            attempts.append(Attempt(candidate=name, outcome="timeout"))
            logger.debug("%s timed out: %s", label, name)
            continue
        except StoreError as exc:
            attempts.append(Attempt(candidate=name, outcome="error", detail=str(exc)))
            logger.debug("%s failed: %s (%s)", label, name, exc)
            continue

        if value is None or (isinstance(value, (list, dict, set, frozenset, tuple)) and not value):
            attempts.append(Attempt(candidate=name, outcome="miss"))
            continue

        attempts.append(Attempt(candidate=name, outcome="hit"))
        logger.debug("%s matched: %s", label, name)
        return MatchResult(candidate=candidate, value=value, attempts=attempts)

    return MatchResult(candidate=None, value=None, attempts=attempts)


def expand_shapes(
    match: Sequence[RoleBinding],
    write: Sequence[RoleBinding] = (),
) -> list[ShapeCandidate]:
    """Cartesian product of role options, in rank order, without duplicates."""
    shapes: list[ShapeCandidate] = []
    seen: set[tuple[tuple[str, str], ...]] = set()
    bindings = [*match, *write]
    if any(not binding.options for binding in bindings):
        return shapes

    for combo in itertools.product(*(binding.options for binding in bindings)):
        columns = [column for column, _ in combo]
        if len(set(columns)) != len(columns):
            continue
        key = tuple((column, str(value)) for column, value in combo)
        if key in seen:
            continue
        seen.add(key)
        filters = dict(combo[: len(match)])
        values = dict(combo[len(match) :])
        name = ",".join(f"{column}={value}" for column, value in combo)
        shapes.append(ShapeCandidate(name=name, filters=filters, values=values))
    return shapes


async def upsert(
    store: StructuredStore,
    table: str,
    shapes: Sequence[ShapeCandidate],
    *,
    patch: Mapping[str, Any] | None = None,
    plan: WritePlan | None = None,
    guard_columns: Sequence[str] = (),
    insert_shapes: Sequence[ShapeCandidate] | None = None,
    policy: ShapePolicy = DEFAULT_POLICY,
) -> UpsertResult:
    """Update the first shape that matches a row, else insert with the first shape that succeeds.

    With ``patch`` every shape is a blind update filtered by its columns; zero
    affected rows moves on to the next shape. With ``plan`` the matched row is
    read first and the plan's patches are applied in order, each guarded by
    the current value of ``guard_columns`` so a concurrent writer surfaces as
    ``ShapeRaceError`` instead of a lost update.

    A unique-constraint conflict on insert means another writer created the
    row first; the update phase is then run once more against it.
    """
    if (patch is None) == (plan is None):
        raise ValueError("exactly one of patch or plan is required")

    attempts: list[Attempt] = []
    updated = await _update_phase(
        store, table, shapes, patch=patch, plan=plan, guard_columns=guard_columns, policy=policy, attempts=attempts
    )
    if updated is not None:
        return updated

    try:
        inserted = await first_match(
            insert_shapes if insert_shapes is not None else shapes,
            lambda shape: store.insert(table, shape.insert_row()),
            policy=policy,
            reraise=(StoreConflictError,),
            label=f"{table} insert shape",
        )
    except StoreConflictError:
        logger.info("insert into %s hit a unique constraint; retrying update phase", table)
        updated = await _update_phase(
            store, table, shapes, patch=patch, plan=plan, guard_columns=guard_columns, policy=policy, attempts=attempts
        )
        if updated is not None:
            return updated
        raise UpsertFailedError(f"{table}: conflicting row could not be located", attempts)

    attempts.extend(inserted.attempts)
    if inserted.matched and inserted.candidate is not None and inserted.value is not None:
        return UpsertResult(mode="inserted", row=inserted.value, shape=inserted.candidate, attempts=attempts)

    raise UpsertFailedError(f"{table}: no candidate shape could be written", attempts)


async def _update_phase(
    store: StructuredStore,
    table: str,
    shapes: Sequence[ShapeCandidate],
    *,
    patch: Mapping[str, Any] | None,
    plan: WritePlan | None,
    guard_columns: Sequence[str],
    policy: ShapePolicy,
    attempts: list[Attempt],
) -> UpsertResult | None:
    modes: dict[str, UpsertMode] = {}

    if patch is not None:
        values = patch

        async def attempt(shape: ShapeCandidate) -> Row | None:
            rows = await store.update(table, shape.filters, values)
            if not rows:
                return None
            modes[shape.name] = "updated"
            return rows[0]

    elif plan is not None:
        planner = plan

        async def attempt(shape: ShapeCandidate) -> Row | None:
            found = await store.select(table, shape.filters, limit=1)
            if not found:
                return None
            current = found[0]
            steps = list(planner(current))
            if not steps:
                modes[shape.name] = "unchanged"
                return current
            for step in steps:
                guarded = {**shape.filters}
                for column in guard_columns:
                    guarded[column] = current.get(column)
                rows = await store.update(table, guarded, step)
                if not rows:
                    raise ShapeRaceError(f"{table}: row for {shape.name} changed during update")
                current = rows[0]
            modes[shape.name] = "updated"
            return current

    else:
        raise ValueError("an update needs either a patch or a plan")

    result = await first_match(
        shapes,
        attempt,
        policy=policy,
        reraise=(ShapeRaceError,),
        label=f"{table} update shape",
    )
    attempts.extend(result.attempts)
    if result.matched and result.candidate is not None and result.value is not None:
        return UpsertResult(
            mode=modes.get(result.candidate.name, "updated"),
            row=result.value,
            shape=result.candidate,
            attempts=list(attempts),
        )
    return None
