from __future__ import annotations

import asyncio
import copy
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

Row = dict[str, Any]
Filters = Mapping[str, Any]


class StoreError(Exception):
    """Base structured-store error."""


class StoreUnavailableError(StoreError):
    """Raised when the store is unreachable or not configured."""


class StoreTimeoutError(StoreError):
    """Raised when a single store call exceeds its deadline."""


class StoreQueryError(StoreError):
    """Raised when the store rejects a statement."""


class StoreTableMissingError(StoreQueryError):
    """Raised when the addressed table does not exist."""


class StoreColumnMissingError(StoreQueryError):
    """Raised when a filter or payload names a column the table lacks."""


class StoreConflictError(StoreQueryError):
    """Raised when a write violates a unique constraint."""


class StructuredStore(Protocol):
    """Single-statement read/write primitives available on every candidate table.

    Filters are equality predicates keyed by column; a list, tuple or set value
    means "column in values". ``update`` and ``delete`` return the affected rows;
    an empty list means zero rows matched and is not an error.
    """

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        limit: int | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[Row]: ...

    async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> list[Row]: ...

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row: ...

    async def delete(self, table: str, filters: Filters) -> list[Row]: ...

    async def close(self) -> None: ...


def is_multi_value(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


@dataclass(slots=True)
class MemoryTable:
    rows: list[Row] = field(default_factory=list)
    columns: set[str] | None = None
    unique: list[tuple[str, ...]] = field(default_factory=list)


class InMemoryStore:
    """Dict-backed store for local development and tests.

    Tables created with ``columns`` behave like a strict relational table:
    unknown columns in filters or payloads raise ``StoreColumnMissingError``.
    Tables created without columns accept any key.
    """

    def __init__(self, *, reachable: bool = True, delay_seconds: float = 0.0) -> None:
        self.tables: dict[str, MemoryTable] = {}
        self.reachable = reachable
        self.delay_seconds = delay_seconds
        self.calls: list[tuple[str, str]] = []

    def create_table(
        self,
        name: str,
        *,
        columns: Iterable[str] | None = None,
        rows: Iterable[Mapping[str, Any]] = (),
        unique: Iterable[tuple[str, ...]] = (),
    ) -> MemoryTable:
        table = MemoryTable(
            rows=[],
            columns=set(columns) if columns is not None else None,
            unique=[tuple(key) for key in unique],
        )
        self.tables[name] = table
        for row in rows:
            self._check_columns(name, table, row.keys())
            table.rows.append(dict(row))
        return table

    def rows(self, name: str) -> list[Row]:
        return copy.deepcopy(self.tables[name].rows)

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        limit: int | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[Row]:
        mem = await self._enter("select", table)
        filters = filters or {}
        self._check_columns(table, mem, filters.keys())
        if order_by is not None:
            self._check_columns(table, mem, [order_by])

        matched = [row for row in mem.rows if _row_matches(row, filters)]
        if order_by is not None:
            present = [row for row in matched if row.get(order_by) is not None]
            missing = [row for row in matched if row.get(order_by) is None]
            present.sort(key=lambda row: str(row[order_by]), reverse=descending)
            matched = present + missing
        if limit is not None:
            matched = matched[: max(0, limit)]
        return copy.deepcopy(matched)

    async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> list[Row]:
        mem = await self._enter("update", table)
        self._check_columns(table, mem, filters.keys())
        self._check_columns(table, mem, patch.keys())

        affected: list[Row] = []
        for row in mem.rows:
            if not _row_matches(row, filters):
                continue
            candidate = {**row, **patch}
            self._check_unique(table, mem, candidate, ignore=row)
            row.update(patch)
            affected.append(row)
        return copy.deepcopy(affected)

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        mem = await self._enter("insert", table)
        self._check_columns(table, mem, row.keys())

        new_row = dict(row)
        if mem.columns is not None and "id" in mem.columns and new_row.get("id") is None:
            new_row["id"] = str(uuid4())
        self._check_unique(table, mem, new_row, ignore=None)
        mem.rows.append(new_row)
        return copy.deepcopy(new_row)

    async def delete(self, table: str, filters: Filters) -> list[Row]:
        mem = await self._enter("delete", table)
        self._check_columns(table, mem, filters.keys())

        kept: list[Row] = []
        removed: list[Row] = []
        for row in mem.rows:
            (removed if _row_matches(row, filters) else kept).append(row)
        mem.rows = kept
        return copy.deepcopy(removed)

    async def close(self) -> None:
        return None

    async def _enter(self, operation: str, table: str) -> MemoryTable:
        self.calls.append((operation, table))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if not self.reachable:
            raise StoreUnavailableError("in-memory store marked unreachable")
        mem = self.tables.get(table)
        if mem is None:
            raise StoreTableMissingError(f"relation {table!r} does not exist")
        return mem

    @staticmethod
    def _check_columns(table: str, mem: MemoryTable, names: Iterable[str]) -> None:
        if mem.columns is None:
            return
        unknown = sorted(set(names) - mem.columns)
        if unknown:
            raise StoreColumnMissingError(f"column {unknown[0]!r} of relation {table!r} does not exist")

    @staticmethod
    def _check_unique(table: str, mem: MemoryTable, candidate: Row, *, ignore: Row | None) -> None:
        for key in mem.unique:
            probe = tuple(candidate.get(col) for col in key)
            if any(value is None for value in probe):
                continue
            for existing in mem.rows:
                if existing is ignore:
                    continue
                if tuple(existing.get(col) for col in key) == probe:
                    raise StoreConflictError(f"duplicate key value violates unique constraint on {table}{key}")


def _row_matches(row: Mapping[str, Any], filters: Filters) -> bool:
    for column, expected in filters.items():
        actual = row.get(column)
        if is_multi_value(expected):
            if not any(_same_value(actual, option) for option in expected):
                return False
        elif not _same_value(actual, expected):
            return False
    return True


def _same_value(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return actual is None and expected is None
    if actual == expected:
        return True
    # PostgREST compares filters textually; mirror that for mixed id types.
    return str(actual) == str(expected)
