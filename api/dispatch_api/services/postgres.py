from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from dispatch_api.services.store import (
    Filters,
    Row,
    StoreColumnMissingError,
    StoreConflictError,
    StoreQueryError,
    StoreTableMissingError,
    StoreTimeoutError,
    StoreUnavailableError,
    is_multi_value,
)


class PostgresStore:
    """Structured store speaking directly to Postgres through an asyncpg pool.

    Identifiers are only ever quoted, never interpolated raw, because table
    and column names arrive from runtime probing rather than from code.
    """

    def __init__(
        self,
        database_url: str | None,
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
        timeout_seconds: float = 8.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.timeout_seconds = timeout_seconds
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        limit: int | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[Row]:
        params: list[Any] = []
        where_sql = _where_clause(filters or {}, params)
        sql = f"select * from {quote_ident(table)}{where_sql}"
        if order_by:
            direction = "desc" if descending else "asc"
            sql += f" order by {quote_ident(order_by)} {direction} nulls last"
        if limit is not None:
            params.append(max(0, limit))
            sql += f" limit ${len(params)}"
        return await self._fetch(sql, params)

    async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> list[Row]:
        if not patch:
            return []
        params: list[Any] = []
        assignments = []
        for column, value in patch.items():
            params.append(_encode_value(value))
            assignments.append(f"{quote_ident(column)} = ${len(params)}")
        where_sql = _where_clause(filters, params)
        sql = f"update {quote_ident(table)} set {', '.join(assignments)}{where_sql} returning *"
        return await self._fetch(sql, params)

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        columns = list(row.keys())
        params = [_encode_value(row[column]) for column in columns]
        if columns:
            column_sql = ", ".join(quote_ident(column) for column in columns)
            value_sql = ", ".join(f"${index}" for index in range(1, len(columns) + 1))
            sql = f"insert into {quote_ident(table)} ({column_sql}) values ({value_sql}) returning *"
        else:
            sql = f"insert into {quote_ident(table)} default values returning *"
        rows = await self._fetch(sql, params)
        return rows[0] if rows else dict(row)

    async def delete(self, table: str, filters: Filters) -> list[Row]:
        params: list[Any] = []
        where_sql = _where_clause(filters, params)
        return await self._fetch(f"delete from {quote_ident(table)}{where_sql} returning *", params)

    async def _fetch(self, sql: str, params: list[Any]) -> list[Row]:
        pool = await self._get_pool()
        try:
            records = await pool.fetch(sql, *params, timeout=self.timeout_seconds)
        except pg_exc.UndefinedTableError as exc:
            raise StoreTableMissingError(str(exc)) from exc
        except pg_exc.UndefinedColumnError as exc:
            raise StoreColumnMissingError(str(exc)) from exc
        except pg_exc.UniqueViolationError as exc:
            raise StoreConflictError(str(exc)) from exc
        except pg_exc.PostgresError as exc:
            raise StoreQueryError(str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise StoreTimeoutError("statement timed out") from exc
        except (OSError, pg_exc.InterfaceError) as exc:
            raise StoreUnavailableError("database unavailable") from exc
        return [dict(record) for record in records]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("FD_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _where_clause(filters: Filters, params: list[Any]) -> str:
    conditions: list[str] = []
    for column, value in filters.items():
        ident = quote_ident(column)
        if value is None:
            conditions.append(f"{ident} is null")
        elif is_multi_value(value):
            params.append([str(item) for item in value])
            conditions.append(f"{ident}::text = any(${len(params)}::text[])")
        else:
            params.append(str(value) if not isinstance(value, bool) else ("true" if value else "false"))
            conditions.append(f"{ident}::text = ${len(params)}")
    if not conditions:
        return ""
    return " where " + " and ".join(conditions)


def _encode_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value
