"""Transactional tabular store used by the core.

The store abstracts relational persistence: rows are plain mappings, filters
are equality matches and every mutating call reports the number of affected
rows. :class:`MemoryStore` is the reference implementation used by tests and
single-process deployments.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .exceptions import ErrorKind, OpsicleError

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class Store(Protocol):
    """Operations the core requires from its persistence layer."""

    async def insert(self, table: str, values: Mapping[str, Any]) -> None: ...

    async def update(self, table: str, where: Mapping[str, Any], values: Mapping[str, Any]) -> int: ...

    async def delete(self, table: str, where: Mapping[str, Any]) -> int: ...

    async def select_one(
        self,
        table: str,
        where: Mapping[str, Any],
        projection: Sequence[str] | None = None,
    ) -> Row: ...

    async def select_many(
        self,
        table: str,
        where: Mapping[str, Any] | None = None,
        projection: Sequence[str] | None = None,
        order: Sequence[str] | None = None,
    ) -> list[Row]: ...

    def transaction(self) -> Any: ...


@dataclass(slots=True, frozen=True)
class ForeignKey:
    """``column`` in the child table references ``parent_table.parent_column`` with cascading delete."""

    column: str
    parent_table: str
    parent_column: str = "id"


@dataclass(slots=True)
class TableSchema:
    """A table and its constraints.

    When ``unique_where`` is set the unique constraints only hold among rows
    matching it, like a partial index.
    """

    name: str
    unique: tuple[tuple[str, ...], ...] = ()
    unique_where: Mapping[str, Any] | None = None
    foreign_keys: tuple[ForeignKey, ...] = ()
    rows: list[Row] = field(default_factory=list)


class MemoryStore:
    """In-process :class:`Store` with unique constraints, cascades and transactions."""

    def __init__(self, schemas: Iterable[TableSchema] = ()) -> None:
        self._tables: dict[str, TableSchema] = {}
        for schema in schemas:
            self.register(schema)
        self._lock = asyncio.Lock()

    def register(self, schema: TableSchema) -> None:
        if schema.name in self._tables:
            raise ValueError(f"Table {schema.name!r} already registered")
        self._tables[schema.name] = schema

    @property
    def tables(self) -> tuple[str, ...]:
        return tuple(self._tables)

    async def insert(self, table: str, values: Mapping[str, Any]) -> None:
        async with self._lock:
            self._insert(table, values)

    async def update(self, table: str, where: Mapping[str, Any], values: Mapping[str, Any]) -> int:
        async with self._lock:
            return self._update(table, where, values)

    async def delete(self, table: str, where: Mapping[str, Any]) -> int:
        async with self._lock:
            return self._delete(table, where)

    async def select_one(
        self,
        table: str,
        where: Mapping[str, Any],
        projection: Sequence[str] | None = None,
    ) -> Row:
        async with self._lock:
            return self._select_one(table, where, projection)

    async def select_many(
        self,
        table: str,
        where: Mapping[str, Any] | None = None,
        projection: Sequence[str] | None = None,
        order: Sequence[str] | None = None,
    ) -> list[Row]:
        async with self._lock:
            return self._select_many(table, where, projection, order)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_StoreTransaction]:
        """Run a unit of work; any exception rolls back every change made inside it."""

        async with self._lock:
            snapshot = {name: copy.deepcopy(schema.rows) for name, schema in self._tables.items()}
            unit = _StoreTransaction(self)
            try:
                yield unit
            except BaseException:
                for name, rows in snapshot.items():
                    self._tables[name].rows = rows
                logger.debug("store transaction rolled back")
                raise
            finally:
                unit.closed = True

    def _schema(self, table: str) -> TableSchema:
        try:
            return self._tables[table]
        except KeyError as exc:
            raise OpsicleError(ErrorKind.INTERNAL, f"unknown table {table}") from exc

    def _insert(self, table: str, values: Mapping[str, Any]) -> None:
        schema = self._schema(table)
        row = {key: _normalize(value) for key, value in values.items()}
        for columns in schema.unique:
            key = tuple(row.get(column) for column in columns)
            if any(part is None for part in key) or not _constrained(schema, row):
                continue
            for existing in _constrained_rows(schema):
                if tuple(existing.get(column) for column in columns) == key:
                    raise OpsicleError(
                        ErrorKind.DUPLICATE_ENTRY,
                        f"{table}({', '.join(columns)}) already exists",
                    )
        for foreign in schema.foreign_keys:
            value = row.get(foreign.column)
            if value is None:
                continue
            parent = self._schema(foreign.parent_table)
            if not any(candidate.get(foreign.parent_column) == value for candidate in parent.rows):
                raise OpsicleError(ErrorKind.NOT_FOUND, f"{foreign.parent_table} row {value} does not exist")
        schema.rows.append(row)

    def _update(self, table: str, where: Mapping[str, Any], values: Mapping[str, Any]) -> int:
        schema = self._schema(table)
        changes = {key: _normalize(value) for key, value in values.items()}
        matched = [row for row in schema.rows if _matches(row, where)]
        if not matched:
            return 0
        scope = set(schema.unique_where or ())
        touched_unique = [columns for columns in schema.unique if (set(columns) | scope) & set(changes)]
        for columns in touched_unique:
            for row in matched:
                candidate = {**row, **changes}
                key = tuple(candidate.get(column) for column in columns)
                if any(part is None for part in key) or not _constrained(schema, candidate):
                    continue
                for other in _constrained_rows(schema):
                    if other is row:
                        continue
                    if tuple(other.get(column) for column in columns) == key:
                        raise OpsicleError(
                            ErrorKind.DUPLICATE_ENTRY,
                            f"{table}({', '.join(columns)}) already exists",
                        )
        for row in matched:
            row.update(changes)
        return len(matched)

    def _delete(self, table: str, where: Mapping[str, Any]) -> int:
        schema = self._schema(table)
        doomed = [row for row in schema.rows if _matches(row, where)]
        if not doomed:
            return 0
        schema.rows = [row for row in schema.rows if not any(row is victim for victim in doomed)]
        for child in self._tables.values():
            for foreign in child.foreign_keys:
                if foreign.parent_table != table:
                    continue
                for victim in doomed:
                    parent_value = victim.get(foreign.parent_column)
                    if parent_value is not None:
                        self._delete(child.name, {foreign.column: parent_value})
        return len(doomed)

    def _select_one(self, table: str, where: Mapping[str, Any], projection: Sequence[str] | None) -> Row:
        schema = self._schema(table)
        for row in schema.rows:
            if _matches(row, where):
                return _project(row, projection)
        raise OpsicleError(ErrorKind.NOT_FOUND, f"no {table} row matches")

    def _select_many(
        self,
        table: str,
        where: Mapping[str, Any] | None,
        projection: Sequence[str] | None,
        order: Sequence[str] | None,
    ) -> list[Row]:
        schema = self._schema(table)
        rows = [row for row in schema.rows if _matches(row, where or {})]
        for column in reversed(order or ()):
            descending = column.startswith("-")
            name = column.lstrip("-")
            rows.sort(key=lambda row: (row.get(name) is None, row.get(name)), reverse=descending)
        return [_project(row, projection) for row in rows]


class _StoreTransaction:
    """Store view bound to an open :meth:`MemoryStore.transaction`."""

    def __init__(self, store: MemoryStore) -> None:
        self._store = store
        self.closed = False

    def _ensure_open(self) -> None:
        if self.closed:
            raise OpsicleError(ErrorKind.INTERNAL, "transaction already closed")

    async def insert(self, table: str, values: Mapping[str, Any]) -> None:
        self._ensure_open()
        self._store._insert(table, values)

    async def update(self, table: str, where: Mapping[str, Any], values: Mapping[str, Any]) -> int:
        self._ensure_open()
        return self._store._update(table, where, values)

    async def delete(self, table: str, where: Mapping[str, Any]) -> int:
        self._ensure_open()
        return self._store._delete(table, where)

    async def select_one(
        self,
        table: str,
        where: Mapping[str, Any],
        projection: Sequence[str] | None = None,
    ) -> Row:
        self._ensure_open()
        return self._store._select_one(table, where, projection)

    async def select_many(
        self,
        table: str,
        where: Mapping[str, Any] | None = None,
        projection: Sequence[str] | None = None,
        order: Sequence[str] | None = None,
    ) -> list[Row]:
        self._ensure_open()
        return self._store._select_many(table, where, projection, order)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_StoreTransaction]:
        # already inside a unit of work
        yield self


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return copy.deepcopy(value)


def _matches(row: Mapping[str, Any], where: Mapping[str, Any]) -> bool:
    for key, expected in where.items():
        if row.get(key) != _normalize(expected):
            return False
    return True


def _constrained(schema: TableSchema, row: Mapping[str, Any]) -> bool:
    return schema.unique_where is None or _matches(row, schema.unique_where)


def _constrained_rows(schema: TableSchema) -> list[Row]:
    return [row for row in schema.rows if _constrained(schema, row)]


def _project(row: Mapping[str, Any], projection: Sequence[str] | None) -> Row:
    if projection is None:
        return copy.deepcopy(dict(row))
    return {column: copy.deepcopy(row.get(column)) for column in projection}


def expect_rows(affected: int, expected: int = 1, *, action: str) -> None:
    """Assert an exact affected-row count, raising ``not_found`` or ``internal`` otherwise."""

    if affected == expected:
        return
    if affected == 0:
        raise OpsicleError(ErrorKind.NOT_FOUND, f"{action}: no rows affected")
    raise OpsicleError(ErrorKind.INTERNAL, f"{action}: expected {expected} rows, got {affected}")


__all__ = [
    "ForeignKey",
    "MemoryStore",
    "Row",
    "Store",
    "TableSchema",
    "expect_rows",
]
