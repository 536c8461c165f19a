"""Declarative models mapped onto a :class:`~opsicle.store.Store`."""

from __future__ import annotations

import datetime as dt
import uuid
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import msgspec
from msgspec import structs
from msgspec.inspect import StructType, type_info

from .store import ForeignKey, MemoryStore, Store, TableSchema

M = TypeVar("M", bound="Model")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class Model(msgspec.Struct, frozen=True, kw_only=True):
    """Base class for all persisted records."""


class DatabaseModel(Model, kw_only=True):
    """Base model including a UUID identifier and creation timestamp."""

    id: str = msgspec.field(default_factory=new_id)
    created_at: dt.datetime = msgspec.field(default_factory=utcnow)


@dataclass(slots=True)
class ModelInfo(Generic[M]):
    """Metadata describing a registered model."""

    model: type[M]
    table: str
    fields: tuple[str, ...]
    unique: tuple[tuple[str, ...], ...]
    references: tuple[ForeignKey, ...]
    redacted_fields: frozenset[str]
    unique_where: Mapping[str, Any] | None = None

    def schema(self) -> TableSchema:
        return TableSchema(
            name=self.table,
            unique=self.unique,
            unique_where=self.unique_where,
            foreign_keys=self.references,
        )


class ModelRegistry:
    """Registry mapping models to metadata for runtime lookups."""

    def __init__(self) -> None:
        self._models: dict[type[Model], ModelInfo[Any]] = {}
        self._tables: dict[str, ModelInfo[Any]] = {}

    def register(self, info: ModelInfo[Any]) -> None:
        if info.model in self._models:
            raise ValueError(f"Model {info.model.__name__} already registered")
        if info.table in self._tables:
            raise ValueError(f"Table '{info.table}' already registered")
        self._models[info.model] = info
        self._tables[info.table] = info

    def info_for(self, model: type[M]) -> ModelInfo[M]:
        try:
            info = self._models[model]
        except KeyError as exc:  # pragma: no cover
            raise LookupError(f"Model {model.__name__} is not registered") from exc
        return info  # type: ignore[return-value]

    def models(self) -> Iterable[ModelInfo[Any]]:
        return self._models.values()

    def schemas(self) -> list[TableSchema]:
        return [info.schema() for info in self._models.values()]


_default_registry = ModelRegistry()


def default_registry() -> ModelRegistry:
    """Return the shared global registry."""

    return _default_registry


def model(
    *,
    table: str,
    unique: Sequence[Sequence[str]] = (),
    unique_where: Mapping[str, Any] | None = None,
    references: Mapping[str, str] | None = None,
    redacted_fields: Sequence[str] = (),
    registry: ModelRegistry | None = None,
) -> Callable[[type[M]], type[M]]:
    """Class decorator used to register persisted models.

    ``references`` maps a column to the parent table whose ``id`` it points at;
    deleting the parent row cascades to this table.
    ``unique_where`` limits the unique constraints to rows matching it.
    """

    def decorator(cls: type[M]) -> type[M]:
        reg = registry or _default_registry
        metadata = type_info(cls)
        if not isinstance(metadata, StructType):  # pragma: no cover - msgspec ensures this
            raise TypeError(f"Model {cls!r} is not a msgspec.Struct")
        names = tuple(f.name for f in metadata.fields)
        declared = set(redacted_fields) | {column for group in unique for column in group}
        declared |= set(references or {}) | set(unique_where or {})
        unknown = sorted(name for name in declared if name not in names)
        if unknown:
            raise ValueError(f"Unknown field(s) {', '.join(unknown)} for model {cls.__name__}")
        info = ModelInfo(
            model=cls,
            table=table,
            fields=names,
            unique=tuple(tuple(group) for group in unique),
            references=tuple(ForeignKey(column, parent) for column, parent in (references or {}).items()),
            redacted_fields=frozenset(redacted_fields),
            unique_where=dict(unique_where) if unique_where else None,
        )
        setattr(cls, "__model_info__", info)
        reg.register(info)
        return cls

    return decorator


def redact(instance: M) -> M:
    """Return a copy of ``instance`` with every redacted field set to ``None``."""

    info: ModelInfo[Any] | None = getattr(type(instance), "__model_info__", None)
    if info is None or not info.redacted_fields:
        return instance
    return structs.replace(instance, **{name: None for name in info.redacted_fields})


class ModelManager(Generic[M]):
    """Typed CRUD helpers for one model over a store handle."""

    def __init__(self, store: Store, info: ModelInfo[M]) -> None:
        self._store = store
        self._info = info

    @property
    def table(self) -> str:
        return self._info.table

    async def create(self, instance: M) -> M:
        await self._store.insert(self._info.table, _to_row(instance))
        return instance

    async def get(self, **filters: Any) -> M:
        """Return the first match, raising ``not_found`` when there is none."""

        row = await self._store.select_one(self._info.table, filters)
        return msgspec.convert(row, type=self._info.model)

    async def find(self, **filters: Any) -> M | None:
        rows = await self._store.select_many(self._info.table, filters)
        if not rows:
            return None
        return msgspec.convert(rows[0], type=self._info.model)

    async def list(self, *, order_by: Sequence[str] | None = None, **filters: Any) -> list[M]:
        rows = await self._store.select_many(self._info.table, filters, order=order_by)
        return [msgspec.convert(row, type=self._info.model) for row in rows]

    async def update(self, values: Mapping[str, Any], **filters: Any) -> int:
        return await self._store.update(self._info.table, filters, values)

    async def delete(self, **filters: Any) -> int:
        return await self._store.delete(self._info.table, filters)


class ORM:
    """Entry point exposing a :class:`ModelManager` per registered model."""

    def __init__(self, store: Store, registry: ModelRegistry | None = None) -> None:
        self.store = store
        self.registry = registry or _default_registry
        self._managers: dict[type[Model], ModelManager[Any]] = {}

    def __call__(self, model: type[M]) -> ModelManager[M]:
        try:
            return self._managers[model]
        except KeyError:
            manager = ModelManager(self.store, self.registry.info_for(model))
            self._managers[model] = manager
            return manager

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[ORM]:
        async with self.store.transaction() as unit:
            yield ORM(unit, self.registry)


def memory_store(registry: ModelRegistry | None = None) -> MemoryStore:
    """Build a :class:`MemoryStore` with a table for every registered model."""

    return MemoryStore((registry or _default_registry).schemas())


def _to_row(instance: Model) -> dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in structs.asdict(instance).items()}


__all__ = [
    "DatabaseModel",
    "Model",
    "ModelInfo",
    "ModelManager",
    "ModelRegistry",
    "ORM",
    "default_registry",
    "memory_store",
    "model",
    "new_id",
    "redact",
    "utcnow",
]
