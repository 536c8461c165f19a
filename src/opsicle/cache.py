"""TTL key/value cache used for session bookkeeping."""

from __future__ import annotations

import asyncio
import datetime as dt
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from .orm import utcnow


class Cache(Protocol):
    """Short string values with per-key expiry."""

    async def set(self, key: str, value: str, ttl: dt.timedelta) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def delete(self, key: str) -> None: ...

    async def scan(self, prefix: str) -> list[str]: ...


@dataclass(slots=True)
class _Entry:
    value: str
    expires_at: dt.datetime


class MemoryCache:
    """Process-local :class:`Cache`; expired keys are dropped lazily on access."""

    def __init__(self, *, clock: Callable[[], dt.datetime] | None = None, max_entries: int = 100_000) -> None:
        self._entries: dict[str, _Entry] = {}
        self._clock = clock or utcnow
        self._lock = asyncio.Lock()
        self.max_entries = max(1, max_entries)

    async def set(self, key: str, value: str, ttl: dt.timedelta) -> None:
        async with self._lock:
            now = self._clock()
            if ttl <= dt.timedelta(0):
                self._entries.pop(key, None)
                return
            self._entries[key] = _Entry(value=value, expires_at=now + ttl)
            if len(self._entries) > self.max_entries:
                self._prune(now)

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                self._entries.pop(key, None)
                return None
            return entry.value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def scan(self, prefix: str) -> list[str]:
        async with self._lock:
            now = self._clock()
            self._prune(now)
            return sorted(key for key in self._entries if key.startswith(prefix))

    def _prune(self, now: dt.datetime) -> None:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            self._entries.pop(key, None)
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return
        ordered = sorted(self._entries.items(), key=lambda item: item[1].expires_at)
        for key, _ in ordered[:overflow]:
            self._entries.pop(key, None)


__all__ = ["Cache", "MemoryCache"]
