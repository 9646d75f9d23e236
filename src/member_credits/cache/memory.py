from __future__ import annotations

import time
from typing import Any, Callable, Dict, NamedTuple, Optional

from .base import AsyncCacheBackend


class _Entry(NamedTuple):
    value: Any
    expires_at: Optional[float]

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at < now


class InMemoryAsyncCache(AsyncCacheBackend):
    """
    Dict-backed cache with per-key TTL. Process-local: every app instance
    sees its own keys. `clock` returns epoch seconds.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._entries: Dict[str, _Entry] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            return None
        return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expires_at = None if ttl_seconds is None else self._clock() + ttl_seconds
        self._entries[key] = _Entry(value, expires_at)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
