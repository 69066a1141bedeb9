"""In-memory expiring cache used for the server and user tiers."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class _CacheEntry(Generic[V]):
    value: V
    expires_at: datetime


class TTLCache(Generic[K, V]):
    """Store values with a fixed time-to-live, expiring lazily on read."""

    def __init__(self, *, ttl: timedelta) -> None:
        self._ttl = ttl
        self._entries: Dict[K, _CacheEntry[V]] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def get(self, key: K) -> Optional[V]:
        now = self._now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                self._entries.pop(key, None)
                return None
            return entry.value

    def set(self, key: K, value: V) -> None:
        entry = _CacheEntry(value=value, expires_at=self._now() + self._ttl)
        with self._lock:
            self._entries[key] = entry

    def clear(self, key: Optional[K] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


__all__ = ["TTLCache"]
