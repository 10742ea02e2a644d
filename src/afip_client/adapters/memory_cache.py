"""
In-memory cache adapter — a process-wide KeyValueCache with per-entry TTL.

Suitable for a single process; deployments with several workers plug in a
shared store (Redis, memcached) behind the same port instead.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any


class InMemoryCache:
    """Thread-safe dict with expiry measured on a monotonic clock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires, value = entry
            if self._clock() >= expires:
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            self.forget(key)
            return
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def forget(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
