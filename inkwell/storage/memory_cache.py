from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Set, Tuple


class MemoryCache:
    """Process-local stand-in for RedisCache when Redis is unavailable.

    Entries expire lazily on read. State is per process, so exemptions and
    cached blacklist answers are not shared between instances.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, float]] = {}
        self._sets: Dict[str, Tuple[Set[str], float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live_value(self, key: str) -> Optional[str]:
        item = self._values.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _live_set(self, key: str) -> Optional[Set[str]]:
        item = self._sets.get(key)
        if item is None:
            return None
        members, expires_at = item
        if expires_at <= self._clock():
            self._sets.pop(key, None)
            return None
        return members

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            self._values[key] = (value, self._clock() + max(1, ttl_seconds))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live_value(key) is not None or self._live_set(key) is not None:
                    removed += 1
                self._values.pop(key, None)
                self._sets.pop(key, None)
        return removed

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live_value(key)
            self._values.pop(key, None)
            return value

    async def add_to_set(self, key: str, member: str, ttl_seconds: float) -> None:
        with self._lock:
            members = self._live_set(key) or set()
            members.add(member)
            self._sets[key] = (members, self._clock() + max(1, ttl_seconds))

    async def set_members(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._live_set(key) or ())

    async def remove_from_set(self, key: str, *members: str) -> None:
        with self._lock:
            current = self._live_set(key)
            if current is not None:
                current.difference_update(members)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()
