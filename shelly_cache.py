from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class StatusCache:
    """Keyed TTL cache shared by concurrent collection passes.

    Expiry is checked on read; there is no eviction thread.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self.lock = Lock()
        self.entries: Dict[Hashable, CacheEntry] = {}
        self.key_locks: Dict[Hashable, Lock] = {}

    @staticmethod
    def key(address: str, kind: str, component_id: Optional[int] = None) -> Tuple[str, str, Optional[int]]:
        return (address, kind, component_id)

    def get(self, key: Hashable) -> Tuple[Any, bool]:
        with self.lock:
            entry = self.entries.get(key)
            if entry is None:
                return None, False
            if self.clock() >= entry.expires_at:
                del self.entries[key]
                return None, False
            return entry.value, True

    def set(self, key: Hashable, value: Any, ttl: float) -> None:
        if ttl <= 0:
            return
        with self.lock:
            self.entries[key] = CacheEntry(value=value, expires_at=self.clock() + float(ttl))

    def get_or_load(self, key: Hashable, ttl: float, loader: Callable[[], Any]) -> Any:
        value, found = self.get(key)
        if found:
            return value

        with self.lock:
            key_lock = self.key_locks.setdefault(key, Lock())

        # second reader of the same key waits for the first load instead of fetching again
        with key_lock:
            value, found = self.get(key)
            if found:
                return value
            value = loader()
            self.set(key, value, ttl)
            return value

    def purge_expired(self) -> int:
        now = self.clock()
        with self.lock:
            expired = [k for k, e in self.entries.items() if now >= e.expires_at]
            for k in expired:
                del self.entries[k]
            return len(expired)

    def __len__(self) -> int:
        with self.lock:
            return len(self.entries)
