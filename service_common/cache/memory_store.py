"""
In-process fallback store for the keyed cache.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

DEFAULT_MAX_ENTRIES = 10_000
DEFAULT_EVICT_BATCH = 1_000


@dataclass(frozen=True)
class CacheEntry:
    """A cached string value with an optional absolute expiry (clock seconds)."""

    value: str
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


class MemoryStore:
    """Dict-backed store with lazy expiry and a soft size cap.

    Expired entries are dropped when read, and swept in bulk only when the
    store grows past ``max_entries``. If the sweep is not enough, the
    ``evict_batch`` oldest-inserted keys go.
    """

    def __init__(self,
                 max_entries: int = DEFAULT_MAX_ENTRIES,
                 evict_batch: int = DEFAULT_EVICT_BATCH,
                 clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self.evict_batch = evict_batch
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key``, dropping it if it has expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    def set_entry(self, key: str, entry: CacheEntry) -> None:
        # Re-inserting moves the key to the end of the insertion order.
        self._entries.pop(key, None)
        self._entries[key] = entry
        self.cleanup()

    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self.set_entry(key, CacheEntry(value=value, expires_at=expires_at))

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def cleanup(self) -> None:
        """Keep the store near ``max_entries``."""
        if len(self._entries) <= self.max_entries:
            return

        self.purge_expired()
        if len(self._entries) > self.max_entries:
            for key in list(self._entries)[:self.evict_batch]:
                del self._entries[key]
