"""Per-resource cache entry store.

Each resource instance owns one :class:`CacheStore`.  Entries are keyed by
field name and carry the value or error of one computation together with a
generation counter.  :meth:`CacheStore.invalidate` starts a new generation
for a key; a computation that started in an older generation must not write
its result (see :meth:`CacheStore.store_if_current`).

The store is written from the event loop and, through the watch bridge,
from watcher threads, so every mutation happens under a ``threading.Lock``.
The store never triggers recomputation.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any


@dataclass(frozen=True)
class CacheEntry:
    """The stored outcome of one field computation."""

    data: Any = None
    valid: bool = False
    error: BaseException | None = None
    timestamp: float = field(default_factory=time.time)
    generation: int = 0
    # Monotonic deadline after which the entry is treated as stale.  None
    # means the entry lives for the lifetime of the resource.
    expires_at: float | None = None

    @classmethod
    def ok(cls, data: Any, generation: int = 0) -> CacheEntry:
        return cls(data=data, valid=True, generation=generation)

    @classmethod
    def failed(cls, error: BaseException, generation: int = 0, ttl: float | None = None) -> CacheEntry:
        expires_at = time.monotonic() + ttl if ttl is not None else None
        return cls(valid=True, error=error, generation=generation, expires_at=expires_at)

    def is_usable(self, now: float | None = None) -> bool:
        """Return True if the entry is valid and has not expired."""
        if not self.valid:
            return False
        if self.expires_at is None:
            return True
        return (now if now is not None else time.monotonic()) < self.expires_at

    def unwrap(self) -> Any:
        """Return the cached data, or raise the cached error."""
        if self.error is not None:
            raise self.error
        return self.data


class CacheStore:
    """Thread-safe field name -> :class:`CacheEntry` mapping."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._generations: dict[str, int] = {}

    def load(self, key: str) -> CacheEntry | None:
        """Return the entry for ``key`` or None.  No side effects."""
        with self._lock:
            return self._entries.get(key)

    def store(self, key: str, entry: CacheEntry) -> None:
        """Overwrite the entry for ``key``."""
        with self._lock:
            self._entries[key] = entry

    def store_if_current(self, key: str, entry: CacheEntry) -> bool:
        """Store ``entry`` only if its generation is still the current one.

        Returns False (and leaves the store untouched) when the key was
        invalidated after the computation producing ``entry`` started.
        """
        with self._lock:
            if entry.generation != self._generations.get(key, 0):
                return False
            self._entries[key] = entry
            return True

    def store_new_generation(self, key: str, entry: CacheEntry) -> CacheEntry:
        """Start a new generation for ``key`` and store ``entry`` in it atomically."""
        with self._lock:
            generation = self._generations.get(key, 0) + 1
            self._generations[key] = generation
            stored = replace(entry, generation=generation)
            self._entries[key] = stored
            return stored

    def load_or_store(self, key: str, entry: CacheEntry) -> tuple[CacheEntry, bool]:
        """Return ``(existing, True)`` or store ``entry`` and return ``(entry, False)``."""
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                return existing, True
            self._entries[key] = entry
            return entry, False

    def delete(self, key: str) -> None:
        """Remove the entry for ``key`` and start a new generation."""
        with self._lock:
            self._entries.pop(key, None)
            self._generations[key] = self._generations.get(key, 0) + 1

    def invalidate(self, key: str) -> int:
        """Mark ``key`` stale and return the new generation number."""
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                self._entries[key] = replace(existing, valid=False)
            generation = self._generations.get(key, 0) + 1
            self._generations[key] = generation
            return generation

    def generation(self, key: str) -> int:
        with self._lock:
            return self._generations.get(key, 0)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
