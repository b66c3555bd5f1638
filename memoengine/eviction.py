"""Eviction policy: size bound (LRU) and time bound (TTL).

The policy decides which entries leave a CacheStore; the store itself only
stores. Both bounds can be active at once. On a read the TTL is checked
first, so an expired entry never counts as occupying the cache; after a
write the size bound drops least recently used entries until the store
fits again.

All timestamps come from a monotonic clock, never wall-clock time.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from memoengine.config import ExpirationMode
from memoengine.store import CacheEntry


if TYPE_CHECKING:
    from collections.abc import Callable, Hashable

    from memoengine.config import MemoConfig
    from memoengine.store import CacheStore


monotonic_clock: Callable[[], float] = time.monotonic


class EvictionReason(Enum):
    """Why an entry left the cache.

    Attributes:
        CAPACITY: Least recently used entry dropped by the size bound.
        EXPIRED: Entry outlived its TTL.
        INVALIDATED: Removed by an explicit invalidate.
        CLEARED: Removed by clear().
        RECLAIMED: Its weak-mode key object was garbage collected.
    """

    CAPACITY = "capacity"
    EXPIRED = "expired"
    INVALIDATED = "invalidated"
    CLEARED = "cleared"
    RECLAIMED = "reclaimed"


@dataclass(frozen=True, slots=True)
class SizeBound:
    """Upper bound on the number of entries. None means unbounded."""

    max_size: int | None = None

    def overflow(self, size: int) -> int:
        """Number of entries that must go for ``size`` to fit."""
        if self.max_size is None:
            return 0
        return max(0, size - self.max_size)


@dataclass(frozen=True, slots=True)
class TimeBound:
    """Entry lifetime. None means entries never expire."""

    ttl_seconds: float | None = None
    mode: ExpirationMode = ExpirationMode.ABSOLUTE

    def expires_at(self, now: float) -> float | None:
        if self.ttl_seconds is None:
            return None
        return now + self.ttl_seconds

    @property
    def sliding(self) -> bool:
        return self.ttl_seconds is not None and self.mode is ExpirationMode.SLIDING


class EvictionPolicy:
    """Composite LRU + TTL policy.

    Every removal the policy makes is reported through ``on_evict`` so the
    owner can count it and notify hooks.

    Example:
        >>> policy = EvictionPolicy(SizeBound(2), TimeBound(60.0), on_evict=print_eviction)
        >>> store.put("k", policy.new_entry(value, now))
        >>> policy.on_write(store)
        >>> policy.on_read(store, "k", now + 61.0)
        False
    """

    def __init__(
        self,
        size_bound: SizeBound | None = None,
        time_bound: TimeBound | None = None,
        on_evict: Callable[[Hashable, CacheEntry[Any], EvictionReason], None] | None = None,
    ) -> None:
        self.size_bound = size_bound or SizeBound()
        self.time_bound = time_bound or TimeBound()
        self._on_evict = on_evict

    @classmethod
    def from_config(
        cls,
        config: MemoConfig,
        on_evict: Callable[[Hashable, CacheEntry[Any], EvictionReason], None] | None = None,
    ) -> EvictionPolicy:
        return cls(
            SizeBound(config.max_size),
            TimeBound(config.ttl_seconds, config.expiration),
            on_evict=on_evict,
        )

    def _evict(self, key: Hashable, entry: CacheEntry[Any], reason: EvictionReason) -> None:
        if self._on_evict is not None:
            self._on_evict(key, entry, reason)

    def new_entry(self, value: Any, now: float) -> CacheEntry[Any]:
        """Build an entry written at ``now``; its expiry is fixed here."""
        return CacheEntry(value=value, created_at=now, expires_at=self.time_bound.expires_at(now))

    def on_read(self, store: CacheStore[Any], key: Hashable, now: float) -> bool:
        """Validate a stored entry before it is served.

        An expired entry is removed and reported as EXPIRED. A valid entry
        becomes the most recently used one (and, with sliding expiration,
        gets a fresh lifetime).

        Returns:
            True if the entry may be served, False if it is absent.
        """
        entry = store.get(key)
        if entry is None:
            return False

        if entry.is_expired(now):
            store.remove(key)
            self._evict(key, entry, EvictionReason.EXPIRED)
            return False

        store.touch(key)
        entry.touch(now)
        if self.time_bound.sliding:
            entry.expires_at = self.time_bound.expires_at(now)
        return True

    def on_write(self, store: CacheStore[Any]) -> None:
        """Enforce the size bound after a write, oldest entries first."""
        for _ in range(self.size_bound.overflow(len(store))):
            key, entry = store.pop_oldest()
            self._evict(key, entry, EvictionReason.CAPACITY)

    def purge_expired(self, store: CacheStore[Any], now: float) -> int:
        """Remove every expired entry.

        Expiry is otherwise lazy; this sweep is optional and is never run
        from a background thread.

        Returns:
            Number of entries removed.
        """
        if self.time_bound.ttl_seconds is None:
            return 0

        removed = 0
        for key, entry in store.iter_in_recency_order():
            if entry.is_expired(now):
                store.remove(key)
                self._evict(key, entry, EvictionReason.EXPIRED)
                removed += 1
        return removed
