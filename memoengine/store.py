"""Ordered entry storage.

CacheStore is a plain ordered associative container: it knows nothing
about sizes, lifetimes or statistics. Recency order is kept by the
underlying OrderedDict, so lookups, writes, removals, recency bumps and
finding the oldest entry are all O(1).

The store is not synchronized; its owner serializes access.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar


if TYPE_CHECKING:
    from collections.abc import Hashable, Iterator


V = TypeVar("V")


@dataclass(slots=True)
class CacheEntry(Generic[V]):
    """Cache entry with metadata.

    Timestamps are readings of the owning engine's monotonic clock.

    Attributes:
        value: The cached value.
        created_at: When the entry was written.
        expires_at: When the entry stops being valid, or None.
        accessed_at: Time of the last hit (or of the write).
        access_count: Number of hits served from this entry.
    """

    value: V
    created_at: float
    expires_at: float | None = None
    accessed_at: float | None = None
    access_count: int = 0

    def __post_init__(self) -> None:
        if self.accessed_at is None:
            self.accessed_at = self.created_at

    def is_expired(self, now: float) -> bool:
        """Check whether the entry is expired at ``now``."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at

    def touch(self, now: float) -> None:
        """Update access metadata."""
        self.accessed_at = now
        self.access_count += 1


class CacheStore(Generic[V]):
    """Key to entry map that remembers recency order.

    Example:
        >>> store = CacheStore()
        >>> store.put("a", CacheEntry(1, created_at=0.0))
        >>> store.put("b", CacheEntry(2, created_at=0.0))
        >>> store.touch("a")
        >>> [key for key, _ in store.iter_in_recency_order()]
        ['b', 'a']
    """

    def __init__(self) -> None:
        self._entries: OrderedDict[Hashable, CacheEntry[V]] = OrderedDict()

    def get(self, key: Hashable) -> CacheEntry[V] | None:
        """Return the entry for ``key`` without changing recency."""
        return self._entries.get(key)

    def put(self, key: Hashable, entry: CacheEntry[V]) -> None:
        """Insert or replace an entry; it becomes the most recent one."""
        self._entries[key] = entry
        self._entries.move_to_end(key)

    def remove(self, key: Hashable) -> CacheEntry[V] | None:
        """Remove and return the entry for ``key``, if any."""
        return self._entries.pop(key, None)

    def touch(self, key: Hashable) -> None:
        """Mark ``key`` as most recently used.

        Raises:
            KeyError: If ``key`` is not stored.
        """
        self._entries.move_to_end(key)

    def oldest(self) -> tuple[Hashable, CacheEntry[V]] | None:
        """Return the least recently used item without removing it."""
        if not self._entries:
            return None
        key = next(iter(self._entries))
        return key, self._entries[key]

    def pop_oldest(self) -> tuple[Hashable, CacheEntry[V]]:
        """Remove and return the least recently used item.

        Raises:
            KeyError: If the store is empty.
        """
        return self._entries.popitem(last=False)

    def iter_in_recency_order(self) -> Iterator[tuple[Hashable, CacheEntry[V]]]:
        """Iterate items from least to most recently used.

        Iterates over a snapshot, so the store may be mutated meanwhile.
        """
        return iter(list(self._entries.items()))

    def keys(self) -> list[Hashable]:
        """Keys from least to most recently used."""
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
