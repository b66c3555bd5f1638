"""Cache statistics."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Stats:
    """Read-only snapshot of a memoized function's counters.

    Counters only ever increase; ``clear()`` empties the cache but does not
    reset them.

    Attributes:
        hits: Calls answered from the cache.
        misses: Calls that found no valid entry (including joiners).
        evictions: Entries removed by the size bound, TTL expiry or weak
            reclamation.
        deduped_waits: Calls that joined an in-flight computation.
        size: Current number of entries.
        max_size: Configured size bound, or None.
        in_flight: Computations currently running.
    """

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    deduped_waits: int = 0
    size: int = 0
    max_size: int | None = None
    in_flight: int = 0

    @property
    def hit_rate(self) -> float:
        """Get cache hit rate (0.0 to 1.0)."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    @property
    def miss_rate(self) -> float:
        """Get cache miss rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.misses / total

    @property
    def utilization(self) -> float:
        """Get cache utilization (size / max_size); 0.0 when unbounded."""
        if not self.max_size:
            return 0.0
        return self.size / self.max_size

    def to_dict(self) -> dict[str, int | float | None]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "deduped_waits": self.deduped_waits,
            "size": self.size,
            "max_size": self.max_size,
            "in_flight": self.in_flight,
            "hit_rate": self.hit_rate,
        }


class StatsRecorder:
    """Mutable counters behind a Stats snapshot.

    Not synchronized; the owning engine mutates it under its lock.
    """

    __slots__ = ("deduped_waits", "evictions", "hits", "misses")

    def __init__(self) -> None:
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.deduped_waits = 0

    def snapshot(self, *, size: int, max_size: int | None, in_flight: int) -> Stats:
        return Stats(
            hits=self.hits,
            misses=self.misses,
            evictions=self.evictions,
            deduped_waits=self.deduped_waits,
            size=size,
            max_size=max_size,
            in_flight=in_flight,
        )
