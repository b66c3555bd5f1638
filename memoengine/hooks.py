"""Hooks for observing memoization events.

A hook receives hit, miss, set, eviction and computation-error events
together with a context dict (function name, cache name, key). Hooks are
observers only: an exception raised by a hook is swallowed when it runs
inside a CompositeMemoHook, which is how MemoizedFunction invokes them.

Example:
    >>> metrics = MetricsMemoHook()
    >>> fetch = memoize(fetch_user, max_size=100, hooks=[LoggingMemoHook(), metrics])
    >>> fetch(42); fetch(42)
    >>> metrics.hit_rate
    0.5
"""

from __future__ import annotations

import contextlib
import threading
from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from memoengine.logging import get_logger


if TYPE_CHECKING:
    from collections.abc import Hashable, Sequence

    from memoengine.eviction import EvictionReason


@runtime_checkable
class MemoHook(Protocol):
    """Protocol for memoization event hooks."""

    @abstractmethod
    def on_hit(self, key: Hashable, value: Any, context: dict[str, Any]) -> None:
        """Called when a call is answered from the cache.

        Args:
            key: The cache key.
            value: The cached value.
            context: Additional context information.
        """
        ...

    @abstractmethod
    def on_miss(self, key: Hashable, context: dict[str, Any]) -> None:
        """Called when a call finds no valid entry.

        Args:
            key: The cache key.
            context: Additional context information.
        """
        ...

    @abstractmethod
    def on_set(
        self,
        key: Hashable,
        value: Any,
        ttl_seconds: float | None,
        context: dict[str, Any],
    ) -> None:
        """Called when a computed value is written to the cache.

        Args:
            key: The cache key.
            value: The value being cached.
            ttl_seconds: TTL for the cached value.
            context: Additional context information.
        """
        ...

    @abstractmethod
    def on_evict(self, key: Hashable, reason: EvictionReason, context: dict[str, Any]) -> None:
        """Called when an entry leaves the cache.

        Args:
            key: The cache key.
            reason: Why the entry was removed.
            context: Additional context information.
        """
        ...

    @abstractmethod
    def on_error(self, key: Hashable, error: BaseException, context: dict[str, Any]) -> None:
        """Called when the computation for a key fails.

        Args:
            key: The cache key.
            error: The exception the computation raised.
            context: Additional context information.
        """
        ...


def _preview(key: Hashable, limit: int) -> str:
    text = str(key)
    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."


class LoggingMemoHook:
    """Hook that writes memoization events to the structured logger.

    Hits, misses, sets and evictions are logged at DEBUG, computation errors
    at WARNING. Keys are truncated to ``key_preview_length`` characters.
    """

    def __init__(self, logger_name: str | None = None, key_preview_length: int = 120) -> None:
        """Initialize logging hook.

        Args:
            logger_name: Logger name (default: memoengine.hooks).
            key_preview_length: Maximum number of key characters logged.
        """
        self._logger = get_logger(logger_name or __name__)
        self._key_preview_length = key_preview_length

    def on_hit(self, key: Hashable, value: Any, context: dict[str, Any]) -> None:
        self._logger.debug("Cache hit", **self._fields(key, context))

    def on_miss(self, key: Hashable, context: dict[str, Any]) -> None:
        self._logger.debug("Cache miss", **self._fields(key, context))

    def on_set(
        self,
        key: Hashable,
        value: Any,
        ttl_seconds: float | None,
        context: dict[str, Any],
    ) -> None:
        self._logger.debug("Cache set", ttl_seconds=ttl_seconds, **self._fields(key, context))

    def on_evict(self, key: Hashable, reason: EvictionReason, context: dict[str, Any]) -> None:
        self._logger.debug("Cache eviction", reason=reason.value, **self._fields(key, context))

    def on_error(self, key: Hashable, error: BaseException, context: dict[str, Any]) -> None:
        self._logger.warning(
            "Computation failed; result not cached",
            error_type=type(error).__name__,
            error=str(error),
            **self._fields(key, context),
        )

    def _fields(self, key: Hashable, context: dict[str, Any]) -> dict[str, Any]:
        return {**context, "key": _preview(key, self._key_preview_length)}


class MetricsMemoHook:
    """Hook that keeps simple event counters."""

    def __init__(self) -> None:
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._errors = 0
        self._eviction_reasons: dict[str, int] = {}
        self._lock = threading.Lock()

    def on_hit(self, key: Hashable, value: Any, context: dict[str, Any]) -> None:
        with self._lock:
            self._hits += 1

    def on_miss(self, key: Hashable, context: dict[str, Any]) -> None:
        with self._lock:
            self._misses += 1

    def on_set(
        self,
        key: Hashable,
        value: Any,
        ttl_seconds: float | None,
        context: dict[str, Any],
    ) -> None:
        with self._lock:
            self._sets += 1

    def on_evict(self, key: Hashable, reason: EvictionReason, context: dict[str, Any]) -> None:
        with self._lock:
            self._eviction_reasons[reason.value] = self._eviction_reasons.get(reason.value, 0) + 1

    def on_error(self, key: Hashable, error: BaseException, context: dict[str, Any]) -> None:
        with self._lock:
            self._errors += 1

    @property
    def hits(self) -> int:
        return self._hits

    @property
    def misses(self) -> int:
        return self._misses

    @property
    def sets(self) -> int:
        return self._sets

    @property
    def errors(self) -> int:
        return self._errors

    @property
    def evictions(self) -> int:
        """Total removals of any reason."""
        with self._lock:
            return sum(self._eviction_reasons.values())

    @property
    def hit_rate(self) -> float:
        total = self._hits + self._misses
        if total == 0:
            return 0.0
        return self._hits / total

    def get_eviction_reasons(self) -> dict[str, int]:
        """Get eviction counts keyed by reason value."""
        with self._lock:
            return dict(self._eviction_reasons)

    def reset(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0
            self._sets = 0
            self._errors = 0
            self._eviction_reasons.clear()


class CompositeMemoHook:
    """Fan events out to several hooks, isolating their failures."""

    def __init__(self, hooks: Sequence[MemoHook]) -> None:
        self._hooks = list(hooks)

    @property
    def hooks(self) -> list[MemoHook]:
        return list(self._hooks)

    def add_hook(self, hook: MemoHook) -> None:
        self._hooks.append(hook)

    def remove_hook(self, hook: MemoHook) -> None:
        if hook in self._hooks:
            self._hooks.remove(hook)

    def on_hit(self, key: Hashable, value: Any, context: dict[str, Any]) -> None:
        for hook in self._hooks:
            with contextlib.suppress(Exception):
                hook.on_hit(key, value, context)

    def on_miss(self, key: Hashable, context: dict[str, Any]) -> None:
        for hook in self._hooks:
            with contextlib.suppress(Exception):
                hook.on_miss(key, context)

    def on_set(
        self,
        key: Hashable,
        value: Any,
        ttl_seconds: float | None,
        context: dict[str, Any],
    ) -> None:
        for hook in self._hooks:
            with contextlib.suppress(Exception):
                hook.on_set(key, value, ttl_seconds, context)

    def on_evict(self, key: Hashable, reason: EvictionReason, context: dict[str, Any]) -> None:
        for hook in self._hooks:
            with contextlib.suppress(Exception):
                hook.on_evict(key, reason, context)

    def on_error(self, key: Hashable, error: BaseException, context: dict[str, Any]) -> None:
        for hook in self._hooks:
            with contextlib.suppress(Exception):
                hook.on_error(key, error, context)
