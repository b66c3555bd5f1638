"""Memoized function façade.

``memoize`` wraps a computation so that calls with equivalent arguments
are answered from a cache. It composes the key deriver, the store, the
eviction policy, the in-flight registry and, in weak mode, the weak entry
tracker behind one lock per memoized function.

Call flow:
    1. Derive the key (a KeyDerivationError leaves everything untouched).
    2. Drop entries whose weak-mode key objects were reclaimed.
    3. Serve a valid entry (hit), or start or join the computation (miss).
    4. On success, write the value and enforce the size bound. On failure,
       propagate the exception unchanged and write nothing.

Example:
    >>> add = memoize(lambda a, b: a + b, max_size=2)
    >>> add(1, 2)
    3
    >>> add.stats().misses
    1

    >>> @memoized(ttl_seconds=1.0)
    ... async def fetch_user(user_id: int) -> dict:
    ...     return await api.get_user(user_id)
"""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import inspect
import threading
import types
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from memoengine.config import MemoConfig
from memoengine.eviction import EvictionPolicy, EvictionReason, monotonic_clock
from memoengine.exceptions import ConfigurationError
from memoengine.hooks import CompositeMemoHook
from memoengine.inflight import InFlightRegistry
from memoengine.keys import IdentityKeyDeriver, create_key_deriver
from memoengine.logging import LogContext, get_logger
from memoengine.stats import StatsRecorder
from memoengine.store import CacheStore
from memoengine.weak import WeakEntryTracker


if TYPE_CHECKING:
    from collections.abc import Callable, Hashable, Sequence

    from memoengine.config import ExpirationMode
    from memoengine.hooks import MemoHook
    from memoengine.keys import KeyDeriver
    from memoengine.stats import Stats
    from memoengine.store import CacheEntry


T = TypeVar("T")

logger = get_logger(__name__)

_MISSING: Any = object()


# =============================================================================
# Shared Engine
# =============================================================================


class _MemoizedBase(Generic[T]):
    """State and bookkeeping shared by the sync and async façades."""

    def __init__(
        self,
        func: Callable[..., Any],
        config: MemoConfig | None = None,
        *,
        hooks: Sequence[MemoHook] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if not callable(func):
            raise ConfigurationError(
                f"memoize expects a callable, got {type(func).__name__}",
                config_key="compute",
            )
        self._func = func
        self._config = config or MemoConfig()
        self._name = self._config.name or getattr(func, "__qualname__", None) or repr(func)

        self._key_deriver: KeyDeriver = create_key_deriver(self._config)
        if isinstance(self._key_deriver, IdentityKeyDeriver):
            self._key_deriver.validate(func)

        self._lock = threading.RLock()
        self._clock = clock or monotonic_clock
        self._store: CacheStore[T] = CacheStore()
        self._policy = EvictionPolicy.from_config(self._config, on_evict=self._on_evict)
        self._registry = InFlightRegistry(lock=self._lock, on_join=self._on_join)
        self._tracker = WeakEntryTracker() if self._config.weak else None
        self._stats = StatsRecorder()
        self._hooks = CompositeMemoHook(hooks or [])
        self._context = {"function": getattr(func, "__qualname__", repr(func)), "cache": self._name}

        # updated=() keeps a callable object's attributes out of our __dict__.
        functools.update_wrapper(self, func, updated=())

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> MemoConfig:
        return self._config

    @property
    def name(self) -> str:
        return self._name

    @property
    def hooks(self) -> CompositeMemoHook:
        return self._hooks

    # -------------------------------------------------------------------------
    # Descriptor protocol
    # -------------------------------------------------------------------------

    def __get__(self, instance: Any, owner: type | None = None) -> Any:
        """Bind to ``instance`` when used as a method.

        The instance becomes the first argument, so structural keys need
        an instance with a canonical form (a dataclass, for example); weak
        mode keys entries per instance.
        """
        if instance is None:
            return self
        return types.MethodType(self, instance)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def cache_key(self, *args: Any, **kwargs: Any) -> Hashable:
        """Derive the key a call with these arguments would use.

        Raises:
            KeyDerivationError: If no key can be derived.
        """
        return self._key_deriver.derive(args, kwargs)

    def contains(self, *args: Any, **kwargs: Any) -> bool:
        """Check for a valid entry without touching recency or counters."""
        key = self._key_deriver.derive(args, kwargs)
        with self._lock:
            self._drain_reclaimed()
            entry = self._store.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    def invalidate(self, *args: Any, **kwargs: Any) -> bool:
        """Drop the entry for these arguments.

        A computation still running for the key completes and answers its
        waiters, but its result is not written.

        Returns:
            True if an entry or a pending computation was dropped.
        """
        return self.invalidate_key(self._key_deriver.derive(args, kwargs))

    def invalidate_key(self, key: Hashable) -> bool:
        """Drop the entry for a key obtained from ``cache_key``."""
        with self._lock:
            entry = self._store.remove(key)
            discarded = self._registry.discard(key)
            if entry is not None:
                self._forget_weak(key)
                self._hooks.on_evict(key, EvictionReason.INVALIDATED, self._context)
            return entry is not None or discarded

    def clear(self) -> None:
        """Drop every entry and pending marker.

        Running computations are not cancelled; they answer their waiters
        without writing. Statistics counters are kept.
        """
        with self._lock:
            keys = self._store.keys()
            self._store.clear()
            pending = self._registry.clear()
            if self._tracker is not None:
                self._tracker.clear()
            for key in keys:
                self._hooks.on_evict(key, EvictionReason.CLEARED, self._context)
        with LogContext(cache_name=self._name, operation="clear"):
            logger.debug("Cache cleared", entries=len(keys), pending=pending)

    def stats(self) -> Stats:
        """Get a snapshot of the counters."""
        with self._lock:
            self._drain_reclaimed()
            return self._stats.snapshot(
                size=len(self._store),
                max_size=self._config.max_size,
                in_flight=len(self._registry),
            )

    def purge_expired(self) -> int:
        """Remove every expired entry now.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            return self._policy.purge_expired(self._store, self._clock())

    def purge_reclaimed(self) -> int:
        """Remove entries whose weak-mode key objects were collected.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            return self._drain_reclaimed()

    def __len__(self) -> int:
        with self._lock:
            self._drain_reclaimed()
            return len(self._store)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r}, size={len(self)})"

    # -------------------------------------------------------------------------
    # Internals (callers hold the lock)
    # -------------------------------------------------------------------------

    def _lookup(self, key: Hashable) -> Any:
        """Serve a hit or count a miss; returns _MISSING on a miss."""
        self._drain_reclaimed()
        if self._policy.on_read(self._store, key, self._clock()):
            entry = self._store.get(key)
            self._stats.hits += 1
            self._hooks.on_hit(key, entry.value, self._context)
            return entry.value
        self._stats.misses += 1
        self._hooks.on_miss(key, self._context)
        return _MISSING

    def _writer(self, args: tuple[Any, ...]) -> Callable[[Hashable, Any], None]:
        key_object = args[0] if self._tracker is not None else None

        def commit(key: Hashable, value: Any) -> None:
            self._drain_reclaimed()
            self._store.put(key, self._policy.new_entry(value, self._clock()))
            self._policy.on_write(self._store)
            if self._tracker is not None:
                self._tracker.track(key_object, key)
            self._hooks.on_set(key, value, self._config.ttl_seconds, self._context)

        return commit

    def _on_join(self, key: Hashable) -> None:
        self._stats.deduped_waits += 1

    def _on_evict(self, key: Hashable, entry: CacheEntry[Any], reason: EvictionReason) -> None:
        self._stats.evictions += 1
        self._forget_weak(key)
        self._hooks.on_evict(key, reason, self._context)

    def _forget_weak(self, key: Hashable) -> None:
        if self._tracker is not None:
            self._tracker.forget(key, key.object_id)

    def _drain_reclaimed(self) -> int:
        if self._tracker is None:
            return 0
        removed = 0
        for key in self._tracker.drain():
            if self._store.remove(key) is None:
                continue
            removed += 1
            self._stats.evictions += 1
            self._hooks.on_evict(key, EvictionReason.RECLAIMED, self._context)
        if removed:
            with LogContext(cache_name=self._name, operation="reclaim"):
                logger.debug("Dropped entries of reclaimed objects", entries=removed)
        return removed

    def _report_error(self, key: Hashable, error: BaseException) -> None:
        self._hooks.on_error(key, error, self._context)


# =============================================================================
# Synchronous Façade
# =============================================================================


class MemoizedFunction(_MemoizedBase[T]):
    """A memoized synchronous function.

    Concurrent calls for the same key from several threads run the
    computation once; the other threads block until it settles and get
    the same value or the same exception.

    Example:
        >>> square = MemoizedFunction(lambda x: x * x, MemoConfig(max_size=100))
        >>> square(4), square(4)
        (16, 16)
        >>> square.stats().hits
        1
    """

    def __call__(self, *args: Any, **kwargs: Any) -> T:
        return self.call(*args, **kwargs)

    def call(self, *args: Any, **kwargs: Any) -> T:
        """Return the cached value for these arguments, computing it once.

        Raises:
            KeyDerivationError: If no key can be derived.
            Exception: Whatever the wrapped function raised, unchanged.
        """
        key = self._key_deriver.derive(args, kwargs)
        with self._lock:
            value = self._lookup(key)
            if value is not _MISSING:
                return value
            role, pending = self._registry.join_or_start(key)
        return self._registry.resolve(
            role,
            pending,
            functools.partial(self._compute, key, args, kwargs),
            self._writer(args),
        )

    def _compute(self, key: Hashable, args: tuple[Any, ...], kwargs: dict[str, Any]) -> T:
        try:
            return self._func(*args, **kwargs)
        except Exception as exc:
            self._report_error(key, exc)
            raise


# =============================================================================
# Asynchronous Façade
# =============================================================================


class AsyncMemoizedFunction(_MemoizedBase[T]):
    """A memoized coroutine function.

    Concurrent calls for the same key share one computation task. A caller
    that is cancelled stops waiting without disturbing the others; the
    task is cancelled only when no caller is left waiting.

    Example:
        >>> fetch = AsyncMemoizedFunction(fetch_user, MemoConfig(ttl_seconds=1.0))
        >>> await asyncio.gather(*(fetch(42) for _ in range(5)))
        >>> fetch.stats().deduped_waits
        4
    """

    async def __call__(self, *args: Any, **kwargs: Any) -> T:
        return await self.call(*args, **kwargs)

    async def call(self, *args: Any, **kwargs: Any) -> T:
        """Return the cached value for these arguments, computing it once.

        Raises:
            KeyDerivationError: If no key can be derived.
            Exception: Whatever the wrapped coroutine raised, unchanged.
        """
        key = self._key_deriver.derive(args, kwargs)
        with self._lock:
            value = self._lookup(key)
            if value is not _MISSING:
                return value
            role, pending = self._registry.join_or_start(key, task=asyncio.current_task())
        return await self._registry.resolve_async(
            role,
            pending,
            functools.partial(self._compute, key, args, kwargs),
            self._writer(args),
        )

    async def _compute(self, key: Hashable, args: tuple[Any, ...], kwargs: dict[str, Any]) -> T:
        try:
            return await self._func(*args, **kwargs)
        except Exception as exc:
            self._report_error(key, exc)
            raise


# =============================================================================
# Factory and Decorator
# =============================================================================


def _build_config(config: MemoConfig | None, overrides: dict[str, Any]) -> MemoConfig:
    given = {name: value for name, value in overrides.items() if value is not None}
    base = config or MemoConfig()
    if not given:
        return base
    return dataclasses.replace(base, **given)


def _is_coroutine_callable(func: Any) -> bool:
    # Callable objects with an async __call__ count too.
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )


def memoize(
    compute: Callable[..., Any],
    config: MemoConfig | None = None,
    *,
    max_size: int | None = None,
    ttl_seconds: float | None = None,
    key_fn: Callable[..., Hashable] | None = None,
    weak: bool | None = None,
    expiration: ExpirationMode | None = None,
    hash_keys: bool | None = None,
    name: str | None = None,
    hooks: Sequence[MemoHook] | None = None,
    clock: Callable[[], float] | None = None,
    is_async: bool | None = None,
) -> MemoizedFunction[Any] | AsyncMemoizedFunction[Any]:
    """Wrap ``compute`` in a memoized function.

    Keyword options override the matching fields of ``config``.

    Args:
        compute: The function or coroutine function to memoize.
        config: Base configuration.
        max_size: Maximum number of entries (LRU bound).
        ttl_seconds: Entry lifetime in seconds.
        key_fn: Custom key function, called with the call's arguments.
        weak: Key entries on the identity of the first argument.
        expiration: ABSOLUTE or SLIDING TTL semantics.
        hash_keys: Hash structural keys.
        name: Cache name for logs and hooks.
        hooks: Event hooks.
        clock: Monotonic clock (tests pass a ManualClock).
        is_async: Force the async (or sync) façade instead of detecting it
            from ``compute``.

    Returns:
        MemoizedFunction, or AsyncMemoizedFunction for coroutine functions.

    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    memo_config = _build_config(
        config,
        {
            "max_size": max_size,
            "ttl_seconds": ttl_seconds,
            "key_fn": key_fn,
            "weak": weak,
            "expiration": expiration,
            "hash_keys": hash_keys,
            "name": name,
        },
    )
    if is_async is None:
        is_async = _is_coroutine_callable(compute)
    cls = AsyncMemoizedFunction if is_async else MemoizedFunction
    return cls(compute, memo_config, hooks=hooks, clock=clock)


def memoized(
    func: Callable[..., Any] | None = None,
    /,
    config: MemoConfig | None = None,
    **options: Any,
) -> Any:
    """Decorator form of ``memoize``.

    Usable bare, with a MemoConfig, or with the same options as ``memoize``.

    Example:
        >>> @memoized
        ... def fib(n: int) -> int:
        ...     return n if n < 2 else fib(n - 1) + fib(n - 2)

        >>> @memoized(max_size=1000, ttl_seconds=300.0)
        ... async def fetch_user(user_id: int) -> dict:
        ...     return await api.get_user(user_id)
    """
    if isinstance(func, MemoConfig):
        func, config = None, func

    def decorator(f: Callable[..., Any]) -> MemoizedFunction[Any] | AsyncMemoizedFunction[Any]:
        return memoize(f, config, **options)

    if func is not None:
        return decorator(func)
    return decorator

