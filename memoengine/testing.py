"""Testing utilities for memoized functions.

- ManualClock: a monotonic clock the test advances by hand, so TTL
  behaviour is tested without sleeping
- CallRecorder / AsyncCallRecorder: counting stand-ins for a computation
  that can be held pending until the test releases them
- RecordingMemoHook: records every hook event
- assert_memo_stats: assertion helper for Stats snapshots

Example:
    >>> from memoengine.testing import ManualClock, CallRecorder
    >>> clock = ManualClock()
    >>> compute = CallRecorder(lambda user_id: {"id": user_id})
    >>> fetch = memoize(compute, ttl_seconds=1.0, clock=clock)
    >>> fetch(42); clock.advance(1.5); fetch(42)
    >>> assert compute.call_count == 2
"""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Hashable

    from memoengine.eviction import EvictionReason


# =============================================================================
# Clock
# =============================================================================


class ManualClock:
    """Monotonic clock controlled by the test.

    Example:
        >>> clock = ManualClock()
        >>> clock.advance(0.5)
        >>> clock()
        0.5
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    @property
    def now(self) -> float:
        return self()

    def advance(self, seconds: float) -> None:
        """Move the clock forward.

        Raises:
            ValueError: If ``seconds`` is negative.
        """
        if seconds < 0:
            raise ValueError("A monotonic clock cannot move backwards")
        with self._lock:
            self._now += seconds

    def set(self, now: float) -> None:
        """Jump to an absolute reading no earlier than the current one.

        Raises:
            ValueError: If ``now`` is earlier than the current reading.
        """
        with self._lock:
            if now < self._now:
                raise ValueError("A monotonic clock cannot move backwards")
            self._now = now


# =============================================================================
# Call Recorders
# =============================================================================


class CallRecorder:
    """Synchronous computation stand-in that records its invocations.

    With ``gated=True`` every invocation signals ``started`` and then blocks
    until ``release()`` is called, which keeps a computation pending while
    the test issues concurrent calls.

    Example:
        >>> compute = CallRecorder(lambda a, b: a + b)
        >>> add = memoize(compute)
        >>> add(1, 2), add(1, 2)
        (3, 3)
        >>> compute.call_count
        1
    """

    def __init__(
        self,
        func: Callable[..., Any] | None = None,
        *,
        raises: BaseException | None = None,
        gated: bool = False,
        timeout: float = 5.0,
    ) -> None:
        """Initialize the recorder.

        Args:
            func: Computes the return value; returns None if omitted.
            raises: Exception raised by every invocation instead.
            gated: Block each invocation until ``release()``.
            timeout: Maximum seconds a gated invocation waits.
        """
        self._func = func
        self._raises = raises
        self._gated = gated
        self._timeout = timeout
        self._calls: list[tuple[tuple[Any, ...], dict[str, Any]]] = []
        self._lock = threading.Lock()
        self.started = threading.Event()
        self._released = threading.Event()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self._calls)

    @property
    def calls(self) -> list[tuple[tuple[Any, ...], dict[str, Any]]]:
        with self._lock:
            return list(self._calls)

    def release(self) -> None:
        """Let gated invocations finish."""
        self._released.set()

    def raise_next(self, error: BaseException | None) -> None:
        """Change what subsequent invocations raise (None to stop raising)."""
        self._raises = error

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        with self._lock:
            self._calls.append((args, kwargs))
        self.started.set()
        if self._gated and not self._released.wait(self._timeout):
            raise TimeoutError("CallRecorder was never released")
        if self._raises is not None:
            raise self._raises
        if self._func is None:
            return None
        return self._func(*args, **kwargs)


class AsyncCallRecorder:
    """Asynchronous computation stand-in that records its invocations.

    With ``gated=True`` every invocation sets ``started`` and then waits on
    an ``asyncio.Event`` until ``release()`` is called.

    Example:
        >>> compute = AsyncCallRecorder(lambda user_id: {"id": user_id}, gated=True)
        >>> fetch = memoize(compute)
        >>> calls = [asyncio.create_task(fetch(42)) for _ in range(5)]
        >>> await compute.started.wait()
        >>> compute.release()
        >>> await asyncio.gather(*calls)
        >>> compute.call_count
        1
    """

    def __init__(
        self,
        func: Callable[..., Any] | None = None,
        *,
        raises: BaseException | None = None,
        gated: bool = False,
        delay: float = 0.0,
    ) -> None:
        """Initialize the recorder.

        Args:
            func: Computes the return value (sync or async); returns None if
                omitted.
            raises: Exception raised by every invocation instead.
            gated: Wait for ``release()`` in each invocation.
            delay: Seconds to sleep in each invocation.
        """
        self._func = func
        self._raises = raises
        self._gated = gated
        self._delay = delay
        self._calls: list[tuple[tuple[Any, ...], dict[str, Any]]] = []
        self._cancelled = 0
        self.started = asyncio.Event()
        self._released = asyncio.Event()

    @property
    def call_count(self) -> int:
        return len(self._calls)

    @property
    def cancelled_count(self) -> int:
        """Invocations that were cancelled while running."""
        return self._cancelled

    @property
    def calls(self) -> list[tuple[tuple[Any, ...], dict[str, Any]]]:
        return list(self._calls)

    def release(self) -> None:
        """Let gated invocations finish."""
        self._released.set()

    async def __call__(self, *args: Any, **kwargs: Any) -> Any:
        self._calls.append((args, kwargs))
        self.started.set()
        try:
            if self._gated:
                await self._released.wait()
            if self._delay:
                await asyncio.sleep(self._delay)
        except asyncio.CancelledError:
            self._cancelled += 1
            raise
        if self._raises is not None:
            raise self._raises
        if self._func is None:
            return None
        result = self._func(*args, **kwargs)
        if asyncio.iscoroutine(result):
            awaitable: Awaitable[Any] = result
            return await awaitable
        return result


# =============================================================================
# Hooks
# =============================================================================


class RecordingMemoHook:
    """MemoHook that records every event for later assertions.

    Example:
        >>> hook = RecordingMemoHook()
        >>> square = memoize(lambda x: x * x, hooks=[hook])
        >>> square(3); square(3)
        >>> hook.hit_count, hook.miss_count
        (1, 1)
    """

    def __init__(self) -> None:
        self.hits: list[tuple[Hashable, Any]] = []
        self.misses: list[Hashable] = []
        self.sets: list[tuple[Hashable, Any, float | None]] = []
        self.evictions: list[tuple[Hashable, EvictionReason]] = []
        self.errors: list[tuple[Hashable, BaseException]] = []
        self.contexts: list[dict[str, Any]] = []

    @property
    def hit_count(self) -> int:
        return len(self.hits)

    @property
    def miss_count(self) -> int:
        return len(self.misses)

    def on_hit(self, key: Hashable, value: Any, context: dict[str, Any]) -> None:
        self.hits.append((key, value))
        self.contexts.append(context)

    def on_miss(self, key: Hashable, context: dict[str, Any]) -> None:
        self.misses.append(key)
        self.contexts.append(context)

    def on_set(
        self,
        key: Hashable,
        value: Any,
        ttl_seconds: float | None,
        context: dict[str, Any],
    ) -> None:
        self.sets.append((key, value, ttl_seconds))
        self.contexts.append(context)

    def on_evict(self, key: Hashable, reason: EvictionReason, context: dict[str, Any]) -> None:
        self.evictions.append((key, reason))
        self.contexts.append(context)

    def on_error(self, key: Hashable, error: BaseException, context: dict[str, Any]) -> None:
        self.errors.append((key, error))
        self.contexts.append(context)

    def eviction_reasons(self) -> list[EvictionReason]:
        return [reason for _, reason in self.evictions]

    def reset(self) -> None:
        self.hits.clear()
        self.misses.clear()
        self.sets.clear()
        self.evictions.clear()
        self.errors.clear()
        self.contexts.clear()


# =============================================================================
# Assertion Helpers
# =============================================================================


def assert_memo_stats(
    stats: Any,
    *,
    hits: int | None = None,
    misses: int | None = None,
    evictions: int | None = None,
    size: int | None = None,
    deduped_waits: int | None = None,
) -> None:
    """Assert that a Stats snapshot matches the given counters.

    Raises:
        AssertionError: If any given counter differs.

    Example:
        >>> assert_memo_stats(add.stats(), hits=1, misses=3, evictions=1, size=2)
    """
    expected = {
        "hits": hits,
        "misses": misses,
        "evictions": evictions,
        "size": size,
        "deduped_waits": deduped_waits,
    }
    for name, value in expected.items():
        if value is None:
            continue
        actual = getattr(stats, name)
        assert actual == value, f"Expected {name}={value}, got {actual}"
