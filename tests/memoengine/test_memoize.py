"""Tests for memoengine.memoize module."""

from __future__ import annotations

import asyncio
import gc
import threading
import time

import pytest

from memoengine.config import ExpirationMode, MemoConfig
from memoengine.eviction import EvictionReason
from memoengine.exceptions import ConfigurationError, KeyDerivationError
from memoengine.keys import StructuralKeyDeriver
from memoengine.memoize import (
    AsyncMemoizedFunction,
    MemoizedFunction,
    memoize,
    memoized,
)
from memoengine.testing import (
    AsyncCallRecorder,
    CallRecorder,
    ManualClock,
    RecordingMemoHook,
    assert_memo_stats,
)


def wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.001)


async def async_wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0)


class Document:
    def __init__(self, title: str) -> None:
        self.title = title


# =============================================================================
# End-to-end scenarios
# =============================================================================


class TestScenarios:
    """The four reference scenarios."""

    def test_lru_add(self):
        """Test max_size=2 evicts the least recently used call."""
        compute = CallRecorder(lambda a, b: a + b)
        add = memoize(compute, max_size=2)

        assert add(1, 2) == 3
        assert_memo_stats(add.stats(), hits=0, misses=1)
        assert add(1, 2) == 3
        assert_memo_stats(add.stats(), hits=1, misses=1)
        assert add(3, 4) == 7
        assert add(5, 6) == 11
        assert_memo_stats(add.stats(), hits=1, misses=3, evictions=1, size=2)
        assert not add.contains(1, 2)

        assert add(1, 2) == 3
        assert compute.call_count == 4
        assert_memo_stats(add.stats(), hits=1, misses=4, evictions=2, size=2)

    def test_ttl_fetch_user(self, clock):
        """Test a TTL of one second with a manual clock."""
        versions = iter(["A", "B"])
        compute = CallRecorder(lambda user_id: {"id": user_id, "version": next(versions)})
        fetch_user = memoize(compute, ttl_seconds=1.0, clock=clock)

        first = fetch_user(42)
        assert first["version"] == "A"

        clock.advance(0.5)
        assert fetch_user(42) is first

        clock.advance(1.0)
        assert fetch_user(42)["version"] == "B"
        assert compute.call_count == 2
        assert_memo_stats(fetch_user.stats(), hits=1, misses=2, evictions=1)

    @pytest.mark.asyncio
    async def test_five_concurrent_async_calls(self):
        """Test five concurrent calls invoke the coroutine once."""
        slow_compute = AsyncCallRecorder(lambda x: {"value": x * 2}, gated=True)
        fn = memoize(slow_compute)
        assert isinstance(fn, AsyncMemoizedFunction)

        tasks = [asyncio.create_task(fn(7)) for _ in range(5)]
        await slow_compute.started.wait()
        await async_wait_for(lambda: fn.stats().deduped_waits == 4)
        assert fn.stats().in_flight == 1
        slow_compute.release()
        results = await asyncio.gather(*tasks)

        assert slow_compute.call_count == 1
        assert all(result is results[0] for result in results)
        assert results[0] == {"value": 14}
        assert_memo_stats(fn.stats(), hits=0, misses=5, deduped_waits=4, size=1)
        assert fn.stats().in_flight == 0

    def test_weak_reclamation(self):
        """Test entries go away with their key objects."""
        calls = 0

        def summarize(doc):
            nonlocal calls
            calls += 1
            return len(doc.title)

        fn = memoize(summarize, weak=True)
        doc = Document("hello")
        assert fn(doc) == 5
        assert fn(doc) == 5
        assert calls == 1

        del doc
        gc.collect()

        stats = fn.stats()
        assert stats.evictions == 1
        assert stats.size == 0

        fresh = Document("hello")
        assert fn(fresh) == 5
        assert calls == 2
        assert fn.stats().misses == 2


# =============================================================================
# Synchronous façade
# =============================================================================


class TestMemoizedFunction:
    """Tests for MemoizedFunction."""

    def test_memoize_picks_sync_facade(self):
        """Test plain functions get the synchronous façade."""
        assert isinstance(memoize(lambda x: x), MemoizedFunction)

    def test_hit_returns_cached_value(self):
        """Test hits return the very same object."""
        fn = memoize(CallRecorder(lambda x: [x]))
        first = fn(1)
        assert fn(1) is first

    def test_kwargs_are_part_of_the_key(self):
        """Test keyword arguments distinguish calls."""
        compute = CallRecorder(lambda x, scale=1: x * scale)
        fn = memoize(compute)
        assert fn(2) == 2
        assert fn(2, scale=3) == 6
        assert fn(2, scale=3) == 6
        assert compute.call_count == 2

    def test_lru_respects_recency(self):
        """Test a hit protects an entry from eviction."""
        fn = memoize(lambda x: x, max_size=2)
        fn("a")
        fn("b")
        fn("a")
        fn("c")
        assert fn.contains("a")
        assert not fn.contains("b")
        assert fn.contains("c")
        assert len(fn) == 2

    def test_errors_are_not_cached(self):
        """Test a failing computation is retried on the next call."""
        error = ValueError("boom")
        compute = CallRecorder(raises=error)
        fn = memoize(compute)

        with pytest.raises(ValueError) as exc_info:
            fn(1)
        assert exc_info.value is error

        compute.raise_next(None)
        assert fn(1) is None
        assert compute.call_count == 2
        assert_memo_stats(fn.stats(), hits=0, misses=2, size=1)

    def test_error_is_not_wrapped(self):
        """Test the caller sees exactly the computation's exception type."""
        fn = memoize(CallRecorder(raises=KeyError("user")))
        with pytest.raises(KeyError):
            fn(1)

    def test_key_derivation_error_leaves_store(self):
        """Test an uncacheable argument fails the call only."""
        fn = memoize(lambda x: x)
        fn(1)
        with pytest.raises(KeyDerivationError):
            fn(threading.Lock())
        assert len(fn) == 1
        assert_memo_stats(fn.stats(), hits=0, misses=1)

    def test_key_fn(self):
        """Test a custom key function decides key equality."""
        compute = CallRecorder(lambda user: user["name"])
        fn = memoize(compute, key_fn=lambda user: user["id"])
        assert fn({"id": 1, "name": "a"}) == "a"
        assert fn({"id": 1, "name": "b"}) == "a"
        assert compute.call_count == 1

    def test_failing_key_fn(self):
        """Test key_fn errors surface as KeyDerivationError."""
        fn = memoize(lambda user: user, key_fn=lambda user: user["id"])
        with pytest.raises(KeyDerivationError):
            fn({})
        assert len(fn) == 0

    def test_ttl_boundary_is_expired(self, clock):
        """Test an entry read exactly at its expiry is a miss."""
        compute = CallRecorder(lambda x: x)
        fn = memoize(compute, ttl_seconds=1.0, clock=clock)
        fn(1)
        clock.advance(1.0)
        fn(1)
        assert compute.call_count == 2

    def test_sliding_expiration(self, clock):
        """Test hits extend a sliding TTL."""
        compute = CallRecorder(lambda x: x)
        fn = memoize(compute, ttl_seconds=1.0, expiration=ExpirationMode.SLIDING, clock=clock)
        fn(1)
        for _ in range(3):
            clock.advance(0.9)
            fn(1)
        assert compute.call_count == 1
        clock.advance(1.0)
        fn(1)
        assert compute.call_count == 2

    def test_purge_expired(self, clock):
        """Test the opportunistic sweep."""
        fn = memoize(lambda x: x, ttl_seconds=1.0, clock=clock)
        fn(1)
        fn(2)
        clock.advance(0.5)
        fn(3)
        clock.advance(0.6)
        assert fn.purge_expired() == 2
        assert len(fn) == 1
        assert fn.stats().evictions == 2

    def test_contains_has_no_side_effects(self, clock):
        """Test contains neither counts nor refreshes recency."""
        fn = memoize(lambda x: x, max_size=2, clock=clock)
        fn("a")
        fn("b")
        assert fn.contains("a")
        fn("c")
        assert not fn.contains("a")
        assert_memo_stats(fn.stats(), hits=0, misses=3)

    def test_invalidate(self, recording_hook):
        """Test invalidate drops one entry."""
        compute = CallRecorder(lambda x: x)
        fn = memoize(compute, hooks=[recording_hook])
        fn(1)
        fn(2)
        assert fn.invalidate(1) is True
        assert fn.invalidate(1) is False
        assert fn.contains(2)
        fn(1)
        assert compute.call_count == 3
        assert recording_hook.eviction_reasons() == [EvictionReason.INVALIDATED]
        assert fn.stats().evictions == 0

    def test_invalidate_key(self):
        """Test invalidation by a pre-derived key."""
        fn = memoize(lambda a, b: a + b)
        fn(1, 2)
        key = fn.cache_key(1, 2)
        assert key == StructuralKeyDeriver().derive((1, 2), {})
        assert fn.invalidate_key(key)
        assert len(fn) == 0

    def test_invalidate_during_computation(self):
        """Test a result computed across an invalidate is returned but not stored."""

        def compute(x):
            fn.invalidate(x)
            return x * 2

        fn = memoize(compute)
        assert fn(3) == 6
        assert not fn.contains(3)
        assert len(fn) == 0

    def test_clear(self, recording_hook):
        """Test clear empties the cache but keeps the counters."""
        fn = memoize(lambda x: x, hooks=[recording_hook])
        fn(1)
        fn(1)
        fn(2)
        fn.clear()
        assert len(fn) == 0
        assert_memo_stats(fn.stats(), hits=1, misses=2, evictions=0, size=0)
        assert recording_hook.eviction_reasons() == [EvictionReason.CLEARED] * 2

    def test_concurrent_threads(self):
        """Test concurrent threads share one computation."""
        compute = CallRecorder(lambda x: object(), gated=True)
        fn = memoize(compute)
        results = []
        threads = [threading.Thread(target=lambda: results.append(fn("k"))) for _ in range(5)]

        threads[0].start()
        assert compute.started.wait(5.0)
        for thread in threads[1:]:
            thread.start()
        wait_for(lambda: fn.stats().deduped_waits == 4)
        compute.release()
        for thread in threads:
            thread.join(5.0)

        assert compute.call_count == 1
        assert len(results) == 5
        assert all(result is results[0] for result in results)
        assert fn("k") is results[0]

    def test_reentrant_same_key(self):
        """Test a computation calling itself with the same key does not deadlock."""
        depth = 0

        def compute(x):
            nonlocal depth
            depth += 1
            if depth == 1:
                return fn(x) + 1
            return 0

        fn = memoize(compute)
        assert fn("k") == 1
        assert fn("k") == 1
        assert depth == 2


# =============================================================================
# Asynchronous façade
# =============================================================================


class TestAsyncMemoizedFunction:
    """Tests for AsyncMemoizedFunction."""

    @pytest.mark.asyncio
    async def test_coroutine_function_detected(self):
        """Test async def functions get the asynchronous façade."""

        async def fetch(x):
            return x

        fn = memoize(fetch)
        assert isinstance(fn, AsyncMemoizedFunction)
        assert await fn(1) == 1
        assert await fn(1) == 1
        assert_memo_stats(fn.stats(), hits=1, misses=1)

    @pytest.mark.asyncio
    async def test_is_async_override(self):
        """Test is_async forces the asynchronous façade."""
        fn = memoize(lambda x: asyncio.sleep(0, result=x), is_async=True)
        assert isinstance(fn, AsyncMemoizedFunction)
        assert await fn(5) == 5

    @pytest.mark.asyncio
    async def test_errors_are_not_cached(self):
        """Test a failing coroutine is retried on the next call."""
        error = RuntimeError("unavailable")
        compute = AsyncCallRecorder(raises=error)
        fn = memoize(compute)

        for _ in range(2):
            with pytest.raises(RuntimeError) as exc_info:
                await fn(1)
            assert exc_info.value is error
        assert compute.call_count == 2
        assert len(fn) == 0

    @pytest.mark.asyncio
    async def test_error_shared_by_waiters(self, recording_hook):
        """Test concurrent waiters all receive the same exception."""
        error = ValueError("bad")
        compute = AsyncCallRecorder(raises=error, gated=True)
        fn = memoize(compute, hooks=[recording_hook])

        tasks = [asyncio.create_task(fn(1)) for _ in range(3)]
        await compute.started.wait()
        await async_wait_for(lambda: fn.stats().deduped_waits == 2)
        compute.release()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(result is error for result in results)
        assert compute.call_count == 1
        assert len(recording_hook.errors) == 1

    @pytest.mark.asyncio
    async def test_invalidate_during_computation(self):
        """Test waiters get the result but it is not written."""
        compute = AsyncCallRecorder(lambda x: x * 2, gated=True)
        fn = memoize(compute)

        tasks = [asyncio.create_task(fn(4)) for _ in range(2)]
        await compute.started.wait()
        await async_wait_for(lambda: fn.stats().deduped_waits == 1)
        assert fn.invalidate(4) is True
        compute.release()

        assert await asyncio.gather(*tasks) == [8, 8]
        assert len(fn) == 0

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_others(self):
        """Test cancelling one caller leaves the shared computation running."""
        compute = AsyncCallRecorder(lambda x: x, gated=True)
        fn = memoize(compute)

        first = asyncio.create_task(fn(1))
        second = asyncio.create_task(fn(1))
        await compute.started.wait()
        await async_wait_for(lambda: fn.stats().deduped_waits == 1)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        compute.release()

        assert await second == 1
        assert fn.contains(1)

    @pytest.mark.asyncio
    async def test_ttl(self, clock):
        """Test TTL expiry in the asynchronous façade."""
        compute = AsyncCallRecorder(lambda x: x)
        fn = memoize(compute, ttl_seconds=1.0, clock=clock)
        await fn(1)
        clock.advance(1.5)
        await fn(1)
        assert compute.call_count == 2


# =============================================================================
# Weak mode
# =============================================================================


class TestWeakMode:
    """Tests for identity-keyed weak mode."""

    def test_identity_keys(self):
        """Test equal-content objects are cached separately."""
        compute = CallRecorder(lambda doc: doc.title)
        fn = memoize(compute, weak=True)
        a, b = Document("same"), Document("same")
        fn(a)
        fn(b)
        fn(a)
        assert compute.call_count == 2

    def test_non_weakrefable_argument_fails_the_call(self):
        """Test a primitive first argument raises KeyDerivationError."""
        fn = memoize(lambda x: x, weak=True)
        with pytest.raises(KeyDerivationError):
            fn(42)
        assert len(fn) == 0

    def test_primitive_annotation_rejected_at_setup(self):
        """Test weak mode on a function taking an int fails at construction."""

        def square(x: int) -> int:
            return x * x

        with pytest.raises(ConfigurationError):
            memoize(square, weak=True)

    def test_invalidate_stops_tracking(self):
        """Test invalidated entries are not reported again on reclamation."""
        fn = memoize(lambda doc: doc.title, weak=True)
        doc = Document("a")
        fn(doc)
        assert fn.invalidate(doc)
        del doc
        gc.collect()
        assert fn.purge_reclaimed() == 0
        assert fn.stats().evictions == 0

    def test_purge_reclaimed(self, recording_hook):
        """Test reclaimed entries can be dropped explicitly."""
        fn = memoize(lambda doc, fmt: f"{doc.title}.{fmt}", weak=True, hooks=[recording_hook])
        doc = Document("report")
        assert fn(doc, "pdf") == "report.pdf"
        assert fn(doc, "html") == "report.html"
        assert len(fn) == 2

        del doc
        gc.collect()

        assert fn.purge_reclaimed() == 2
        assert len(fn) == 0
        assert recording_hook.eviction_reasons() == [EvictionReason.RECLAIMED] * 2

    def test_len_drops_reclaimed_entries(self):
        """Test len() does not count entries of collected key objects."""
        fn = memoize(lambda doc: doc.title, weak=True)
        doc = Document("a")
        fn(doc)
        del doc
        gc.collect()
        assert len(fn) == 0
        assert fn.stats().evictions == 1

    def test_contains_ignores_entry_of_reclaimed_object(self):
        """Test a new object reusing a collected object's id is not reported cached."""
        fn = memoize(lambda doc: doc.title, weak=True)
        doc = Document("a")
        fn(doc)
        dead_id = id(doc)
        del doc
        gc.collect()

        fresh = Document("b")
        for _ in range(1000):
            if id(fresh) == dead_id:
                break
            fresh = Document("b")

        assert not fn.contains(fresh)
        assert fn(fresh) == "b"

    def test_capacity_eviction_stops_tracking(self):
        """Test LRU-evicted entries are not counted again on reclamation."""
        fn = memoize(lambda doc: doc.title, weak=True, max_size=1)
        first, second = Document("a"), Document("b")
        fn(first)
        fn(second)
        assert fn.stats().evictions == 1
        del first
        gc.collect()
        assert fn.purge_reclaimed() == 0
        assert fn.stats().evictions == 1


# =============================================================================
# Supplemented features
# =============================================================================


class TestRecursion:
    """Tests for memoized recursive functions."""

    def test_fibonacci(self):
        """Test nested calls hit the cache."""

        @memoized
        def fib(n: int) -> int:
            return n if n < 2 else fib(n - 1) + fib(n - 2)

        assert fib(30) == 832040
        assert_memo_stats(fib.stats(), misses=31, hits=28, size=31)

    def test_factorial(self):
        """Test a later, larger call reuses earlier results."""

        @memoized(max_size=100)
        def factorial(n: int) -> int:
            return 1 if n <= 1 else n * factorial(n - 1)

        assert factorial(10) == 3628800
        misses = factorial.stats().misses
        assert factorial(12) == 479001600
        assert factorial.stats().misses == misses + 2
        assert factorial.stats().hits == 1


class TestMethods:
    """Tests for memoized methods."""

    def test_weak_method_caches_per_instance(self):
        """Test a weak-mode method keys entries on the instance."""

        class Repository:
            def __init__(self):
                self.loads = 0

            @memoized(weak=True)
            def load(self, item_id):
                self.loads += 1
                return {"id": item_id}

        first, second = Repository(), Repository()
        assert first.load(1) is first.load(1)
        second.load(1)
        assert first.loads == 1
        assert second.loads == 1
        assert Repository.load.stats().hits == 1
        assert len(Repository.load) == 2

    def test_method_with_key_fn(self):
        """Test a key function can ignore the instance."""

        class Converter:
            def __init__(self):
                self.calls = 0

            @memoized(key_fn=lambda self, amount: amount)
            def convert(self, amount):
                self.calls += 1
                return amount * 2

        converter = Converter()
        assert converter.convert(10) == 20
        assert converter.convert(10) == 20
        assert converter.calls == 1


class TestFactory:
    """Tests for memoize() and memoized() options."""

    def test_overrides_merge_into_config(self):
        """Test keyword options override config fields."""
        fn = memoize(lambda x: x, MemoConfig(max_size=10), ttl_seconds=5.0)
        assert fn.config == MemoConfig(max_size=10, ttl_seconds=5.0)

    def test_invalid_configuration(self):
        """Test invalid options fail at construction."""
        with pytest.raises(ConfigurationError):
            memoize(lambda x: x, max_size=0)
        with pytest.raises(ConfigurationError):
            memoize(lambda x: x, weak=True, key_fn=lambda x: x)

    def test_non_callable(self):
        """Test memoize rejects non-callables."""
        with pytest.raises(ConfigurationError):
            memoize(42)  # type: ignore[arg-type]

    def test_wraps_metadata(self):
        """Test the façade carries the function's metadata."""

        def add(a, b):
            """Add two numbers."""
            return a + b

        fn = memoize(add)
        assert fn.__name__ == "add"
        assert fn.__doc__ == "Add two numbers."
        assert fn.__wrapped__ is add
        assert fn.name.endswith("add")

    def test_name_option(self):
        """Test an explicit cache name."""
        assert memoize(lambda x: x, name="users").name == "users"

    def test_bare_decorator(self):
        """Test @memoized without arguments."""

        @memoized
        def double(x):
            return x * 2

        assert isinstance(double, MemoizedFunction)
        assert double(2) == 4

    def test_decorator_with_config(self):
        """Test @memoized with a configuration object."""

        @memoized(MemoConfig(max_size=1))
        def double(x):
            return x * 2

        double(1)
        double(2)
        assert len(double) == 1

    def test_stats_snapshot_is_frozen(self):
        """Test stats() returns an immutable snapshot."""
        fn = memoize(lambda x: x, max_size=4)
        fn(1)
        stats = fn.stats()
        fn(2)
        assert stats.misses == 1
        assert stats.max_size == 4
        with pytest.raises(AttributeError):
            stats.hits = 5  # type: ignore[misc]

    def test_independent_caches(self):
        """Test two memoized functions never share entries."""

        def identity(x):
            return x

        first, second = memoize(identity), memoize(identity)
        first(1)
        assert not second.contains(1)


class TestManualClock:
    """Tests for the ManualClock helper."""

    def test_advance(self):
        """Test the clock moves forward only."""
        clock = ManualClock()
        clock.advance(1.5)
        assert clock() == 1.5
        with pytest.raises(ValueError):
            clock.advance(-1.0)
        with pytest.raises(ValueError):
            clock.set(1.0)
