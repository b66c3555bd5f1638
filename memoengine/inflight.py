"""Single-flight deduplication of in-progress computations.

While a computation for a key is running, further calls for that key join
it instead of starting their own. Every participant receives the same
outcome: the same value, or the very same exception object.

The pending marker is removed as soon as the computation settles, whether
it succeeded, failed or was cancelled, so a failure is never served from
the cache and the registry never accumulates stale markers.

Synchronous callers from several threads and asynchronous callers from
several tasks (or event loops) all share one ``concurrent.futures.Future``
per pending key. The registry lock is only held for bookkeeping, never
while user code runs or while awaiting.

Callers that check a cache first take the registry lock themselves (it is
reentrant), look up the key, and call ``join_or_start`` before releasing
it; then ``resolve`` or ``resolve_async`` outside the lock. That way no
value can be written between the lookup and the join.
"""

from __future__ import annotations

import asyncio
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from memoengine.logging import get_logger


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Hashable


logger = get_logger(__name__)


class Role(Enum):
    """How a caller takes part in a computation.

    Attributes:
        OWNER: Started the computation and runs it.
        JOINER: Waits for a computation another caller started.
        REENTRANT: Called again for the same key from inside the running
            computation; it computes directly and caches nothing.
    """

    OWNER = auto()
    JOINER = auto()
    REENTRANT = auto()


@dataclass(eq=False, slots=True)
class PendingComputation:
    """A computation that has started but not yet settled.

    Attributes:
        key: Cache key the computation produces a value for.
        owner_thread: Thread that started the computation.
        outcome: Future shared by every waiter.
        waiters: Number of callers currently waiting on the outcome.
        task: The asyncio task driving an asynchronous computation.
        started_at: Monotonic start time.
    """

    key: Hashable
    owner_thread: int
    outcome: Future[Any] = field(default_factory=Future)
    waiters: int = 1
    task: asyncio.Task[None] | None = None
    started_at: float = field(default_factory=time.monotonic)


class InFlightRegistry:
    """Tracks running computations per key and lets callers join them.

    Args:
        lock: Lock guarding the registry. Pass the owner's lock so that
            success writes happen atomically with the marker removal.
        on_join: Called (under the lock) whenever a caller joins an
            existing computation instead of starting one.

    Example:
        >>> registry = InFlightRegistry()
        >>> registry.run("k", lambda: expensive(), on_success=store_value)
    """

    def __init__(
        self,
        lock: threading.RLock | None = None,
        on_join: Callable[[Hashable], None] | None = None,
    ) -> None:
        self._lock = lock or threading.RLock()
        self._on_join = on_join
        self._pending: dict[Hashable, PendingComputation] = {}

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def get(self, key: Hashable) -> PendingComputation | None:
        with self._lock:
            return self._pending.get(key)

    def join_or_start(
        self,
        key: Hashable,
        *,
        task: asyncio.Task[Any] | None = None,
    ) -> tuple[Role, PendingComputation]:
        """Register a new computation for ``key`` or join the running one.

        Args:
            key: Cache key.
            task: The calling asyncio task, for asynchronous callers. It
                decides whether a call is re-entrant; synchronous callers
                are matched by thread instead.

        Returns:
            The caller's role and the pending computation.
        """
        thread_id = threading.get_ident()
        with self._lock:
            pending = self._pending.get(key)
            if pending is None:
                pending = PendingComputation(key=key, owner_thread=thread_id)
                self._pending[key] = pending
                return Role.OWNER, pending

            if task is None:
                reentrant = pending.task is None and pending.owner_thread == thread_id
            else:
                reentrant = task is pending.task
            if reentrant:
                return Role.REENTRANT, pending

            pending.waiters += 1
            if self._on_join is not None:
                self._on_join(key)
            return Role.JOINER, pending

    def _settle(
        self,
        pending: PendingComputation,
        *,
        value: Any = None,
        error: BaseException | None = None,
        on_success: Callable[[Hashable, Any], None] | None = None,
    ) -> None:
        with self._lock:
            current = self._pending.get(pending.key) is pending
            if current:
                del self._pending[pending.key]
            # An invalidated or cleared computation still answers its
            # waiters but must not repopulate the cache.
            if error is None and current and on_success is not None:
                on_success(pending.key, value)

        if error is None:
            pending.outcome.set_result(value)
        elif isinstance(error, asyncio.CancelledError):
            pending.outcome.cancel()
        else:
            pending.outcome.set_exception(error)

    # -------------------------------------------------------------------------
    # Synchronous callers
    # -------------------------------------------------------------------------

    def run(
        self,
        key: Hashable,
        compute_fn: Callable[[], Any],
        on_success: Callable[[Hashable, Any], None],
    ) -> Any:
        """Start the computation for ``key`` or wait for the running one.

        Raises:
            Exception: Whatever ``compute_fn`` raised, to every waiter.
        """
        role, pending = self.join_or_start(key)
        return self.resolve(role, pending, compute_fn, on_success)

    def resolve(
        self,
        role: Role,
        pending: PendingComputation,
        compute_fn: Callable[[], Any],
        on_success: Callable[[Hashable, Any], None],
    ) -> Any:
        """Run or wait for a computation entered with ``join_or_start``.

        Blocks the calling thread while another thread computes the same
        key. A call made from inside the computation for the same key (on
        the computing thread) runs ``compute_fn`` directly and caches
        nothing, rather than waiting on itself.

        Raises:
            Exception: Whatever ``compute_fn`` raised, to every waiter.
        """
        if role is Role.REENTRANT:
            logger.warning("Re-entrant call bypasses the cache", key=str(pending.key))
            return compute_fn()

        if role is Role.JOINER:
            return pending.outcome.result()

        try:
            value = compute_fn()
        except BaseException as exc:
            self._settle(pending, error=exc)
            raise
        self._settle(pending, value=value, on_success=on_success)
        return value

    # -------------------------------------------------------------------------
    # Asynchronous callers
    # -------------------------------------------------------------------------

    async def run_async(
        self,
        key: Hashable,
        compute_fn: Callable[[], Awaitable[Any]],
        on_success: Callable[[Hashable, Any], None],
    ) -> Any:
        """Start the computation for ``key`` as a task, or join the running one.

        Raises:
            Exception: Whatever ``compute_fn`` raised, to every waiter.
        """
        role, pending = self.join_or_start(key, task=asyncio.current_task())
        return await self.resolve_async(role, pending, compute_fn, on_success)

    async def resolve_async(
        self,
        role: Role,
        pending: PendingComputation,
        compute_fn: Callable[[], Awaitable[Any]],
        on_success: Callable[[Hashable, Any], None],
    ) -> Any:
        """Drive or await a computation entered with ``join_or_start``.

        The owner runs the computation in its own task so that cancelling
        one caller never affects the others. When the last waiting caller
        is cancelled, the shared task is cancelled too.

        Raises:
            Exception: Whatever ``compute_fn`` raised, to every waiter.
        """
        if role is Role.REENTRANT:
            logger.warning("Re-entrant call bypasses the cache", key=str(pending.key))
            return await compute_fn()

        if role is Role.OWNER:
            try:
                awaitable = compute_fn()
            except BaseException as exc:
                self._settle(pending, error=exc)
                raise
            task = asyncio.get_running_loop().create_task(self._drive(pending, awaitable, on_success))
            with self._lock:
                pending.task = task

        return await self._wait(pending)

    async def _drive(
        self,
        pending: PendingComputation,
        awaitable: Awaitable[Any],
        on_success: Callable[[Hashable, Any], None],
    ) -> None:
        try:
            value = await awaitable
        except Exception as exc:
            # Delivered through the outcome; the task itself ends cleanly.
            self._settle(pending, error=exc)
            return
        except BaseException as exc:
            self._settle(pending, error=exc)
            raise
        self._settle(pending, value=value, on_success=on_success)

    async def _wait(self, pending: PendingComputation) -> Any:
        waiter = asyncio.wrap_future(pending.outcome)
        try:
            return await asyncio.shield(waiter)
        except asyncio.CancelledError:
            if not pending.outcome.done():
                self._release(pending)
            raise

    def _release(self, pending: PendingComputation) -> None:
        with self._lock:
            pending.waiters -= 1
            if pending.waiters > 0 or pending.outcome.done():
                return
            if self._pending.get(pending.key) is pending:
                del self._pending[pending.key]
            task = pending.task

        if task is None or task.done():
            return
        task_loop = task.get_loop()
        if task_loop.is_closed():
            return
        logger.debug("Cancelling computation with no remaining waiters", key=str(pending.key))
        task_loop.call_soon_threadsafe(task.cancel)

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def discard(self, key: Hashable) -> bool:
        """Forget the pending marker for ``key``.

        The computation keeps running and still answers its waiters, but
        its result will not be written and new callers start afresh.

        Returns:
            True if a marker was removed.
        """
        with self._lock:
            return self._pending.pop(key, None) is not None

    def clear(self) -> int:
        """Forget every pending marker without cancelling anything.

        Returns:
            Number of markers removed.
        """
        with self._lock:
            count = len(self._pending)
            self._pending.clear()
            return count

    def keys(self) -> list[Hashable]:
        with self._lock:
            return list(self._pending)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._pending
