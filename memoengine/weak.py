"""Garbage-collection-aware cleanup for weak-mode entries.

In weak mode an entry is keyed on the identity of its first argument. The
tracker registers a ``weakref.finalize`` callback on that object; once the
object is collected, the keys that belonged to it are queued, and the
engine removes the matching entries the next time it runs (every call,
``stats()`` and ``purge_reclaimed()`` drain the queue).

This is a best-effort, secondary cleanup path:

- Reclamation timing is up to the garbage collector. Do not rely on it to
  bound memory; configure ``max_size`` or ``ttl_seconds`` for that.
- A cached value that references its key object keeps that object alive,
  so its entry is never reclaimed.
- ``invalidate`` and ``clear`` remain the reliable ways to drop entries.

Finalizer callbacks may run on any thread and at any point, including
while the engine lock is held by the same thread. They therefore only
append to a thread-safe queue and never touch the cache directly.
"""

from __future__ import annotations

import threading
import weakref
from collections import deque
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from collections.abc import Hashable


class WeakEntryTracker:
    """Maps live key objects to the cache keys derived from them.

    Example:
        >>> tracker = WeakEntryTracker()
        >>> tracker.track(document, key)
        >>> del document; gc.collect()
        >>> tracker.drain()
        [key]
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._finalizers: dict[int, weakref.finalize] = {}
        self._keys: dict[int, set[Hashable]] = {}
        self._reclaimed: deque[int] = deque()

    def track(self, key_object: Any, key: Hashable) -> None:
        """Associate ``key`` with ``key_object`` until the object dies.

        Raises:
            TypeError: If ``key_object`` cannot be weakly referenced.
        """
        object_id = id(key_object)
        with self._lock:
            if object_id not in self._finalizers:
                self._finalizers[object_id] = weakref.finalize(
                    key_object, self._reclaimed.append, object_id
                )
            self._keys.setdefault(object_id, set()).add(key)

    def forget(self, key: Hashable, object_id: int) -> None:
        """Stop tracking ``key``; detach the finalizer when no keys remain."""
        with self._lock:
            keys = self._keys.get(object_id)
            if keys is None:
                return
            keys.discard(key)
            if not keys:
                del self._keys[object_id]
                finalizer = self._finalizers.pop(object_id, None)
                if finalizer is not None:
                    finalizer.detach()

    def drain(self) -> list[Hashable]:
        """Return the keys whose objects were reclaimed since the last drain."""
        reclaimed: list[Hashable] = []
        with self._lock:
            while self._reclaimed:
                object_id = self._reclaimed.popleft()
                self._finalizers.pop(object_id, None)
                reclaimed.extend(self._keys.pop(object_id, ()))
        return reclaimed

    def clear(self) -> None:
        """Detach every finalizer and forget all tracked keys."""
        with self._lock:
            for finalizer in self._finalizers.values():
                finalizer.detach()
            self._finalizers.clear()
            self._keys.clear()
            self._reclaimed.clear()

    @property
    def pending_reclaims(self) -> int:
        """Reclaimed objects not yet drained."""
        return len(self._reclaimed)

    def __len__(self) -> int:
        """Number of key objects currently tracked."""
        with self._lock:
            return len(self._finalizers)
