"""Capacity- and TTL-bounded cache with LRU eviction.

Backed by ``cachetools``: :class:`~cachetools.TTLCache` when a TTL is set,
:class:`~cachetools.LRUCache` when entries never expire.  Expiry is lazy:
an entry past its TTL is treated as absent by every read.

Concurrency
-----------
Plain reads and writes take a ``threading.RLock`` so the cache can be shared
with threads (e.g. a stats reporter).  :meth:`BoundedCache.get_or_compute`
is single-flight per key: while a computation for ``key`` is in flight, other
coroutines asking for the same key await that computation instead of
starting their own.  Computations for different keys run concurrently.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import time
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Generic, TypeVar

from cachetools import LRUCache, TTLCache

from kubemeta.observability.metrics import cache_compute_shared_total, cache_compute_total, cache_entries

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING: Any = object()


class BoundedCache(Generic[K, V]):
    """Fixed-capacity key/value store with TTL expiry and LRU eviction.

    Args:
        capacity: Maximum number of live entries.
        ttl: Seconds an entry stays fresh after its last write, or ``None``
            for no expiry.
        name: Label used in metrics.
        timer: Monotonic clock; injectable for tests.
    """

    def __init__(
        self,
        capacity: int,
        ttl: float | None = None,
        name: str = "cache",
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._ttl = ttl
        self._name = name
        self._data: LRUCache[K, V] | TTLCache[K, V]
        if ttl is None:
            self._data = LRUCache(maxsize=capacity)
        else:
            self._data = TTLCache(maxsize=capacity, ttl=ttl, timer=timer)
        self._lock = threading.RLock()
        self._inflight: dict[K, asyncio.Future[V]] = {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def ttl(self) -> float | None:
        return self._ttl

    # ------------------------------------------------------------------
    # Synchronous interface
    # ------------------------------------------------------------------

    def get(self, key: K, default: V | None = None) -> V | None:
        """Return the fresh value for ``key`` (touching its recency), else ``default``."""
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: K, value: V) -> None:
        """Insert or overwrite ``key``, evicting the least-recently-used entry if full."""
        with self._lock:
            self._data[key] = value

    def delete(self, key: K) -> None:
        with self._lock:
            self._data.pop(key, None)

    def contains(self, key: K) -> bool:
        """Return True if ``key`` holds a fresh value.  Does not touch recency."""
        with self._lock:
            return key in self._data

    def __contains__(self, key: object) -> bool:
        return self.contains(key)  # type: ignore[arg-type]

    def size(self) -> int:
        """Number of live (unexpired) entries."""
        with self._lock:
            self._expire()
            return len(self._data)

    def __len__(self) -> int:
        return self.size()

    def snapshot(self) -> dict[K, V]:
        """Return a copy of all live entries, least recently used first."""
        with self._lock:
            self._expire()
            return {k: self._data[k] for k in list(self._data.keys())}

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def emit_size_metric(self) -> int:
        """Publish the live entry count to Prometheus and return it."""
        count = self.size()
        cache_entries.labels(cache=self._name).set(count)
        return count

    # ------------------------------------------------------------------
    # Async compute-on-miss
    # ------------------------------------------------------------------

    async def get_or_compute(self, key: K, fn: Callable[[], Awaitable[V] | V]) -> V:
        """Return the fresh value for ``key`` or compute, store and return it.

        ``fn`` may be a plain callable or return an awaitable.  Exceptions
        raised by ``fn`` propagate to every caller waiting on this key and
        nothing is stored.  ``fn`` must not call back into ``get_or_compute``
        for the same key.
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value  # type: ignore[no-any-return]

        pending = self._inflight.get(key)
        if pending is not None:
            cache_compute_shared_total.labels(cache=self._name).inc()
            return await asyncio.shield(pending)

        future: asyncio.Future[V] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        cache_compute_total.labels(cache=self._name).inc()
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so an unobserved failure is not reported by asyncio.
            future.exception()
            raise
        else:
            self.set(key, result)  # type: ignore[arg-type]
            future.set_result(result)  # type: ignore[arg-type]
            return result  # type: ignore[return-value]
        finally:
            self._inflight.pop(key, None)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _expire(self) -> None:
        if isinstance(self._data, TTLCache):
            self._data.expire()
