"""Base reconciler: list-then-watch loop that keeps a metadata cache fresh.

State machine (one instance per resource kind)::

    INITIAL_LIST -> WATCHING -> (error) -> BACKOFF -> INITIAL_LIST | WATCHING
                                        -> FATAL (ReconcilerFatalError)

- INITIAL_LIST lists every object, seeds the cache, remembers the returned
  resourceVersion.  The startup list resets the retry bookkeeping; a relist
  after a failure does not, so a watch that keeps failing still exhausts
  ``max_retries``.  INITIAL_LIST is skipped when the
  subclass resumes from the last resourceVersion seen (pods).
- WATCHING applies events: ADDED is ignored, MODIFIED refreshes cached
  entries, DELETED is ignored so late log lines can still be enriched until
  the TTL expires.
- A Gone (410) error clears the cursor and relists immediately without
  spending retry budget.
- A 401 refreshes the API client once and reconnects; a second 401 before
  any event is processed is treated as a generic error.
- Any other error sleeps ``backoff_interval``, multiplies it by the
  exponential base and reconnects; once ``max_retries`` is reached a
  :class:`ReconcilerFatalError` ends the loop.
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from kubemeta.cache.bounded_cache import BoundedCache
from kubemeta.collector.fetcher import MetadataFetcher
from kubemeta.errors import (
    ApiErrorKind,
    MetadataApiError,
    ReconcilerFatalError,
    ReconcilerStartupError,
    classify,
    error_from_status_object,
)
from kubemeta.models.metadata import EventType, ListResult, Metadata, ReconcilerState, WatchEvent
from kubemeta.observability.logging import get_logger
from kubemeta.observability.metrics import (
    watcher_backoff_seconds,
    watcher_errors_total,
    watcher_events_total,
    watcher_reconnects_total,
    watcher_relistings_total,
)
from kubemeta.observability.stats import Stats

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_RETRY_INTERVAL_S: float = 1.0
_DEFAULT_BACKOFF_BASE: float = 2.0
_DEFAULT_MAX_RETRIES: int = 10


class BaseReconciler(ABC):
    """Async base class for the pod and namespace reconciliation loops.

    Subclasses implement listing, watching, keying, parsing, and what to do
    with a MODIFIED event for an object that is not cached yet.

    Lifecycle::

        reconciler = PodReconciler(fetcher, store, stats, parser)
        await reconciler.start()   # initial list; raises ReconcilerStartupError
        ...                        # loop runs as a background task
        await reconciler.stop()
    """

    # Stats key prefix, e.g. "pod" -> "pod_watch_failures"
    kind: str = "base"
    # Reconnect from the last seen resourceVersion instead of relisting.
    resume_from_last_seen: bool = False

    def __init__(
        self,
        fetcher: MetadataFetcher,
        cache: BoundedCache[str, Metadata],
        stats: Stats,
        retry_interval: float = _DEFAULT_RETRY_INTERVAL_S,
        backoff_base: float = _DEFAULT_BACKOFF_BASE,
        max_retries: int = _DEFAULT_MAX_RETRIES,
    ) -> None:
        self._fetcher = fetcher
        self._cache = cache
        self._stats = stats
        self._backoff_base = backoff_base
        self._max_retries = max_retries
        self._log = get_logger(f"reconciler.{self.kind}")

        self.state = ReconcilerState(initial_interval=retry_interval)
        # Cursor the next watch opens from; None forces INITIAL_LIST.
        self._watch_from: str | None = None
        self._running: bool = False
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    async def start(self) -> None:
        """Perform the initial list, then run the watch loop as a background task.

        Raises:
            ReconcilerStartupError: the initial list failed.  This usually
                means the API endpoint or credentials are misconfigured.
        """
        if self._running:
            return
        try:
            await self._initial_list(reset_retries=True)
        except Exception as exc:
            message = f"initial {self.kind} list failed: {exc}"
            self._log.debug("reconciler_startup_failed", error=str(exc))
            raise ReconcilerStartupError(message) from exc
        self._running = True
        self._task = asyncio.create_task(self.run(), name=f"reconciler-{self.kind}")
        self._log.info("reconciler_started", resource_version=self._watch_from)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for it to exit."""
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._log.info("reconciler_stopped")

    async def run(self) -> None:
        """Main loop; runs until stopped, cancelled, or retries are exhausted."""
        self._running = True
        while self._running:
            try:
                await self._list_and_watch()
            except asyncio.CancelledError:
                return
            except MetadataApiError as exc:
                if not self._running:
                    return
                await self._handle_api_error(exc)
            except Exception as exc:
                if not self._running:
                    return
                await self._backoff(exc)

    # ------------------------------------------------------------------
    # Abstract interface for subclasses
    # ------------------------------------------------------------------

    @abstractmethod
    async def _list(self) -> ListResult:
        """List every object of this kind."""

    @abstractmethod
    def _watch(self, resource_version: str | None) -> AsyncIterator[WatchEvent]:
        """Open a watch stream from ``resource_version``."""

    @abstractmethod
    def _cache_key(self, obj: dict[str, Any]) -> str | None:
        """Return the cache key for a JSON-shaped object."""

    @abstractmethod
    def _parse(self, obj: dict[str, Any]) -> Metadata:
        """Parse a JSON-shaped object into cached metadata."""

    @abstractmethod
    def _on_uncached_modified(self, key: str, obj: dict[str, Any]) -> None:
        """Handle a MODIFIED event for an object that is not cached."""

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _list_and_watch(self) -> None:
        if self._watch_from is None:
            await self._initial_list()
        await self._process_watch(self._watch_from)
        # Server closed the stream (watch timeout); reconnect.
        watcher_reconnects_total.labels(watcher=self.kind, reason="stream_end").inc()
        self._reset_watcher()

    async def _initial_list(self, reset_retries: bool = False) -> None:
        """INITIAL_LIST: seed the cache and remember the list cursor.

        Only the startup list resets the retry bookkeeping; a relist that
        follows a backoff leaves it to the next processed event.
        """
        watcher_relistings_total.labels(watcher=self.kind).inc()
        result = await self._list()
        for obj in result.items:
            key = self._cache_key(obj)
            if key is None:
                continue
            try:
                self._cache.set(key, self._parse(obj))
            except (KeyError, TypeError, AttributeError, ValueError) as exc:
                self._log.debug("list_item_invalid", key=key, error=repr(exc))
                continue
            self._stats.bump(f"{self.kind}_cache_host_updates")
        self.state.last_resource_version = result.resource_version or None
        self._watch_from = result.resource_version or None
        if reset_retries:
            self.state.reset()
        self._log.debug("list_complete", count=len(result.items), resource_version=result.resource_version)

    async def _process_watch(self, resource_version: str | None) -> None:
        """WATCHING: apply events until the stream ends or raises."""
        async for event in self._watch(resource_version):
            if event.type == EventType.ERROR:
                watcher_events_total.labels(watcher=self.kind, event_type=event.type).inc()
                self._stats.bump(f"{self.kind}_watch_error_type_notices")
                raise error_from_status_object(event.object)

            rv = _extract_rv(event.object)
            if rv:
                self.state.last_resource_version = rv
            if event.type == EventType.BOOKMARK:
                continue

            watcher_events_total.labels(watcher=self.kind, event_type=event.type).inc()
            self._handle_event(event)
            self.state.reset()

    def _handle_event(self, event: WatchEvent) -> None:
        if event.type == EventType.MODIFIED:
            key = self._cache_key(event.object)
            if key is None:
                self._stats.bump(f"{self.kind}_cache_watch_ignored")
                return
            try:
                if self._cache.contains(key):
                    self._cache.set(key, self._parse(event.object))
                    self._stats.bump(f"{self.kind}_cache_watch_updates")
                else:
                    self._on_uncached_modified(key, event.object)
            except (KeyError, TypeError, AttributeError, ValueError) as exc:
                self._stats.bump(f"{self.kind}_cache_watch_bad_resp_payload")
                self._log.debug("watch_object_invalid", key=key, error=repr(exc))
        elif event.type == EventType.DELETED:
            # Let the entry age out: log lines for a just-deleted object may
            # still be in flight.
            self._stats.bump(self._delete_ignored_key())
        else:
            # ADDED: the object may never become relevant to this process.
            self._stats.bump(f"{self.kind}_cache_watch_ignored")

    def _delete_ignored_key(self) -> str:
        return f"{self.kind}_cache_watch_delete_ignored"

    # ------------------------------------------------------------------
    # Error handling
    # ------------------------------------------------------------------

    async def _handle_api_error(self, exc: MetadataApiError) -> None:
        """Route a classified API error to the correct recovery path."""
        watcher_errors_total.labels(watcher=self.kind, kind=exc.kind.value).inc()

        if exc.kind is ApiErrorKind.GONE:
            self._stats.bump(f"{self.kind}_watch_gone_errors")
            self._log.info("watch_gone", error=exc.message)
            watcher_reconnects_total.labels(watcher=self.kind, reason="410").inc()
            self.state.last_resource_version = None
            self._watch_from = None
            return

        if exc.kind is ApiErrorKind.UNAUTHORIZED and not self.state.auth_refreshed:
            self._stats.bump(f"{self.kind}_watch_auth_refreshes")
            self._log.info("watch_unauthorized_refreshing_client")
            watcher_reconnects_total.labels(watcher=self.kind, reason="401").inc()
            self.state.auth_refreshed = True
            try:
                await self._fetcher.refresh_client()
            except Exception as refresh_exc:
                await self._backoff(refresh_exc)
                return
            self._reset_watcher()
            return

        await self._backoff(exc)

    async def _backoff(self, exc: BaseException) -> None:
        """BACKOFF: sleep and grow the interval, or raise once retries are exhausted."""
        self._stats.bump(f"{self.kind}_watch_failures")
        error = classify(exc)
        if self.state.retry_count >= self._max_retries:
            message = (
                f"{self.kind} watch failed {self._max_retries} times in a row "
                f"and is still failing: {error}"
            )
            self._log.error("watch_retries_exhausted", max_retries=self._max_retries, error=str(error))
            raise ReconcilerFatalError(message) from exc

        delay = self.state.backoff_interval
        self._log.warning(
            "watch_retry",
            error=str(error),
            retry_count=self.state.retry_count,
            delay_s=delay,
        )
        watcher_reconnects_total.labels(watcher=self.kind, reason=error.kind.value).inc()
        watcher_backoff_seconds.labels(watcher=self.kind).observe(delay)
        await asyncio.sleep(delay)
        self.state.retry_count += 1
        self.state.backoff_interval *= self._backoff_base
        self._reset_watcher()

    def _reset_watcher(self) -> None:
        """Force a fresh watcher: resume from the last cursor or relist."""
        if self.resume_from_last_seen and self.state.last_resource_version:
            self._watch_from = self.state.last_resource_version
        else:
            self._watch_from = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _extract_rv(obj: dict[str, Any]) -> str:
    """Extract resourceVersion from a JSON-shaped object."""
    metadata = obj.get("metadata")
    if isinstance(metadata, dict):
        rv = metadata.get("resourceVersion")
        if rv:
            return str(rv)
    return ""
