"""Namespace reconciler.

Keeps the namespace cache in sync.  Every reconnect relists, since the
namespace set is small and the namespace watch carries no field selector.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from kubemeta.cache.store import MetadataStore
from kubemeta.collector.fetcher import MetadataFetcher
from kubemeta.collector.parsing import MetadataParser
from kubemeta.collector.watcher import BaseReconciler
from kubemeta.models.metadata import ListResult, Metadata, WatchEvent
from kubemeta.observability.stats import Stats


class NamespaceReconciler(BaseReconciler):
    """List-then-watch loop over namespaces."""

    kind = "namespace"
    resume_from_last_seen = False

    def __init__(
        self,
        fetcher: MetadataFetcher,
        store: MetadataStore,
        stats: Stats,
        parser: MetadataParser,
        retry_interval: float = 1.0,
        backoff_base: float = 2.0,
        max_retries: int = 10,
    ) -> None:
        super().__init__(
            fetcher,
            store.namespaces,
            stats,
            retry_interval=retry_interval,
            backoff_base=backoff_base,
            max_retries=max_retries,
        )
        self._store = store
        self._parser = parser

    async def _list(self) -> ListResult:
        return await self._fetcher.list_namespaces()

    def _watch(self, resource_version: str | None) -> AsyncIterator[WatchEvent]:
        return self._fetcher.watch_namespaces(resource_version)

    def _cache_key(self, obj: dict[str, Any]) -> str | None:
        return self._store.namespace_key(obj)

    def _parse(self, obj: dict[str, Any]) -> Metadata:
        return self._parser.parse_namespace(obj)

    def _on_uncached_modified(self, key: str, obj: dict[str, Any]) -> None:
        self._stats.bump("namespace_cache_watch_misses")

    def _delete_ignored_key(self) -> str:
        return "namespace_cache_watch_deletes_ignored"
