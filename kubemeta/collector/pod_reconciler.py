"""Pod reconciler.

Keeps the pod cache in sync with pods scheduled on this node (or the whole
cluster when no node name is configured).  Reconnects resume from the last
resourceVersion seen so a routine watch timeout does not trigger a relist.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from kubemeta.cache.store import MetadataStore
from kubemeta.collector.fetcher import MetadataFetcher
from kubemeta.collector.parsing import MetadataParser
from kubemeta.collector.watcher import BaseReconciler
from kubemeta.models.metadata import CacheStrategy, ListResult, Metadata, WatchEvent
from kubemeta.observability.stats import Stats


class PodReconciler(BaseReconciler):
    """List-then-watch loop over pods.

    Usage::

        reconciler = PodReconciler(fetcher, store, stats, parser, node_name="node-a")
        await reconciler.start()
    """

    kind = "pod"
    resume_from_last_seen = True

    def __init__(
        self,
        fetcher: MetadataFetcher,
        store: MetadataStore,
        stats: Stats,
        parser: MetadataParser,
        node_name: str = "",
        retry_interval: float = 1.0,
        backoff_base: float = 2.0,
        max_retries: int = 10,
    ) -> None:
        super().__init__(
            fetcher,
            store.pods,
            stats,
            retry_interval=retry_interval,
            backoff_base=backoff_base,
            max_retries=max_retries,
        )
        self._store = store
        self._parser = parser
        self._node_name = node_name

    @property
    def field_selector(self) -> str | None:
        return f"spec.nodeName={self._node_name}" if self._node_name else None

    async def _list(self) -> ListResult:
        return await self._fetcher.list_pods(field_selector=self.field_selector)

    def _watch(self, resource_version: str | None) -> AsyncIterator[WatchEvent]:
        return self._fetcher.watch_pods(resource_version, field_selector=self.field_selector)

    def _cache_key(self, obj: dict[str, Any]) -> str | None:
        return self._store.pod_key(obj)

    def _parse(self, obj: dict[str, Any]) -> Metadata:
        metadata = self._parser.parse_pod(obj)
        if self._store.strategy is CacheStrategy.SIMPLE:
            # Simple-strategy entries carry their namespace metadata inline.
            namespace = self._store.namespaces.get(metadata["namespace_name"])
            if namespace:
                metadata = {**metadata, **namespace}
        return metadata

    def _on_uncached_modified(self, key: str, obj: dict[str, Any]) -> None:
        spec = obj.get("spec") or {}
        if self._node_name and spec.get("nodeName") == self._node_name:
            # Freshly scheduled onto this node; its logs are about to arrive.
            self._cache.set(key, self._parse(obj))
            self._stats.bump("pod_cache_host_updates")
        else:
            self._stats.bump("pod_cache_watch_misses")
