"""The three metadata caches shared by the resolver and the reconcilers."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from kubemeta.cache.bounded_cache import BoundedCache
from kubemeta.models.metadata import CacheStrategy, IdentityRecord, Metadata, batch_key
from kubemeta.observability.stats import Stats


class MetadataStore:
    """Identity, pod and namespace caches with a common capacity and TTL.

    The cache keys depend on the resolver strategy:

    ``identity``
        pods keyed by UID, namespaces keyed by UID, identities keyed by the
        container/pod identity string.
    ``simple``
        pods keyed by ``<namespace>_<pod>``, namespaces keyed by name; the
        identity cache is unused.
    """

    def __init__(
        self,
        capacity: int,
        ttl: float | None,
        strategy: CacheStrategy = CacheStrategy.IDENTITY,
        timer: Callable[[], float] | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {"timer": timer} if timer is not None else {}
        self.strategy = strategy
        self.identities: BoundedCache[str, IdentityRecord] = BoundedCache(capacity, ttl, name="id_cache", **kwargs)
        self.pods: BoundedCache[str, Metadata] = BoundedCache(capacity, ttl, name="pod_cache", **kwargs)
        self.namespaces: BoundedCache[str, Metadata] = BoundedCache(capacity, ttl, name="namespace_cache", **kwargs)

    def pod_key(self, pod: dict[str, Any]) -> str | None:
        """Return the pod-cache key for a JSON-shaped pod object."""
        metadata = pod.get("metadata") or {}
        if self.strategy is CacheStrategy.SIMPLE:
            namespace = metadata.get("namespace")
            name = metadata.get("name")
            return batch_key(namespace, name) if namespace and name else None
        uid = metadata.get("uid")
        return str(uid) if uid else None

    def namespace_key(self, namespace: dict[str, Any]) -> str | None:
        """Return the namespace-cache key for a JSON-shaped namespace object."""
        metadata = namespace.get("metadata") or {}
        key = metadata.get("name") if self.strategy is CacheStrategy.SIMPLE else metadata.get("uid")
        return str(key) if key else None

    def caches(self) -> tuple[BoundedCache[str, Any], ...]:
        return (self.identities, self.pods, self.namespaces)

    def report_sizes(self, stats: Stats) -> None:
        """Publish cache sizes as gauges."""
        stats.set("id_cache_size", self.identities.emit_size_metric())
        stats.set("pod_cache_size", self.pods.emit_size_metric())
        stats.set("namespace_cache_size", self.namespaces.emit_size_metric())
