"""Hot-path metadata resolution.

Turns a container/pod identity into merged pod + namespace metadata using the
shared :class:`~kubemeta.cache.store.MetadataStore`, fetching from the API on
a miss.  Two interchangeable strategies exist:

IdentityResolver
    Keyed by an opaque identity (typically a container id).  Keeps an identity
    cache mapping that identity to pod/namespace UIDs, and handles deleted
    pods, recreated namespaces and orphaned records.

SimpleResolver
    Keyed directly by ``<namespace>_<pod>``; no identity cache and no orphan
    sentinel.

Both suppress repeated remote misses within one input batch through the
caller-owned ``batch_miss_cache`` (see :func:`new_batch`).
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from kubemeta.cache.store import MetadataStore
from kubemeta.collector.fetcher import MetadataFetcher
from kubemeta.models.metadata import BatchMissCache, IdentityRecord, Metadata, batch_key
from kubemeta.observability.logging import get_logger
from kubemeta.observability.metrics import resolve_duration_seconds
from kubemeta.observability.stats import Stats

_INTERNAL_KEYS: tuple[str, ...] = ("creation_timestamp",)


def new_batch() -> BatchMissCache:
    """Return an empty miss cache for one input batch."""
    return {}


class MetadataResolver(ABC):
    """Common interface for the resolver strategies."""

    strategy: str = "base"

    def __init__(self, store: MetadataStore, fetcher: MetadataFetcher, stats: Stats) -> None:
        self._store = store
        self._fetcher = fetcher
        self._stats = stats
        self._log = get_logger(f"resolver.{self.strategy}")

    @abstractmethod
    async def resolve(
        self,
        identity_key: str,
        namespace_name: str,
        pod_name: str,
        record_time: datetime,
        batch_miss_cache: BatchMissCache,
    ) -> Metadata:
        """Return merged metadata for one identity.

        Args:
            identity_key: Container/pod identity extracted from the record.
            namespace_name: Namespace extracted from the record.
            pod_name: Pod name extracted from the record.
            record_time: When the record was produced.
            batch_miss_cache: Per-batch miss cache; see :func:`new_batch`.
        """


class IdentityResolver(MetadataResolver):
    """Identity-indexed strategy with orphan and partial-miss handling."""

    strategy = "identity"

    def __init__(
        self,
        store: MetadataStore,
        fetcher: MetadataFetcher,
        stats: Stats,
        allow_orphans: bool = True,
        orphaned_namespace_name: str = ".orphaned",
        orphaned_namespace_id: str = "orphaned",
    ) -> None:
        super().__init__(store, fetcher, stats)
        self._allow_orphans = allow_orphans
        self._orphaned_namespace_name = orphaned_namespace_name
        self._orphaned_namespace_id = orphaned_namespace_id

    async def resolve(
        self,
        identity_key: str,
        namespace_name: str,
        pod_name: str,
        record_time: datetime,
        batch_miss_cache: BatchMissCache,
    ) -> Metadata:
        miss_key = batch_key(namespace_name, pod_name)
        if miss_key in batch_miss_cache:
            return batch_miss_cache[miss_key]

        started = time.perf_counter()
        ids = self._store.identities.get(identity_key)
        if ids is not None:
            metadata = await self._fast_path(ids, namespace_name, pod_name)
            path = "fast"
        else:
            metadata = await self._slow_path(identity_key, namespace_name, pod_name, record_time, batch_miss_cache)
            path = "slow"
        resolve_duration_seconds.labels(strategy=self.strategy, path=path).observe(time.perf_counter() - started)
        return metadata

    async def _fast_path(self, ids: IdentityRecord, namespace_name: str, pod_name: str) -> Metadata:
        metadata: Metadata = {}
        if ids.pod_id is not None:
            pod_id = ids.pod_id

            async def compute_pod() -> Metadata:
                self._stats.bump("pod_cache_miss")
                fetched = await self._fetcher.fetch_pod_metadata(namespace_name, pod_name)
                return fetched or {"pod_id": pod_id}

            metadata.update(await self._store.pods.get_or_compute(pod_id, compute_pod))

        if ids.namespace_id is not None:
            namespace_id = ids.namespace_id

            async def compute_namespace() -> Metadata:
                self._stats.bump("namespace_cache_miss")
                fetched = await self._fetcher.fetch_namespace_metadata(namespace_name)
                return fetched or {"namespace_id": namespace_id}

            metadata.update(await self._store.namespaces.get_or_compute(namespace_id, compute_namespace))

        return _finalize(metadata)

    async def _slow_path(
        self,
        identity_key: str,
        namespace_name: str,
        pod_name: str,
        record_time: datetime,
        batch_miss_cache: BatchMissCache,
    ) -> Metadata:
        self._stats.bump("id_cache_miss")
        pod_metadata = await self._fetcher.fetch_pod_metadata(namespace_name, pod_name)
        namespace_metadata = await self._fetcher.fetch_namespace_metadata(namespace_name)
        pod_id = pod_metadata.get("pod_id")
        namespace_id = namespace_metadata.get("namespace_id")
        miss_key = batch_key(namespace_name, pod_name)

        if pod_id is not None and namespace_id is not None:
            self._store.pods.set(pod_id, pod_metadata)
            self._store.namespaces.set(namespace_id, namespace_metadata)
            self._store.identities.set(identity_key, IdentityRecord(pod_id=pod_id, namespace_id=namespace_id))
            return _finalize({**pod_metadata, **namespace_metadata})

        if pod_id is None and namespace_id is not None:
            self._stats.bump("id_cache_pod_not_found_namespace")
            created = _parse_timestamp(namespace_metadata.get("creation_timestamp"))
            if created is None or created <= _aware(record_time):
                # Namespace predates the record: the pod was most likely deleted
                # after logging, so key the stub on the identity itself.
                stub = await self._store.pods.get_or_compute(identity_key, lambda: {"pod_id": identity_key})
                self._store.namespaces.set(namespace_id, namespace_metadata)
                self._store.identities.set(
                    identity_key, IdentityRecord(pod_id=identity_key, namespace_id=namespace_id)
                )
                return _finalize({**stub, **namespace_metadata})
            # Namespace is newer than the record: the name was reused after the
            # original namespace went away.  No identity record is kept.
            metadata = _finalize(dict(namespace_metadata))
            batch_miss_cache[miss_key] = metadata
            return metadata

        if pod_id is not None:
            self._stats.bump("id_cache_namespace_not_found_pod")
        else:
            self._stats.bump("id_cache_orphaned_record")

        if self._allow_orphans:
            self._log.debug("record_orphaned", namespace=namespace_name, pod=pod_name)
            metadata = {
                "orphaned_namespace": namespace_name,
                "namespace_name": self._orphaned_namespace_name,
                "namespace_id": self._orphaned_namespace_id,
            }
        else:
            metadata = {}
        metadata = _finalize(metadata)
        batch_miss_cache[miss_key] = metadata
        return metadata


class SimpleResolver(MetadataResolver):
    """Strategy keyed directly by ``<namespace>_<pod>``."""

    strategy = "simple"

    def __init__(
        self,
        store: MetadataStore,
        fetcher: MetadataFetcher,
        stats: Stats,
        skip_namespace_metadata: bool = False,
    ) -> None:
        super().__init__(store, fetcher, stats)
        self._skip_namespace_metadata = skip_namespace_metadata

    async def resolve(
        self,
        identity_key: str,
        namespace_name: str,
        pod_name: str,
        record_time: datetime,
        batch_miss_cache: BatchMissCache,
    ) -> Metadata:
        cache_key = batch_key(namespace_name, pod_name)
        if cache_key in batch_miss_cache:
            return batch_miss_cache[cache_key]

        async def compute() -> Metadata:
            self._stats.bump("pod_cache_miss")
            pod_metadata = await self._fetcher.fetch_pod_metadata(namespace_name, pod_name)
            namespace_metadata: Metadata = {}
            if not self._skip_namespace_metadata:
                namespace_metadata = await self._store.namespaces.get_or_compute(
                    namespace_name, lambda: self._fetch_namespace(namespace_name)
                )
            merged = {**pod_metadata, **namespace_metadata}
            if not pod_metadata:
                batch_miss_cache[cache_key] = _finalize(merged)
            return merged

        started = time.perf_counter()
        metadata = _finalize(await self._store.pods.get_or_compute(cache_key, compute))
        resolve_duration_seconds.labels(strategy=self.strategy, path="cache").observe(time.perf_counter() - started)
        return metadata

    async def _fetch_namespace(self, namespace_name: str) -> Metadata:
        self._stats.bump("namespace_cache_miss")
        return await self._fetcher.fetch_namespace_metadata(namespace_name)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _finalize(metadata: Metadata) -> Metadata:
    """Return a copy without internal-only keys and without ``None`` values."""
    return {k: v for k, v in metadata.items() if k not in _INTERNAL_KEYS and v is not None}


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp (``2024-01-15T10:30:00Z``) or pass a datetime through."""
    if isinstance(value, datetime):
        return _aware(value)
    if not value:
        return None
    try:
        return _aware(datetime.fromisoformat(str(value)))
    except ValueError:
        return None
