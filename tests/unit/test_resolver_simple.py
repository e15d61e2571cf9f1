"""Tests for kubemeta.cache.resolver.SimpleResolver."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

from kubemeta.cache.resolver import SimpleResolver, new_batch
from kubemeta.cache.store import MetadataStore
from kubemeta.models.metadata import CacheStrategy, Metadata
from kubemeta.observability.stats import Stats

_RECORD_TIME = datetime(2024, 6, 1, tzinfo=UTC)


class _FakeFetcher:
    def __init__(self, pods: dict[tuple[str, str], Metadata], namespaces: dict[str, Metadata]) -> None:
        self.pods = pods
        self.namespaces = namespaces
        self.pod_calls = 0
        self.namespace_calls = 0

    async def fetch_pod_metadata(self, namespace_name: str, pod_name: str) -> Metadata:
        self.pod_calls += 1
        await asyncio.sleep(0)
        return dict(self.pods.get((namespace_name, pod_name), {}))

    async def fetch_namespace_metadata(self, namespace_name: str) -> Metadata:
        self.namespace_calls += 1
        return dict(self.namespaces.get(namespace_name, {}))


def _make(fetcher: _FakeFetcher, skip_namespace_metadata: bool = False) -> tuple[SimpleResolver, MetadataStore, Stats]:
    store = MetadataStore(100, ttl=None, strategy=CacheStrategy.SIMPLE)
    stats = Stats()
    resolver = SimpleResolver(store, fetcher, stats, skip_namespace_metadata=skip_namespace_metadata)  # type: ignore[arg-type]
    return resolver, store, stats


def _fetcher() -> _FakeFetcher:
    return _FakeFetcher(
        pods={
            ("shop", "web"): {"pod_id": "P1", "pod_name": "web"},
            ("shop", "api"): {"pod_id": "P2", "pod_name": "api"},
        },
        namespaces={"shop": {"namespace_id": "N", "creation_timestamp": "2024-01-01T00:00:00Z"}},
    )


class TestSimpleResolver:
    async def test_miss_fetches_and_merges(self) -> None:
        resolver, store, stats = _make(_fetcher())

        result = await resolver.resolve("ignored", "shop", "web", _RECORD_TIME, new_batch())

        assert result == {"pod_id": "P1", "pod_name": "web", "namespace_id": "N"}
        assert "shop_web" in store.pods
        assert "shop" in store.namespaces
        assert stats["pod_cache_miss"] == 1
        assert stats["namespace_cache_miss"] == 1

    async def test_hit_does_not_fetch(self) -> None:
        fetcher = _fetcher()
        resolver, _, _ = _make(fetcher)

        await resolver.resolve("x", "shop", "web", _RECORD_TIME, new_batch())
        await resolver.resolve("x", "shop", "web", _RECORD_TIME, new_batch())

        assert fetcher.pod_calls == 1

    async def test_namespace_shared_across_pods(self) -> None:
        fetcher = _fetcher()
        resolver, _, _ = _make(fetcher)

        await resolver.resolve("x", "shop", "web", _RECORD_TIME, new_batch())
        result = await resolver.resolve("y", "shop", "api", _RECORD_TIME, new_batch())

        assert result["namespace_id"] == "N"
        assert fetcher.namespace_calls == 1

    async def test_skip_namespace_metadata(self) -> None:
        fetcher = _fetcher()
        resolver, _, _ = _make(fetcher, skip_namespace_metadata=True)

        result = await resolver.resolve("x", "shop", "web", _RECORD_TIME, new_batch())

        assert result == {"pod_id": "P1", "pod_name": "web"}
        assert fetcher.namespace_calls == 0

    async def test_missing_pod_recorded_in_batch(self) -> None:
        fetcher = _fetcher()
        resolver, _, _ = _make(fetcher)
        batch = new_batch()

        result = await resolver.resolve("x", "shop", "gone", _RECORD_TIME, batch)

        assert result == {"namespace_id": "N"}
        assert batch["shop_gone"] == result

    async def test_concurrent_misses_fetch_once(self) -> None:
        fetcher = _fetcher()
        resolver, _, _ = _make(fetcher)

        results = await asyncio.gather(
            resolver.resolve("x", "shop", "web", _RECORD_TIME, new_batch()),
            resolver.resolve("x", "shop", "web", _RECORD_TIME, new_batch()),
        )

        assert results[0] == results[1]
        assert fetcher.pod_calls == 1
