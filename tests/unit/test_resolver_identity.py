"""Tests for kubemeta.cache.resolver.IdentityResolver.

Covers the fast path (identity record cached), the slow path (both found,
namespace-only with older/newer namespace, pod-only, nothing found),
orphan handling, and batch-miss suppression of repeated remote lookups.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from kubemeta.cache.resolver import IdentityResolver, new_batch
from kubemeta.cache.store import MetadataStore
from kubemeta.models.metadata import IdentityRecord, Metadata
from kubemeta.observability.stats import Stats

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_RECORD_TIME = datetime(2024, 6, 1, tzinfo=UTC)


class _FakeFetcher:
    """In-memory stand-in for MetadataFetcher's hot-path helpers."""

    def __init__(
        self,
        pods: dict[tuple[str, str], Metadata] | None = None,
        namespaces: dict[str, Metadata] | None = None,
    ) -> None:
        self.pods = pods or {}
        self.namespaces = namespaces or {}
        self.pod_calls = 0
        self.namespace_calls = 0

    async def fetch_pod_metadata(self, namespace_name: str, pod_name: str) -> Metadata:
        self.pod_calls += 1
        return dict(self.pods.get((namespace_name, pod_name), {}))

    async def fetch_namespace_metadata(self, namespace_name: str) -> Metadata:
        self.namespace_calls += 1
        return dict(self.namespaces.get(namespace_name, {}))


def _make(fetcher: _FakeFetcher, **kwargs: Any) -> tuple[IdentityResolver, MetadataStore, Stats]:
    store = MetadataStore(100, ttl=None)
    stats = Stats()
    return IdentityResolver(store, fetcher, stats, **kwargs), store, stats  # type: ignore[arg-type]


_POD = {"pod_id": "P", "pod_name": "web", "namespace_name": "shop", "host": "node-a"}
_NAMESPACE = {"namespace_id": "N", "creation_timestamp": "2024-01-01T00:00:00Z", "namespace_labels": {"a": "b"}}


# ---------------------------------------------------------------------------
# Fast path
# ---------------------------------------------------------------------------


class TestFastPath:
    async def test_served_from_cache(self) -> None:
        fetcher = _FakeFetcher()
        resolver, store, _ = _make(fetcher)
        store.identities.set("k1", IdentityRecord(pod_id="P", namespace_id="N"))
        store.pods.set("P", {"pod_id": "P", "pod_name": "web"})
        store.namespaces.set("N", {"namespace_id": "N", "namespace_labels": {"a": "b"}})

        result = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())

        assert result == {"pod_id": "P", "pod_name": "web", "namespace_id": "N", "namespace_labels": {"a": "b"}}
        assert fetcher.pod_calls == 0
        assert fetcher.namespace_calls == 0

    async def test_evicted_pod_refetched(self) -> None:
        fetcher = _FakeFetcher(pods={("shop", "web"): dict(_POD)})
        resolver, store, stats = _make(fetcher)
        store.identities.set("k1", IdentityRecord(pod_id="P", namespace_id="N"))
        store.namespaces.set("N", {"namespace_id": "N"})

        result = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())

        assert result["host"] == "node-a"
        assert stats["pod_cache_miss"] == 1
        assert store.pods.get("P") == _POD

    async def test_deleted_pod_falls_back_to_stub(self) -> None:
        fetcher = _FakeFetcher()
        resolver, store, _ = _make(fetcher)
        store.identities.set("k1", IdentityRecord(pod_id="P", namespace_id="N"))
        store.namespaces.set("N", {"namespace_id": "N"})

        result = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())

        assert result == {"pod_id": "P", "namespace_id": "N"}

    async def test_creation_timestamp_not_returned(self) -> None:
        fetcher = _FakeFetcher()
        resolver, store, _ = _make(fetcher)
        store.identities.set("k1", IdentityRecord(pod_id="P", namespace_id="N"))
        store.pods.set("P", {"pod_id": "P"})
        store.namespaces.set("N", dict(_NAMESPACE))

        result = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())

        assert "creation_timestamp" not in result


# ---------------------------------------------------------------------------
# Slow path
# ---------------------------------------------------------------------------


class TestSlowPath:
    async def test_both_found_caches_identity(self) -> None:
        fetcher = _FakeFetcher(pods={("shop", "web"): dict(_POD)}, namespaces={"shop": dict(_NAMESPACE)})
        resolver, store, stats = _make(fetcher)

        result = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())

        assert result == {
            "pod_id": "P",
            "pod_name": "web",
            "namespace_name": "shop",
            "host": "node-a",
            "namespace_id": "N",
            "namespace_labels": {"a": "b"},
        }
        assert store.identities.get("k1") == IdentityRecord(pod_id="P", namespace_id="N")
        assert stats["id_cache_miss"] == 1

    async def test_second_resolve_uses_fast_path(self) -> None:
        fetcher = _FakeFetcher(pods={("shop", "web"): dict(_POD)}, namespaces={"shop": dict(_NAMESPACE)})
        resolver, _, stats = _make(fetcher)

        first = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())
        second = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())

        assert first == second
        assert fetcher.pod_calls == 1
        assert fetcher.namespace_calls == 1
        assert stats["id_cache_miss"] == 1

    async def test_pod_gone_namespace_older_than_record(self) -> None:
        fetcher = _FakeFetcher(namespaces={"shop": {"namespace_id": "N", "creation_timestamp": "2024-01-01T00:00:00Z"}})
        resolver, store, stats = _make(fetcher)

        result = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())

        assert result == {"pod_id": "k1", "namespace_id": "N"}
        assert store.identities.get("k1") == IdentityRecord(pod_id="k1", namespace_id="N")
        assert store.pods.get("k1") == {"pod_id": "k1"}
        assert stats["id_cache_pod_not_found_namespace"] == 1

    async def test_pod_gone_namespace_newer_than_record(self) -> None:
        fetcher = _FakeFetcher(namespaces={"shop": {"namespace_id": "N2", "creation_timestamp": "2024-12-01T00:00:00Z"}})
        resolver, store, stats = _make(fetcher)
        batch = new_batch()

        result = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, batch)

        assert result == {"namespace_id": "N2"}
        assert store.identities.get("k1") is None
        assert batch["shop_web"] == result
        assert stats["id_cache_pod_not_found_namespace"] == 1

    async def test_naive_record_time_treated_as_utc(self) -> None:
        fetcher = _FakeFetcher(namespaces={"shop": {"namespace_id": "N", "creation_timestamp": "2024-01-01T00:00:00Z"}})
        resolver, _, _ = _make(fetcher)

        result = await resolver.resolve("k1", "shop", "web", datetime(2024, 6, 1), new_batch())

        assert result == {"pod_id": "k1", "namespace_id": "N"}


# ---------------------------------------------------------------------------
# Orphans
# ---------------------------------------------------------------------------


class TestOrphans:
    async def test_nothing_found_returns_orphan_sentinel(self) -> None:
        fetcher = _FakeFetcher()
        resolver, store, stats = _make(fetcher)

        result = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())

        assert result == {"orphaned_namespace": "shop", "namespace_name": ".orphaned", "namespace_id": "orphaned"}
        assert stats["id_cache_orphaned_record"] == 1
        assert store.identities.get("k1") is None

    async def test_custom_orphan_names(self) -> None:
        resolver, _, _ = _make(_FakeFetcher(), orphaned_namespace_name="lost", orphaned_namespace_id="lost-id")
        result = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())
        assert result["namespace_name"] == "lost"
        assert result["namespace_id"] == "lost-id"

    async def test_orphans_disabled_returns_empty(self) -> None:
        resolver, _, _ = _make(_FakeFetcher(), allow_orphans=False)
        assert await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch()) == {}

    async def test_pod_without_namespace_is_orphaned(self) -> None:
        fetcher = _FakeFetcher(pods={("shop", "web"): dict(_POD)})
        resolver, _, stats = _make(fetcher)

        result = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())

        assert result["namespace_id"] == "orphaned"
        assert stats["id_cache_namespace_not_found_pod"] == 1


# ---------------------------------------------------------------------------
# Batch-miss cache
# ---------------------------------------------------------------------------


class TestBatchMissCache:
    async def test_repeat_in_batch_skips_fetch(self) -> None:
        fetcher = _FakeFetcher()
        resolver, _, _ = _make(fetcher)
        batch = new_batch()

        first = await resolver.resolve("k1", "shop", "web", _RECORD_TIME, batch)
        second = await resolver.resolve("k2", "shop", "web", _RECORD_TIME, batch)

        assert first == second
        assert fetcher.pod_calls == 1
        assert fetcher.namespace_calls == 1

    async def test_new_batch_fetches_again(self) -> None:
        fetcher = _FakeFetcher()
        resolver, _, _ = _make(fetcher)

        await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())
        await resolver.resolve("k1", "shop", "web", _RECORD_TIME, new_batch())

        assert fetcher.pod_calls == 2
