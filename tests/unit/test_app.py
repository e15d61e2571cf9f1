"""Tests for kubemeta.app: KubeMetaApp wiring and lifecycle.

The Kubernetes API is a MagicMock injected through ``api_factory`` so no
cluster credentials are loaded; watch streams are replaced by a fake that
blocks until cancelled.
"""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from kubernetes_asyncio.client.exceptions import ApiException

from kubemeta.app import KubeMetaApp, _ComponentError
from kubemeta.cache.resolver import IdentityResolver, SimpleResolver
from kubemeta.errors import ReconcilerFatalError
from kubemeta.models.config import CacheConfig, KubeMetaConfig, ParsingConfig
from kubemeta.models.metadata import CacheStrategy

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_api() -> MagicMock:
    api = MagicMock()
    api.read_namespaced_pod = AsyncMock(
        return_value={
            "metadata": {"name": "web", "namespace": "shop", "uid": "P"},
            "spec": {"nodeName": "node-a"},
            "status": {},
        }
    )
    api.read_namespace = AsyncMock(
        return_value={"metadata": {"name": "shop", "uid": "N", "creationTimestamp": "2024-01-01T00:00:00Z"}}
    )
    api.list_pod_for_all_namespaces = AsyncMock(return_value={"items": [], "metadata": {"resourceVersion": "1"}})
    api.list_namespace = AsyncMock(return_value={"items": [], "metadata": {"resourceVersion": "1"}})
    api.api_client.close = AsyncMock()
    return api


class _BlockingWatch:
    def stream(self, func: Any, **kwargs: Any) -> Any:
        return self._gen()

    async def _gen(self) -> Any:
        await asyncio.Event().wait()
        yield {}

    async def close(self) -> None:
        pass


def _app(config: KubeMetaConfig | None = None, api: MagicMock | None = None) -> tuple[KubeMetaApp, MagicMock]:
    api = api or _make_api()
    return KubeMetaApp(config=config or KubeMetaConfig(), api_factory=lambda: api), api


# ---------------------------------------------------------------------------
# Startup / resolve
# ---------------------------------------------------------------------------


class TestStartWithoutWatchers:
    async def test_identity_resolver_by_default(self) -> None:
        app, _ = _app()
        await app.start(run_watchers=False)
        try:
            assert app.running
            assert isinstance(app.resolver, IdentityResolver)
            assert app.reconcilers == []
        finally:
            await app.stop()
        assert not app.running

    async def test_simple_resolver_selected(self) -> None:
        app, _ = _app(KubeMetaConfig(cache=CacheConfig(strategy=CacheStrategy.SIMPLE)))
        await app.start(run_watchers=False)
        try:
            assert isinstance(app.resolver, SimpleResolver)
        finally:
            await app.stop()

    async def test_resolve_delegates_to_resolver(self) -> None:
        app, api = _app()
        await app.start(run_watchers=False)
        try:
            result = await app.resolve("k1", "shop", "web")
        finally:
            await app.stop()
        assert result["pod_id"] == "P"
        assert result["namespace_id"] == "N"
        api.read_namespaced_pod.assert_awaited_once()

    async def test_resolve_before_start_raises(self) -> None:
        app, _ = _app()
        with pytest.raises(RuntimeError):
            await app.resolve("k1", "shop", "web")

    async def test_new_batch_is_fresh(self) -> None:
        app, _ = _app()
        first = app.new_batch()
        first["x"] = {}
        assert app.new_batch() == {}

    async def test_stop_without_start_is_safe(self) -> None:
        app, _ = _app()
        await app.stop()


class TestReportStats:
    async def test_sizes_published(self) -> None:
        app, _ = _app()
        await app.start(run_watchers=False)
        try:
            await app.resolve("k1", "shop", "web")
            app.report_stats()
            assert app.stats["pod_cache_size"] == 1
            assert app.stats["id_cache_size"] == 1
        finally:
            await app.stop()


# ---------------------------------------------------------------------------
# Reconcilers
# ---------------------------------------------------------------------------


class TestReconcilers:
    async def test_pod_and_namespace_reconcilers_started(self) -> None:
        app, api = _app()
        with patch("kubemeta.collector.fetcher.watch.Watch", return_value=_BlockingWatch()):
            await app.start()
            try:
                assert [r.kind for r in app.reconcilers] == ["pod", "namespace"]
            finally:
                await app.stop()
        api.list_pod_for_all_namespaces.assert_awaited_once()
        api.list_namespace.assert_awaited_once()

    async def test_namespace_reconciler_skipped_when_namespace_metadata_skipped(self) -> None:
        app, _ = _app(
            KubeMetaConfig(
                cache=CacheConfig(strategy=CacheStrategy.SIMPLE),
                parsing=ParsingConfig(skip_namespace_metadata=True),
            )
        )
        with patch("kubemeta.collector.fetcher.watch.Watch", return_value=_BlockingWatch()):
            await app.start()
            try:
                assert [r.kind for r in app.reconcilers] == ["pod"]
            finally:
                await app.stop()

    async def test_identity_strategy_keeps_namespace_reconciler(self) -> None:
        app, _ = _app(KubeMetaConfig(parsing=ParsingConfig(skip_namespace_metadata=True)))
        with patch("kubemeta.collector.fetcher.watch.Watch", return_value=_BlockingWatch()):
            await app.start()
            try:
                assert [r.kind for r in app.reconcilers] == ["pod", "namespace"]
            finally:
                await app.stop()

    async def test_initial_list_failure_is_component_error(self) -> None:
        api = _make_api()
        api.list_pod_for_all_namespaces.side_effect = ApiException(status=403, reason="Forbidden")
        app, _ = _app(api=api)

        with pytest.raises(_ComponentError) as exc_info:
            await app.start()
        assert exc_info.value.component == "pod_reconciler"
        await app.stop()

    async def test_fatal_reconciler_triggers_shutdown(self) -> None:
        app, _ = _app()
        await app.start(run_watchers=False)

        async def _fail() -> None:
            raise ReconcilerFatalError("retries exhausted")

        task = asyncio.create_task(_fail())
        await asyncio.gather(task, return_exceptions=True)
        app._on_reconciler_done(task)
        await app.wait_shutdown()

        assert isinstance(app.fatal_error, ReconcilerFatalError)
        assert not app.running
