"""Application bootstrap for kubemeta.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → metadata store → fetcher
              → checkpoint → resolver → reconcilers → stats reporter

Shutdown is fully graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that a
single component failure does not prevent the rest from shutting down cleanly.
A reconciler that exhausts its retries triggers shutdown and a non-zero exit.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from kubemeta.config import load_config
from kubemeta.errors import ReconcilerFatalError, ReconcilerStartupError
from kubemeta.models.config import KubeMetaConfig
from kubemeta.models.metadata import BatchMissCache, CacheStrategy, Metadata
from kubemeta.observability.logging import get_logger, setup_logging
from kubemeta.observability.stats import Stats

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from kubemeta.cache.checkpoint import CheckpointStore
    from kubemeta.cache.resolver import MetadataResolver
    from kubemeta.cache.store import MetadataStore
    from kubemeta.collector.fetcher import MetadataFetcher
    from kubemeta.collector.parsing import MetadataParser
    from kubemeta.collector.watcher import BaseReconciler

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class KubeMetaApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Args:
        config: Preloaded configuration; read from the environment when omitted.
        api_factory: Builds a ``CoreV1Api``.  When given, cluster credentials
            are not loaded and the factory is also used for client refreshes.
    """

    def __init__(
        self,
        config: KubeMetaConfig | None = None,
        api_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.config: KubeMetaConfig | None = config
        self.stats = Stats()
        self.fatal_error: BaseException | None = None

        self._api_factory = api_factory
        self._master_url: str = ""
        self._k8s_client: bool | None = None
        self._store: MetadataStore | None = None
        self._parser: MetadataParser | None = None
        self._fetcher: MetadataFetcher | None = None
        self._checkpoint: CheckpointStore | None = None
        self._resolver: MetadataResolver | None = None
        self._reconcilers: list[BaseReconciler] = []

        # Background tasks that must be cancelled on shutdown
        self._background_tasks: list[asyncio.Task[None]] = []
        self._shutdown_task: asyncio.Task[None] | None = None

        self._running = False
        self._stopping = False
        self._log: FilteringBoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def store(self) -> MetadataStore | None:
        return self._store

    @property
    def resolver(self) -> MetadataResolver | None:
        return self._resolver

    @property
    def reconcilers(self) -> list[BaseReconciler]:
        return list(self._reconcilers)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self, run_watchers: bool = True) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        The caller (main()) re-raises this as a non-zero exit.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("kubemeta starting", version=_kubemeta_version())

        # --- 3. Kubernetes client ----------------------------------------
        await self._start_k8s_client()

        # --- 4. Metadata store -------------------------------------------
        self._start_store()

        # --- 5. Fetcher --------------------------------------------------
        await self._start_fetcher()

        # --- 6. Checkpoint (optional) ------------------------------------
        await self._start_checkpoint()

        # --- 7. Resolver -------------------------------------------------
        self._start_resolver()

        # --- 8. Reconcilers ----------------------------------------------
        if run_watchers and self.config.watch.enabled:
            await self._start_reconcilers()

        # --- 9. Stats reporter -------------------------------------------
        self._start_stats_reporter()

        self._running = True
        self._log.info("kubemeta started", strategy=self.config.cache.strategy.value)

    # ------------------------------------------------------------------
    # Hot-path API
    # ------------------------------------------------------------------

    def new_batch(self) -> BatchMissCache:
        """Return a fresh per-batch miss cache."""
        from kubemeta.cache.resolver import new_batch

        return new_batch()

    async def resolve(
        self,
        identity_key: str,
        namespace_name: str,
        pod_name: str,
        record_time: datetime | None = None,
        batch_miss_cache: BatchMissCache | None = None,
    ) -> Metadata:
        """Resolve metadata for one record through the configured resolver."""
        if self._resolver is None:
            raise RuntimeError("kubemeta app is not started")
        return await self._resolver.resolve(
            identity_key,
            namespace_name,
            pod_name,
            record_time if record_time is not None else datetime.now(tz=UTC),
            batch_miss_cache if batch_miss_cache is not None else self.new_batch(),
        )

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_k8s_client(self) -> None:
        """Load credentials from in-cluster config or kubeconfig."""
        assert self._log is not None
        assert self.config is not None
        if self._api_factory is not None:
            self._master_url = self.config.kubernetes.url
            self._k8s_client = True
            return
        self._log.debug("starting k8s client")
        try:
            await self._load_credentials()
            self._k8s_client = True
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _load_credentials(self) -> None:
        assert self._log is not None
        assert self.config is not None
        # Import lazily; kubernetes-asyncio attempts cluster auto-detection
        # on import in some versions.
        import kubernetes_asyncio.config as k8s_config
        from kubernetes_asyncio import client as k8s_client

        try:
            # load_incluster_config() is synchronous in kubernetes-asyncio
            k8s_config.load_incluster_config()  # type: ignore[no-untyped-call]
            self._log.info("k8s client configured from in-cluster service account")
        except k8s_config.ConfigException:
            # load_kube_config() is async in kubernetes-asyncio
            await k8s_config.load_kube_config()
            self._log.info("k8s client configured from kubeconfig")

        configuration = k8s_client.Configuration.get_default_copy()
        if self.config.kubernetes.url:
            configuration.host = self.config.kubernetes.url
            k8s_client.Configuration.set_default(configuration)
        self._master_url = str(configuration.host or "")

    def _build_api(self) -> Any:
        from kubernetes_asyncio import client as k8s_client

        return k8s_client.CoreV1Api(k8s_client.ApiClient())

    async def _refresh_api(self) -> Any:
        """Reload credentials (e.g. a rotated service-account token) and build a new client."""
        if self._api_factory is not None:
            return self._api_factory()
        await self._load_credentials()
        return self._build_api()

    def _start_store(self) -> None:
        from kubemeta.cache.store import MetadataStore

        assert self.config is not None
        cfg = self.config.cache
        self._store = MetadataStore(cfg.size, cfg.ttl_seconds, strategy=cfg.strategy)

    async def _start_fetcher(self) -> None:
        from kubemeta.collector.fetcher import MetadataFetcher
        from kubemeta.collector.parsing import MetadataParser

        assert self._log is not None
        assert self.config is not None
        parsing = self.config.parsing
        parser = MetadataParser(
            annotation_match=parsing.annotation_match,
            skip_labels=parsing.skip_labels,
            skip_container_metadata=parsing.skip_container_metadata,
            skip_master_url=parsing.skip_master_url,
            master_url=self._master_url,
        )
        try:
            api = self._api_factory() if self._api_factory is not None else self._build_api()
        except Exception as exc:
            raise _ComponentError("fetcher", exc) from exc
        self._fetcher = MetadataFetcher(
            api,
            parser,
            self.stats,
            api_factory=self._refresh_api,
            open_timeout=self.config.kubernetes.open_timeout,
            read_timeout=self.config.kubernetes.read_timeout,
            watch_timeout=self.config.watch.timeout_seconds,
        )
        self._parser = parser
        self._log.debug("fetcher started")

    async def _start_checkpoint(self) -> None:
        """Open the checkpoint database and restore cached entries (non-fatal)."""
        assert self._log is not None
        assert self.config is not None
        assert self._store is not None
        if not self.config.checkpoint.enabled:
            return
        from kubemeta.cache.checkpoint import CheckpointStore

        checkpoint = CheckpointStore(
            self.config.checkpoint.db_path,
            self.config.cache.ttl_seconds,
            interval_seconds=self.config.checkpoint.interval_seconds,
        )
        try:
            await checkpoint.open()
            await checkpoint.restore(self._store)
        except Exception as exc:
            self._log.error("checkpoint unavailable; continuing without it", error=str(exc))
            await self._stop_component("checkpoint", _Closer(checkpoint))
            return
        checkpoint.start(self._store)
        self._checkpoint = checkpoint
        self._log.info("checkpoint started", db_path=self.config.checkpoint.db_path)

    def _start_resolver(self) -> None:
        from kubemeta.cache.resolver import IdentityResolver, SimpleResolver

        assert self.config is not None
        assert self._store is not None
        assert self._fetcher is not None
        if self.config.cache.strategy is CacheStrategy.SIMPLE:
            self._resolver = SimpleResolver(
                self._store,
                self._fetcher,
                self.stats,
                skip_namespace_metadata=self.config.parsing.skip_namespace_metadata,
            )
        else:
            self._resolver = IdentityResolver(
                self._store,
                self._fetcher,
                self.stats,
                allow_orphans=self.config.orphans.allow,
                orphaned_namespace_name=self.config.orphans.namespace_name,
                orphaned_namespace_id=self.config.orphans.namespace_id,
            )

    async def _start_reconcilers(self) -> None:
        """Start the pod and namespace reconcilers; an initial list failure is fatal."""
        from kubemeta.collector.namespace_reconciler import NamespaceReconciler
        from kubemeta.collector.pod_reconciler import PodReconciler

        assert self._log is not None
        assert self.config is not None
        assert self._store is not None
        assert self._fetcher is not None
        assert self._parser is not None
        watch = self.config.watch
        backoff = {
            "retry_interval": watch.retry_interval,
            "backoff_base": watch.exponential_backoff_base,
            "max_retries": watch.max_retries,
        }
        reconcilers: list[BaseReconciler] = [
            PodReconciler(self._fetcher, self._store, self.stats, self._parser, node_name=watch.node_name, **backoff),
        ]
        skip_namespaces = (
            self.config.cache.strategy is CacheStrategy.SIMPLE and self.config.parsing.skip_namespace_metadata
        )
        if not skip_namespaces:
            reconcilers.append(NamespaceReconciler(self._fetcher, self._store, self.stats, self._parser, **backoff))

        for reconciler in reconcilers:
            try:
                await reconciler.start()
            except ReconcilerStartupError as exc:
                raise _ComponentError(f"{reconciler.kind}_reconciler", exc) from exc
            self._reconcilers.append(reconciler)
            if reconciler.task is not None:
                reconciler.task.add_done_callback(self._on_reconciler_done)
        self._log.info("reconcilers started", node_name=watch.node_name or None)

    def _on_reconciler_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or self._stopping:
            return
        exc = task.exception()
        if exc is None:
            return
        log = self._log or get_logger("app")
        log.critical(
            "reconciler failed; shutting down",
            task=task.get_name(),
            error=str(exc),
            retries_exhausted=isinstance(exc, ReconcilerFatalError),
        )
        self.fatal_error = exc
        self._shutdown_task = asyncio.get_running_loop().create_task(self.stop(), name="fatal-shutdown")

    async def wait_shutdown(self) -> None:
        """Wait for a shutdown triggered by a failed reconciler to finish."""
        if self._shutdown_task is not None:
            await self._shutdown_task

    def _start_stats_reporter(self) -> None:
        """Launch a periodic task that publishes cache sizes and logs the counters."""
        assert self._log is not None
        assert self.config is not None
        interval = self.config.stats.interval_seconds

        async def _reporter() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    self.report_stats()
                except Exception as exc:
                    if self._log:
                        self._log.debug("stats_report_error", error=str(exc))

        task = asyncio.create_task(_reporter(), name="stats-reporter")
        self._background_tasks.append(task)

    def report_stats(self) -> None:
        """Publish cache sizes as gauges and log the counters."""
        if self._store is not None:
            self._store.report_sizes(self.stats)
        log = self._log or get_logger("app")
        log.info("stats", summary=str(self.stats))

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order.

        Each component's stop is wrapped independently; a failure in one
        component's teardown does not prevent the others from stopping.
        """
        if self._stopping or (not self._running and self._log is None):
            return
        self._stopping = True

        log = self._log or get_logger("app")
        log.info("kubemeta shutting down")

        self._running = False

        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        for reconciler in reversed(self._reconcilers):
            await self._stop_component(f"{reconciler.kind}_reconciler", reconciler)
        self._reconcilers.clear()
        self._resolver = None
        if self._checkpoint is not None:
            await self._stop_component("checkpoint", _Closer(self._checkpoint))
            self._checkpoint = None
        if self._fetcher is not None:
            await self._stop_component("fetcher", _Closer(self._fetcher))
        self._k8s_client = None

        log.info("kubemeta stopped")
        self._stopping = False

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() on a component if it has that method, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component stop timed out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))


class _Closer:
    """Adapts a component exposing ``close()`` to the ``stop()`` protocol."""

    def __init__(self, component: Any) -> None:
        self._component = component

    def stop(self) -> Any:
        return self._component.close()


def _kubemeta_version() -> str:
    from kubemeta import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = KubeMetaApp()
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        # Block until shutdown is triggered (background tasks run concurrently)
        while app.running:
            await asyncio.sleep(1)
    except _ComponentError as exc:
        # A mandatory component failed; log and exit non-zero
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        # Ensure stop runs even if start raises or is interrupted
        if app.running:
            await app.stop()

    await app.wait_shutdown()
    if app.fatal_error is not None:
        raise SystemExit(1)
