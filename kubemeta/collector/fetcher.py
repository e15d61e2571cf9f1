"""Remote API adapter over kubernetes_asyncio's CoreV1Api.

All objects leave this module JSON-shaped (camelCase keys), whether they came
from a watch stream's ``raw_object`` or from a deserialized list/read call.
Every failure leaves as :class:`~kubemeta.errors.MetadataApiError`.

The ``fetch_*_metadata`` helpers are the hot-path entry points: they never
raise and degrade to an empty map so the log pipeline keeps flowing.
"""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from kubernetes_asyncio import watch

from kubemeta.collector.parsing import MetadataParser
from kubemeta.errors import ApiErrorKind, MetadataApiError, classify
from kubemeta.models.metadata import ListResult, Metadata, WatchEvent
from kubemeta.observability.logging import get_logger
from kubemeta.observability.stats import Stats

ApiFactory = Callable[[], Awaitable[Any] | Any]

_DEFAULT_OPEN_TIMEOUT_S: float = 3.0
_DEFAULT_READ_TIMEOUT_S: float = 10.0
_DEFAULT_WATCH_TIMEOUT_S: int = 300


class MetadataFetcher:
    """Get/list/watch pods and namespaces and parse them into metadata.

    Args:
        api: A ``CoreV1Api`` instance.
        parser: Parser applied by the ``fetch_*_metadata`` helpers.
        stats: Counters bumped on fetch outcomes.
        api_factory: Builds a replacement ``CoreV1Api`` with fresh credentials;
            used after a 401.  May be sync or async.
        open_timeout: Connect timeout for every request, in seconds.
        read_timeout: Socket read timeout for get/list requests, in seconds.
        watch_timeout: Server-side watch duration, in seconds.
    """

    def __init__(
        self,
        api: Any,
        parser: MetadataParser,
        stats: Stats,
        api_factory: ApiFactory | None = None,
        open_timeout: float = _DEFAULT_OPEN_TIMEOUT_S,
        read_timeout: float = _DEFAULT_READ_TIMEOUT_S,
        watch_timeout: int = _DEFAULT_WATCH_TIMEOUT_S,
    ) -> None:
        self._api = api
        self._parser = parser
        self._stats = stats
        self._api_factory = api_factory
        self._open_timeout = open_timeout
        self._read_timeout = read_timeout
        self._watch_timeout = watch_timeout
        self._log = get_logger("fetcher")

    @property
    def api(self) -> Any:
        return self._api

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def refresh_client(self) -> None:
        """Replace the API object with one built from freshly loaded credentials."""
        if self._api_factory is None:
            self._log.warning("client_refresh_unavailable")
            return
        new_api = self._api_factory()
        if inspect.isawaitable(new_api):
            new_api = await new_api
        old_api, self._api = self._api, new_api
        self._log.info("client_refreshed")
        await _close_api(old_api)

    async def close(self) -> None:
        await _close_api(self._api)

    # ------------------------------------------------------------------
    # Raw API access
    # ------------------------------------------------------------------

    async def get_pod(self, name: str, namespace: str) -> dict[str, Any]:
        return await self._request("read_namespaced_pod", name, namespace)

    async def get_namespace(self, name: str) -> dict[str, Any]:
        return await self._request("read_namespace", name)

    async def list_pods(self, field_selector: str | None = None) -> ListResult:
        kwargs: dict[str, Any] = {}
        if field_selector:
            kwargs["field_selector"] = field_selector
        return _list_result(await self._request("list_pod_for_all_namespaces", **kwargs))

    async def list_namespaces(self) -> ListResult:
        return _list_result(await self._request("list_namespace"))

    def watch_pods(self, resource_version: str | None, field_selector: str | None = None) -> AsyncIterator[WatchEvent]:
        kwargs: dict[str, Any] = {}
        if field_selector:
            kwargs["field_selector"] = field_selector
        return self._watch("list_pod_for_all_namespaces", resource_version, **kwargs)

    def watch_namespaces(self, resource_version: str | None) -> AsyncIterator[WatchEvent]:
        return self._watch("list_namespace", resource_version)

    # ------------------------------------------------------------------
    # Hot-path helpers
    # ------------------------------------------------------------------

    async def fetch_pod_metadata(self, namespace_name: str, pod_name: str) -> Metadata:
        """Fetch and parse a pod; return ``{}`` on any failure."""
        try:
            pod = await self.get_pod(pod_name, namespace_name)
        except MetadataApiError as exc:
            if exc.kind is ApiErrorKind.NOT_FOUND:
                self._stats.bump("pod_cache_api_nil_not_found")
            else:
                self._stats.bump("pod_cache_api_nil_error")
            self._log.debug(
                "pod_fetch_failed",
                namespace=namespace_name,
                pod=pod_name,
                kind=exc.kind.value,
                error=exc.message,
            )
            return {}
        try:
            metadata = self._parser.parse_pod(pod)
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            self._stats.bump("pod_cache_api_nil_bad_resp_payload")
            self._log.debug("pod_payload_invalid", namespace=namespace_name, pod=pod_name, error=repr(exc))
            return {}
        self._stats.bump("pod_cache_api_updates")
        return metadata

    async def fetch_namespace_metadata(self, namespace_name: str) -> Metadata:
        """Fetch and parse a namespace; return ``{}`` on any failure."""
        try:
            namespace = await self.get_namespace(namespace_name)
        except MetadataApiError as exc:
            if exc.kind is ApiErrorKind.NOT_FOUND:
                self._stats.bump("namespace_cache_api_nil_not_found")
            else:
                self._stats.bump("namespace_cache_api_nil_error")
            self._log.debug(
                "namespace_fetch_failed",
                namespace=namespace_name,
                kind=exc.kind.value,
                error=exc.message,
            )
            return {}
        try:
            metadata = self._parser.parse_namespace(namespace)
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            self._stats.bump("namespace_cache_api_nil_bad_resp_payload")
            self._log.debug("namespace_payload_invalid", namespace=namespace_name, error=repr(exc))
            return {}
        self._stats.bump("namespace_cache_api_updates")
        return metadata

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _request(self, method_name: str, *args: Any, **kwargs: Any) -> dict[str, Any]:
        """Call a CoreV1Api method, refreshing credentials and retrying once on 401."""
        refreshed = False
        while True:
            func = getattr(self._api, method_name)
            try:
                result = await func(*args, _request_timeout=(self._open_timeout, self._read_timeout), **kwargs)
            except Exception as exc:
                error = classify(exc)
                if error.kind is ApiErrorKind.UNAUTHORIZED and not refreshed and self._api_factory is not None:
                    refreshed = True
                    self._stats.bump("api_auth_refreshes")
                    await self.refresh_client()
                    continue
                raise error from exc
            return self._serialize(result)

    async def _watch(self, method_name: str, resource_version: str | None, **kwargs: Any) -> AsyncIterator[WatchEvent]:
        kwargs["allow_watch_bookmarks"] = True
        kwargs["timeout_seconds"] = self._watch_timeout
        kwargs["_request_timeout"] = (self._open_timeout, self._watch_timeout + self._read_timeout)
        if resource_version:
            kwargs["resource_version"] = resource_version

        w = watch.Watch()
        try:
            async for raw_event in w.stream(getattr(self._api, method_name), **kwargs):
                event_type = str(raw_event.get("type", ""))
                raw = raw_event.get("raw_object")
                if not isinstance(raw, dict):
                    obj = raw_event.get("object")
                    raw = self._serialize(obj) if obj is not None else {}
                yield WatchEvent(type=event_type, object=raw)
        except MetadataApiError:
            raise
        except Exception as exc:
            raise classify(exc) from exc
        finally:
            await w.close()

    def _serialize(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        serialized = self._api.api_client.sanitize_for_serialization(obj)
        return serialized if isinstance(serialized, dict) else {}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _list_result(payload: dict[str, Any]) -> ListResult:
    items = payload.get("items") or []
    metadata = payload.get("metadata") or {}
    return ListResult(
        items=[item for item in items if isinstance(item, dict)],
        resource_version=str(metadata.get("resourceVersion") or ""),
    )


async def _close_api(api: Any) -> None:
    api_client = getattr(api, "api_client", None)
    close = getattr(api_client, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result
