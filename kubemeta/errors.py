"""Error model shared by the fetcher, the resolver and the reconcilers.

Every remote failure is folded into a single :class:`MetadataApiError` whose
``kind`` is one of a closed set of :class:`ApiErrorKind` values.  Callers
switch on ``kind`` instead of catching a zoo of transport exceptions.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

import aiohttp
from kubernetes_asyncio.client.exceptions import ApiException

_TIMEOUT_STATUSES: frozenset[int] = frozenset({408, 504})
_TRANSIENT_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503})


class ApiErrorKind(StrEnum):
    """Classification of a failed remote API interaction."""

    GONE = "gone"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    FATAL = "fatal"


class MetadataApiError(Exception):
    """A remote API call or watch stream failed.

    Attributes:
        kind: Closed classification of the failure.
        status: HTTP status code, or 0 when the failure never reached HTTP.
        message: Server- or transport-provided message.
    """

    def __init__(self, kind: ApiErrorKind, message: str = "", status: int = 0) -> None:
        super().__init__(f"{kind.value}: {message}" if message else kind.value)
        self.kind = kind
        self.status = status
        self.message = message


class ReconcilerStartupError(Exception):
    """Raised when the initial list of a reconciler fails at startup."""


class ReconcilerFatalError(Exception):
    """Raised when a reconciler exhausted its retries; the process should restart."""


def kind_for_status(status: int) -> ApiErrorKind:
    """Map an HTTP status code to an :class:`ApiErrorKind`."""
    if status == 410:
        return ApiErrorKind.GONE
    if status == 401:
        return ApiErrorKind.UNAUTHORIZED
    if status == 404:
        return ApiErrorKind.NOT_FOUND
    if status in _TIMEOUT_STATUSES:
        return ApiErrorKind.TIMEOUT
    if status in _TRANSIENT_STATUSES or status >= 500:
        return ApiErrorKind.TRANSIENT
    return ApiErrorKind.FATAL


def classify(exc: BaseException) -> MetadataApiError:
    """Translate a transport-level exception into a :class:`MetadataApiError`."""
    if isinstance(exc, MetadataApiError):
        return exc
    if isinstance(exc, ApiException):
        status = int(exc.status or 0)
        return MetadataApiError(kind_for_status(status), str(exc.reason or ""), status=status)
    if isinstance(exc, TimeoutError):
        return MetadataApiError(ApiErrorKind.TIMEOUT, str(exc) or "request timed out")
    if isinstance(exc, aiohttp.ClientError | OSError):
        return MetadataApiError(ApiErrorKind.TRANSIENT, str(exc))
    return MetadataApiError(ApiErrorKind.FATAL, f"{type(exc).__name__}: {exc}")


def error_from_status_object(status_obj: Any) -> MetadataApiError:
    """Build an error from the ``Status`` payload carried by a watch ERROR event."""
    if not isinstance(status_obj, dict):
        return MetadataApiError(ApiErrorKind.FATAL, f"malformed watch error: {status_obj!r}")
    code = status_obj.get("code")
    message = str(status_obj.get("message") or status_obj.get("reason") or "")
    try:
        status = int(code) if code is not None else 0
    except (TypeError, ValueError):
        status = 0
    if status == 0 and str(status_obj.get("reason", "")) in ("Expired", "Gone"):
        status = 410
    return MetadataApiError(kind_for_status(status) if status else ApiErrorKind.FATAL, message, status=status)
