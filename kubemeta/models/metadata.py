"""Metadata cache data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# Metadata maps are JSON-shaped so callers can merge them into records as-is.
Metadata = dict[str, Any]

# Per-batch suppression of repeated remote misses: "<namespace>_<pod>" -> result.
BatchMissCache = dict[str, Metadata]


class CacheStrategy(StrEnum):
    """How the resolver keys the pod cache."""

    IDENTITY = "identity"
    SIMPLE = "simple"


class EventType(StrEnum):
    """Watch event types delivered by the API server."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    ERROR = "ERROR"
    BOOKMARK = "BOOKMARK"


@dataclass(frozen=True)
class IdentityRecord:
    """Linkage from a container/pod identity to its owning pod and namespace UIDs."""

    pod_id: str | None
    namespace_id: str | None

    def to_dict(self) -> dict[str, str | None]:
        return {"pod_id": self.pod_id, "namespace_id": self.namespace_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IdentityRecord:
        return cls(pod_id=data.get("pod_id"), namespace_id=data.get("namespace_id"))


@dataclass(frozen=True)
class WatchEvent:
    """A single event from a watch stream; ``object`` is the JSON-shaped resource."""

    type: str
    object: dict[str, Any]


@dataclass(frozen=True)
class ListResult:
    """Items returned by a list call plus the cursor to start watching from."""

    items: list[dict[str, Any]]
    resource_version: str


@dataclass
class ReconcilerState:
    """Watch cursor and backoff bookkeeping owned by one reconciliation loop.

    ``last_resource_version`` is the newest cursor seen in any list or event;
    it is cleared on a Gone error so the next pass relists from scratch.
    """

    initial_interval: float
    last_resource_version: str | None = None
    retry_count: int = 0
    backoff_interval: float = field(default=0.0)
    auth_refreshed: bool = False

    def __post_init__(self) -> None:
        if not self.backoff_interval:
            self.backoff_interval = self.initial_interval

    def reset(self) -> None:
        """Reset retry bookkeeping after the startup list or a processed event."""
        self.retry_count = 0
        self.backoff_interval = self.initial_interval
        self.auth_refreshed = False


def batch_key(namespace_name: str, pod_name: str) -> str:
    """Return the batch-miss / simple-strategy cache key for a pod."""
    return f"{namespace_name}_{pod_name}"
