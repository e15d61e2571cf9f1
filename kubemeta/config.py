"""Environment-variable configuration loader.

Every setting is read from a ``KUBEMETA_*`` variable, except the node name,
which comes from ``K8S_NODE_NAME`` as set through the downward API.
Numeric values outside their documented range are clamped, not rejected.
"""

from __future__ import annotations

import os

from pydantic import ValidationError

from kubemeta.models.config import (
    CacheConfig,
    CheckpointConfig,
    KubeMetaConfig,
    KubernetesConfig,
    LogConfig,
    OrphanConfig,
    ParsingConfig,
    StatsConfig,
    WatchConfig,
)
from kubemeta.models.metadata import CacheStrategy

_PREFIX = "KUBEMETA_"
_TRUTHY: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_FALSY: frozenset[str] = frozenset({"0", "false", "no", "off"})


def load_config() -> KubeMetaConfig:
    """Build a :class:`KubeMetaConfig` from the process environment.

    Raises:
        ValueError: an enumeration (log level, cache strategy) or an
            annotation pattern is invalid.
    """
    ttl = _float("CACHE_TTL", 3600.0)
    try:
        return KubeMetaConfig(
            cache=CacheConfig(
                size=_int("CACHE_SIZE", 1000, 1, 1_000_000),
                ttl_seconds=ttl if ttl > 0 else None,
                strategy=_strategy(_str("CACHE_STRATEGY", "identity")),
            ),
            orphans=OrphanConfig(
                allow=_bool("ALLOW_ORPHANS", True),
                namespace_name=_str("ORPHANED_NAMESPACE_NAME", ".orphaned"),
                namespace_id=_str("ORPHANED_NAMESPACE_ID", "orphaned"),
            ),
            watch=WatchConfig(
                enabled=_bool("WATCH", True),
                retry_interval=_clamp(_float("WATCH_RETRY_INTERVAL", 1.0), 1.0, 300.0),
                exponential_backoff_base=_clamp(_float("WATCH_RETRY_EXPONENTIAL_BACKOFF_BASE", 2.0), 1.0, 10.0),
                max_retries=_int("WATCH_RETRY_MAX_TIMES", 10, 0, 100),
                timeout_seconds=_int("WATCH_TIMEOUT", 300, 10, 3600),
                node_name=os.environ.get("K8S_NODE_NAME", "").strip(),
            ),
            kubernetes=KubernetesConfig(
                url=_str("KUBERNETES_URL", ""),
                open_timeout=_clamp(_float("API_OPEN_TIMEOUT", 3.0), 1.0, 60.0),
                read_timeout=_clamp(_float("API_READ_TIMEOUT", 10.0), 1.0, 300.0),
            ),
            parsing=ParsingConfig(
                skip_labels=_bool("SKIP_LABELS", False),
                skip_container_metadata=_bool("SKIP_CONTAINER_METADATA", False),
                skip_master_url=_bool("SKIP_MASTER_URL", False),
                skip_namespace_metadata=_bool("SKIP_NAMESPACE_METADATA", False),
                annotation_match=_list("ANNOTATION_MATCH"),
            ),
            stats=StatsConfig(interval_seconds=_int("STATS_INTERVAL", 30, 5, 3600)),
            checkpoint=CheckpointConfig(
                enabled=_bool("CHECKPOINT_ENABLED", False),
                db_path=_str("CHECKPOINT_DB_PATH", "/var/lib/kubemeta/cache.db"),
                interval_seconds=_int("CHECKPOINT_INTERVAL", 60, 5, 3600),
            ),
            log=LogConfig(level=_str("LOG_LEVEL", "info")),
        )
    except ValidationError as exc:
        # Surface the validator's own message rather than pydantic's wrapper.
        errors = exc.errors()
        message = str(errors[0].get("ctx", {}).get("error", errors[0]["msg"])) if errors else str(exc)
        raise ValueError(message) from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _str(name: str, default: str) -> str:
    value = os.environ.get(_PREFIX + name)
    return default if value is None or not value.strip() else value.strip()


def _bool(name: str, default: bool) -> bool:
    value = os.environ.get(_PREFIX + name)
    if value is None or not value.strip():
        return default
    normalised = value.strip().lower()
    if normalised in _TRUTHY:
        return True
    if normalised in _FALSY:
        return False
    raise ValueError(f"Invalid boolean for {_PREFIX + name}: {value!r}")


def _int(name: str, default: int, minimum: int, maximum: int) -> int:
    value = os.environ.get(_PREFIX + name)
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {_PREFIX + name}: {value!r}") from exc
    return max(minimum, min(maximum, parsed))


def _float(name: str, default: float) -> float:
    value = os.environ.get(_PREFIX + name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid number for {_PREFIX + name}: {value!r}") from exc


def _clamp(value: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def _list(name: str) -> list[str]:
    value = os.environ.get(_PREFIX + name, "")
    return [item.strip() for item in value.split(",") if item.strip()]


def _strategy(value: str) -> CacheStrategy:
    try:
        return CacheStrategy(value.lower())
    except ValueError as exc:
        raise ValueError(f"Invalid cache strategy: {value!r}") from exc
