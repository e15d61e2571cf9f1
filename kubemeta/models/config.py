"""Configuration models.

All models use Pydantic v2 syntax.  Values arrive already clamped and parsed
from :func:`kubemeta.config.load_config`; the validators here only guard the
fields whose invalid values cannot be clamped.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator

from kubemeta.models.metadata import CacheStrategy

_LOG_LEVELS: frozenset[str] = frozenset({"debug", "info", "warning", "error", "critical"})


class CacheConfig(BaseModel):
    size: int = Field(default=1000, description="Capacity of each of the three caches.")
    ttl_seconds: float | None = Field(default=3600, description="Entry TTL; ``None`` disables expiry.")
    strategy: CacheStrategy = CacheStrategy.IDENTITY


class OrphanConfig(BaseModel):
    allow: bool = True
    namespace_name: str = ".orphaned"
    namespace_id: str = "orphaned"


class WatchConfig(BaseModel):
    enabled: bool = True
    retry_interval: float = 1.0
    exponential_backoff_base: float = 2.0
    max_retries: int = 10
    timeout_seconds: int = 300
    node_name: str = ""


class KubernetesConfig(BaseModel):
    url: str = ""
    open_timeout: float = 3.0
    read_timeout: float = 10.0


class ParsingConfig(BaseModel):
    skip_labels: bool = False
    skip_container_metadata: bool = False
    skip_master_url: bool = False
    skip_namespace_metadata: bool = False
    annotation_match: list[str] = Field(default_factory=list)

    @field_validator("annotation_match")
    @classmethod
    def validate_annotation_match(cls, value: list[str]) -> list[str]:
        """Ensure every pattern compiles."""
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid annotation match pattern {pattern!r}: {exc}") from exc
        return value


class StatsConfig(BaseModel):
    interval_seconds: int = 30


class CheckpointConfig(BaseModel):
    enabled: bool = False
    db_path: str = "/var/lib/kubemeta/cache.db"
    interval_seconds: int = 60


class LogConfig(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        normalised = value.strip().lower()
        if normalised not in _LOG_LEVELS:
            raise ValueError(f"Invalid log level: {value!r}")
        return normalised


class KubeMetaConfig(BaseModel):
    """Top-level configuration, one section per concern."""

    cache: CacheConfig = Field(default_factory=CacheConfig)
    orphans: OrphanConfig = Field(default_factory=OrphanConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    parsing: ParsingConfig = Field(default_factory=ParsingConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    log: LogConfig = Field(default_factory=LogConfig)
