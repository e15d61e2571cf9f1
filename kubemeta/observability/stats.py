"""In-process counters and gauges for the metadata cache.

``Stats`` is the value the hot path and the watch loops bump.  Each update is
mirrored into Prometheus so the same numbers are scrapeable, while the
in-process copy lets the periodic reporter (and tests) read exact values
without going through the Prometheus registry.
"""

from __future__ import annotations

import threading

from kubemeta.observability.metrics import metadata_events_total, metadata_gauge


class Stats:
    """Thread-safe named monotonic counters plus last-set gauges.

    Example::

        stats = Stats()
        stats.bump("pod_cache_miss")
        stats.set("pod_cache_size", 42)
        stats["pod_cache_miss"]  # -> 1
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, float] = {}

    def bump(self, key: str, amount: int = 1) -> None:
        """Increment counter ``key`` by ``amount``."""
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount
        metadata_events_total.labels(event=key).inc(amount)

    def set(self, key: str, value: float) -> None:
        """Set gauge ``key`` to ``value``."""
        with self._lock:
            self._values[key] = value
        metadata_gauge.labels(name=key).set(value)

    def __getitem__(self, key: str) -> float:
        with self._lock:
            return self._values.get(key, 0)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._values

    def snapshot(self) -> dict[str, float]:
        """Return a point-in-time copy of every counter and gauge."""
        with self._lock:
            return dict(self._values)

    def __str__(self) -> str:
        items = sorted(self.snapshot().items())
        return "stats - " + ", ".join(f"{k}: {v:g}" for k, v in items)
