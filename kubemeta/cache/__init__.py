"""Cache layer for kubemeta.

Holds pod, namespace and identity metadata in bounded TTL/LRU caches and
resolves log-record identities against them on the hot path.

Submodules:
    bounded_cache -- Capacity/TTL-bounded LRU cache with single-flight compute.
    store         -- The three metadata caches and their key functions.
    resolver      -- Identity and simple resolution strategies.
    checkpoint    -- Optional SQLite persistence of the caches across restarts.
"""

from kubemeta.cache.bounded_cache import BoundedCache
from kubemeta.cache.store import MetadataStore

__all__ = ["BoundedCache", "MetadataStore"]
