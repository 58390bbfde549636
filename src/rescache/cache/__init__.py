"""
Cache package for resource storage.

This package provides:
- Resource cache (resource_cache.py): In-memory store with tag/type indices and lazy TTL expiry
- Persistence (persistence.py): Versioned JSON snapshot with atomic writes
"""

from rescache.cache.persistence import SNAPSHOT_VERSION, CachePersistence
from rescache.cache.resource_cache import (
    ResourceCache,
    get_resource_cache,
    reset_resource_cache,
    resource_cache_lifespan,
    set_resource_cache,
)

__all__ = [
    "SNAPSHOT_VERSION",
    "CachePersistence",
    "ResourceCache",
    "get_resource_cache",
    "reset_resource_cache",
    "resource_cache_lifespan",
    "set_resource_cache",
]
