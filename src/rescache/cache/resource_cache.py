"""
In-memory resource cache with tag, type and namespace indices.

The cache keeps four structures in step:
- primary map:     "{type}:{id}" -> CacheEntry
- tag index:       tag -> keys whose live entry carries the tag
- type index:      type -> keys of that type
- namespace index: namespace -> keys whose live entry belongs to it

Every change to any of them goes through ResourceCache._apply while the
cache lock is held, so the indices never reference an absent entry.
Relationships between resources are ordinary entries of the "relationship"
type and go through the same routine.

Expiry is lazy: entries past their expires_at are removed when a read or
scan observes them. There is no background sweep.
"""

from __future__ import annotations

import fnmatch
import math
import re
import threading
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any

from rescache.cache.base import Clock, LogSink
from rescache.cache.persistence import CachePersistence
from rescache.config import Settings, get_settings
from rescache.exceptions import ConfigurationError, InvalidResourceError
from rescache.logging import get_logger
from rescache.types import (
    RELATIONSHIP_TYPE,
    CacheEntry,
    is_soft_deleted,
    make_cache_key,
    make_relationship_key,
    normalize_tags,
    resource_identity,
    split_cache_key,
    tag_name,
    to_millis,
    type_name,
)

logger = get_logger(__name__)


def _check_ttl(ttl: Any) -> None:
    if ttl is None:
        return
    if (
        isinstance(ttl, bool)
        or not isinstance(ttl, (int, float))
        or not math.isfinite(ttl)
        or ttl < 0
    ):
        raise InvalidResourceError(
            "TTL must be a finite, non-negative number of seconds",
            context={"field": "ttl", "value": ttl},
        )


class ResourceCache:
    """Process-local cache of typed domain resources.

    Resources are keyed by (type, id), may carry a TTL, tags and namespaces,
    and can be snapshotted to disk through an attached CachePersistence.

    Thread-safe: the primary map and all indices share one lock.
    """

    def __init__(
        self,
        persistence: CachePersistence | None = None,
        clock: Clock = time.time,
        log_sink: LogSink | None = None,
    ) -> None:
        """Initialize an empty cache.

        Args:
            persistence: Snapshot store used by persist() and restore().
            clock: Returns epoch seconds. Tests pass a manual clock.
            log_sink: Logging sink; defaults to the module logger.
        """
        self._entries: dict[str, CacheEntry] = {}
        self._tag_index: dict[str, set[str]] = {}
        self._type_index: dict[str, set[str]] = {}
        self._namespace_index: dict[str, set[str]] = {}
        self._lock = threading.RLock()
        self._persistence = persistence
        self._clock = clock
        self._logger = log_sink or logger

    @property
    def persistence(self) -> CachePersistence | None:
        """The attached snapshot store, if any."""
        return self._persistence

    def _now_ms(self) -> int:
        return to_millis(self._clock())

    # ------------------------------------------------------------------
    # Mutation routine
    # ------------------------------------------------------------------

    def _apply(self, key: str, entry: CacheEntry | None) -> CacheEntry | None:
        """Replace the entry at key, or remove it when entry is None.

        Drops the previous entry's tag/type/namespace memberships before
        adding the new ones. Caller must hold self._lock.

        Returns:
            The previous entry, if there was one.
        """
        resource_type, _ = split_cache_key(key)

        previous = self._entries.pop(key, None)
        if previous is not None:
            for tag in previous.tags:
                self._discard(self._tag_index, tag, key)
            for namespace in previous.namespaces:
                self._discard(self._namespace_index, namespace, key)
            self._discard(self._type_index, resource_type, key)

        if entry is not None:
            self._entries[key] = entry
            for tag in entry.tags:
                self._tag_index.setdefault(tag, set()).add(key)
            for namespace in entry.namespaces:
                self._namespace_index.setdefault(namespace, set()).add(key)
            self._type_index.setdefault(resource_type, set()).add(key)

        return previous

    @staticmethod
    def _discard(index: dict[str, set[str]], name: str, key: str) -> None:
        keys = index.get(name)
        if keys is None:
            return
        keys.discard(key)
        if not keys:
            del index[name]

    def _live_entry(self, key: str, now_ms: int) -> CacheEntry | None:
        """Return the entry at key unless it has expired, evicting it if so.

        Caller must hold self._lock.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(now_ms):
            self._apply(key, None)
            self._logger.debug("Evicted expired entry", key=key)
            return None
        return entry

    def _collect(self, keys: Iterable[str], include_deleted: bool) -> list[Any]:
        """Live values for keys, optionally hiding soft-deleted resources.

        Caller must hold self._lock.
        """
        values: list[Any] = []
        now_ms = self._now_ms()
        for key in list(keys):
            entry = self._live_entry(key, now_ms)
            if entry is None:
                continue
            if not include_deleted and is_soft_deleted(entry.value):
                continue
            values.append(entry.value)
        return values

    def _remove_keys(self, keys: Iterable[str]) -> int:
        """Remove every listed key. Caller must hold self._lock."""
        removed = 0
        for key in list(keys):
            if self._apply(key, None) is not None:
                removed += 1
        return removed

    # ------------------------------------------------------------------
    # Primary operations
    # ------------------------------------------------------------------

    def set(
        self,
        resource: Any,
        ttl: float | None = None,
        tags: Iterable[str] | None = None,
        namespaces: Iterable[str] | None = None,
    ) -> bool:
        """Store or replace a resource.

        A second set() for the same (type, id) overwrites value, TTL, tags and
        namespaces entirely.

        Args:
            resource: Mapping or object carrying ``type`` and ``id``.
            ttl: Seconds until expiry. None means the entry never expires.
            tags: Tags for secondary lookup.
            namespaces: Namespaces for grouped lookup via get_by_namespace().

        Returns:
            True if stored, False if the call was malformed (logged, not raised).
        """
        try:
            resource_type, resource_id = resource_identity(resource)
            if resource_type == RELATIONSHIP_TYPE:
                raise InvalidResourceError(
                    "Resource type is reserved for relationships",
                    context={"field": "type", "value": resource_type},
                )
            tag_set = normalize_tags(tags)
            namespace_set = normalize_tags(namespaces, field="namespaces")
            _check_ttl(ttl)
        except InvalidResourceError as e:
            self._logger.warning("Rejected cache set", error=e.message, **e.context)
            return False

        key = make_cache_key(resource_type, resource_id)
        with self._lock:
            expires_at = self._now_ms() + int(ttl * 1000) if ttl is not None else None
            self._apply(
                key,
                CacheEntry(
                    value=resource,
                    expires_at=expires_at,
                    tags=tag_set,
                    namespaces=namespace_set,
                ),
            )

        self._logger.debug("Cached resource", key=key, ttl=ttl, tags=list(tag_set))
        return True

    def get(
        self,
        resource_type: Any,
        resource_id: Any,
        include_deleted: bool = True,
        tags: Iterable[str] | None = None,
    ) -> Any | None:
        """Get a resource by type and id.

        Args:
            include_deleted: When False, a resource carrying a deletion
                timestamp is reported as missing (it stays cached).
            tags: When given, the entry must carry at least one of them.

        Returns:
            The stored value, or None if missing, expired, filtered out, or the
            arguments are malformed.
        """
        try:
            key = make_cache_key(resource_type, resource_id)
            wanted = normalize_tags(tags)
        except InvalidResourceError as e:
            self._logger.warning("Rejected cache get", error=e.message, **e.context)
            return None

        with self._lock:
            entry = self._live_entry(key, self._now_ms())
        if entry is None:
            return None
        if not include_deleted and is_soft_deleted(entry.value):
            return None
        if wanted and not set(wanted).intersection(entry.tags):
            return None
        return entry.value

    def delete(self, resource_type: Any, resource_id: Any) -> bool:
        """Remove a resource and all its tag memberships.

        Returns:
            True if an entry was removed.
        """
        try:
            key = make_cache_key(resource_type, resource_id)
        except InvalidResourceError as e:
            self._logger.warning("Rejected cache delete", error=e.message, **e.context)
            return False

        with self._lock:
            removed = self._apply(key, None) is not None

        if removed:
            self._logger.debug("Deleted resource", key=key)
        return removed

    def clear_by_type(self, resource_type: Any) -> int:
        """Remove every entry of one type.

        Returns:
            Number of entries removed.
        """
        try:
            name = type_name(resource_type)
        except InvalidResourceError as e:
            self._logger.warning("Rejected clear by type", error=e.message, **e.context)
            return 0

        with self._lock:
            removed = self._remove_keys(self._type_index.get(name, ()))

        self._logger.debug("Cleared resources by type", type=name, removed=removed)
        return removed

    def get_by_tag(
        self,
        tag: str,
        resource_type: Any | None = None,
        include_deleted: bool = True,
    ) -> list[Any]:
        """List live values carrying a tag, optionally of one type.

        Expired entries met during the scan are evicted.
        """
        try:
            tag = tag_name(tag)
            name = type_name(resource_type) if resource_type is not None else None
        except InvalidResourceError as e:
            self._logger.warning("Rejected get by tag", error=e.message, **e.context)
            return []

        with self._lock:
            keys = self._tag_index.get(tag, ())
            if name is not None:
                keys = [k for k in keys if split_cache_key(k)[0] == name]
            return self._collect(keys, include_deleted)

    def clear_by_tag(self, tag: str) -> int:
        """Delete every entry carrying a tag.

        Whole entries are removed, including their other tag memberships.

        Returns:
            Number of entries removed.
        """
        try:
            tag = tag_name(tag)
        except InvalidResourceError as e:
            self._logger.warning("Rejected clear by tag", error=e.message, **e.context)
            return 0

        with self._lock:
            removed = self._remove_keys(self._tag_index.get(tag, ()))

        self._logger.debug("Cleared resources by tag", tag=tag, removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Secondary operations
    # ------------------------------------------------------------------

    def get_by_type(self, resource_type: Any, include_deleted: bool = True) -> list[Any]:
        """List live values of one type, evicting expired ones."""
        try:
            name = type_name(resource_type)
        except InvalidResourceError as e:
            self._logger.warning("Rejected get by type", error=e.message, **e.context)
            return []

        with self._lock:
            return self._collect(self._type_index.get(name, ()), include_deleted)

    def get_by_namespace(self, namespace: str, include_deleted: bool = True) -> list[Any]:
        """List live values in a namespace, evicting expired ones."""
        try:
            namespace = tag_name(namespace, field="namespace")
        except InvalidResourceError as e:
            self._logger.warning("Rejected get by namespace", error=e.message, **e.context)
            return []

        with self._lock:
            return self._collect(self._namespace_index.get(namespace, ()), include_deleted)

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Delete every entry carrying any of the given tags.

        Returns:
            Number of entries removed.
        """
        try:
            tag_set = normalize_tags(tags)
        except InvalidResourceError as e:
            self._logger.warning("Rejected invalidate by tags", error=e.message, **e.context)
            return 0

        with self._lock:
            keys: set[str] = set()
            for tag in tag_set:
                keys.update(self._tag_index.get(tag, ()))
            removed = self._remove_keys(keys)

        self._logger.debug("Invalidated resources by tags", removed=removed)
        return removed

    def invalidate_by_pattern(self, pattern: str | re.Pattern[str]) -> int:
        """Delete entries whose primary key matches a pattern.

        Args:
            pattern: Shell-style glob over keys (``"project:*"``), or a
                compiled regex which is searched anywhere in the key.

        Returns:
            Number of entries removed.
        """
        if isinstance(pattern, re.Pattern):
            matches = pattern.search
        else:
            matches = re.compile(fnmatch.translate(pattern)).match

        with self._lock:
            removed = self._remove_keys(k for k in self._entries if matches(k))

        self._logger.debug("Invalidated resources by pattern", removed=removed)
        return removed

    def set_tags(self, resource_type: Any, resource_id: Any, tags: Iterable[str]) -> bool:
        """Replace the tags of a live entry, keeping its value and expiry.

        Returns:
            True if the entry exists and was updated.
        """
        try:
            key = make_cache_key(resource_type, resource_id)
            tag_set = normalize_tags(tags)
        except InvalidResourceError as e:
            self._logger.warning("Rejected set tags", error=e.message, **e.context)
            return False

        with self._lock:
            entry = self._live_entry(key, self._now_ms())
            if entry is None:
                return False
            self._apply(key, replace(entry, tags=tag_set))
        return True

    def refresh(self, resource_type: Any, resource_id: Any, ttl: float | None = None) -> bool:
        """Reset the expiry of a live entry.

        Args:
            ttl: Seconds from now until expiry; None removes the expiry.

        Returns:
            True if the entry exists and was refreshed.
        """
        try:
            key = make_cache_key(resource_type, resource_id)
            _check_ttl(ttl)
        except InvalidResourceError as e:
            self._logger.warning("Rejected refresh", error=e.message, **e.context)
            return False

        with self._lock:
            now_ms = self._now_ms()
            entry = self._live_entry(key, now_ms)
            if entry is None:
                return False
            expires_at = now_ms + int(ttl * 1000) if ttl is not None else None
            self._apply(key, replace(entry, expires_at=expires_at))
        return True

    def clear(self) -> None:
        """Drop all entries and indices."""
        with self._lock:
            self._entries.clear()
            self._tag_index.clear()
            self._type_index.clear()
            self._namespace_index.clear()

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def set_relationship(self, source_id: str, relationship_type: str, target_id: str) -> bool:
        """Record that source_id relates to target_id.

        Targets are kept in insertion order without duplicates. Relationship
        entries never expire and are persisted with the rest of the cache.

        Returns:
            True if recorded, False if the call was malformed.
        """
        try:
            key = make_relationship_key(source_id, relationship_type)
            tag_name(target_id, field="target_id")
        except InvalidResourceError as e:
            self._logger.warning("Rejected set relationship", error=e.message, **e.context)
            return False

        with self._lock:
            entry = self._live_entry(key, self._now_ms())
            targets = list(entry.value) if entry is not None else []
            if target_id not in targets:
                targets.append(target_id)
                self._apply(key, CacheEntry(value=targets))

        self._logger.debug(
            "Recorded relationship",
            source_id=source_id,
            relationship_type=relationship_type,
            target_id=target_id,
        )
        return True

    def get_relationships(self, source_id: str, relationship_type: str) -> list[str]:
        """Target ids related to source_id, in the order they were recorded."""
        try:
            key = make_relationship_key(source_id, relationship_type)
        except InvalidResourceError as e:
            self._logger.warning("Rejected get relationships", error=e.message, **e.context)
            return []

        with self._lock:
            entry = self._live_entry(key, self._now_ms())
            return list(entry.value) if entry is not None else []

    def remove_relationship(self, source_id: str, relationship_type: str, target_id: str) -> bool:
        """Forget one relationship; the entry goes away with its last target.

        Returns:
            True if the relationship existed.
        """
        try:
            key = make_relationship_key(source_id, relationship_type)
        except InvalidResourceError as e:
            self._logger.warning("Rejected remove relationship", error=e.message, **e.context)
            return False

        with self._lock:
            entry = self._live_entry(key, self._now_ms())
            if entry is None or target_id not in entry.value:
                return False
            targets = [t for t in entry.value if t != target_id]
            self._apply(key, replace(entry, value=targets) if targets else None)
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> list[str]:
        """Primary keys currently held, expired or not."""
        with self._lock:
            return list(self._entries)

    def get_tags(self, resource_type: Any, resource_id: Any) -> tuple[str, ...] | None:
        """Tags of a stored entry, or None if absent."""
        try:
            key = make_cache_key(resource_type, resource_id)
        except InvalidResourceError:
            return None
        with self._lock:
            entry = self._entries.get(key)
            return entry.tags if entry is not None else None

    def stats(self) -> dict[str, int]:
        """Sizes of the primary map and the indices."""
        with self._lock:
            return {
                "size": len(self._entries),
                "tag_count": len(self._tag_index),
                "type_count": len(self._type_index),
                "namespace_count": len(self._namespace_index),
            }

    def snapshot(self) -> dict[str, CacheEntry]:
        """Copy of the key -> entry mapping, taken under the lock."""
        with self._lock:
            return dict(self._entries)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _require_persistence(self) -> CachePersistence:
        if self._persistence is None:
            raise ConfigurationError("No persistence store attached to the cache")
        return self._persistence

    async def persist(self) -> None:
        """Write the current entries to the snapshot file.

        Raises:
            ConfigurationError: If no persistence store is attached.
            PersistenceError: If the snapshot could not be written.
        """
        persistence = self._require_persistence()
        entries = self.snapshot()
        await persistence.save(entries)

    async def restore(self) -> int:
        """Load unexpired entries from the snapshot file into the cache.

        Restored entries replace live entries with the same key; other live
        entries are kept.

        Returns:
            Number of entries applied.
        """
        persistence = self._require_persistence()
        restored = await persistence.restore()

        applied = 0
        with self._lock:
            for key, entry in restored.items():
                try:
                    split_cache_key(key)
                    entry = replace(
                        entry,
                        tags=normalize_tags(entry.tags),
                        namespaces=normalize_tags(entry.namespaces, field="namespaces"),
                    )
                except InvalidResourceError as e:
                    self._logger.warning("Skipped restored entry", error=e.message, key=key)
                    continue
                self._apply(key, entry)
                applied += 1

        self._logger.info("Restored cache entries", applied=applied)
        return applied


class _SharedCache:
    """Holder for the process-wide cache instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._instance: ResourceCache | None = None

    def get(self) -> ResourceCache:
        with self._lock:
            if self._instance is None:
                settings = get_settings()
                self._instance = ResourceCache(
                    persistence=CachePersistence(
                        settings.CACHE_DIR, settings.SNAPSHOT_FILENAME
                    )
                )
            return self._instance

    def set(self, cache: ResourceCache | None) -> None:
        with self._lock:
            self._instance = cache


_shared = _SharedCache()


def get_resource_cache() -> ResourceCache:
    """Get the process-wide cache, constructing it on first access.

    The first call builds a ResourceCache whose persistence store points at
    the configured CACHE_DIR/SNAPSHOT_FILENAME. The instance then lives until
    process exit unless replaced with set_resource_cache() or dropped with
    reset_resource_cache().
    """
    return _shared.get()


def set_resource_cache(cache: ResourceCache) -> None:
    """Substitute the process-wide cache (tests, custom wiring)."""
    _shared.set(cache)


def reset_resource_cache() -> None:
    """Drop the process-wide cache so the next access builds a fresh one."""
    _shared.set(None)


@asynccontextmanager
async def resource_cache_lifespan(
    settings: Settings | None = None,
) -> AsyncIterator[ResourceCache]:
    """Run the shared cache for the duration of a service.

    Restores the snapshot on entry if RESTORE_ON_STARTUP is set and writes it
    on exit if PERSIST_ON_SHUTDOWN is set.
    """
    settings = settings or get_settings()
    cache = get_resource_cache()
    if settings.RESTORE_ON_STARTUP:
        await cache.restore()
    try:
        yield cache
    finally:
        if settings.PERSIST_ON_SHUTDOWN:
            await cache.persist()
