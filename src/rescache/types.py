"""
Core types for the resource cache.

This module defines the fundamental data structures used throughout the cache:
- ResourceType enum for the domain objects the cache usually holds
- Frozen dataclasses for cache entries and restore statistics
- Helpers for primary key derivation, resource identification and timestamps
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from rescache.exceptions import InvalidResourceError

KEY_SEPARATOR = ":"
RELATIONSHIP_TYPE = "relationship"


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def to_millis(seconds: float) -> int:
    """Convert epoch seconds (as returned by time.time) to epoch milliseconds."""
    return int(seconds * 1000)


class ResourceType(str, Enum):
    """Types of domain resources stored in the cache."""

    PROJECT = "project"
    MILESTONE = "milestone"
    ISSUE = "issue"
    SPRINT = "sprint"
    FEATURE = "feature"
    BUG = "bug"
    TASK = "task"


@dataclass(frozen=True)
class CacheEntry:
    """A single cached value with its expiry and tags.

    Attributes:
        value: The stored domain object. Treated as immutable once cached.
        expires_at: Absolute expiry in epoch milliseconds, None for no expiry.
        tags: Ordered, de-duplicated tag names.
        namespaces: Ordered, de-duplicated namespace names.
    """

    value: Any
    expires_at: int | None = None
    tags: tuple[str, ...] = ()
    namespaces: tuple[str, ...] = ()

    def is_expired(self, now_ms: int) -> bool:
        """Check whether the entry has expired at the given time."""
        return self.expires_at is not None and self.expires_at <= now_ms


@dataclass(frozen=True)
class RestoreStats:
    """Counts from the last snapshot restore."""

    restored: int = 0
    expired: int = 0


def type_name(resource_type: Any) -> str:
    """Normalize a type discriminator to its string form.

    Raises:
        InvalidResourceError: If the type is missing, empty, or contains the
            key separator.
    """
    if isinstance(resource_type, Enum):
        resource_type = resource_type.value
    if not isinstance(resource_type, str) or not resource_type:
        raise InvalidResourceError(
            "Resource type must be a non-empty string",
            context={"field": "type", "value": resource_type},
        )
    if KEY_SEPARATOR in resource_type:
        raise InvalidResourceError(
            "Resource type must not contain the key separator",
            context={"field": "type", "value": resource_type},
        )
    return resource_type


def make_cache_key(resource_type: Any, resource_id: Any) -> str:
    """Build the primary key for a (type, id) pair.

    Raises:
        InvalidResourceError: If either part is missing or malformed.
    """
    name = type_name(resource_type)
    if not isinstance(resource_id, str) or not resource_id:
        raise InvalidResourceError(
            "Resource id must be a non-empty string",
            context={"field": "id", "value": resource_id},
        )
    return f"{name}{KEY_SEPARATOR}{resource_id}"


def split_cache_key(key: str) -> tuple[str, str]:
    """Recover (type, id) from a primary key.

    Raises:
        InvalidResourceError: If the key was not built by make_cache_key.
    """
    if not isinstance(key, str):
        raise InvalidResourceError("Cache key must be a string", context={"value": key})
    resource_type, sep, resource_id = key.partition(KEY_SEPARATOR)
    if not sep or not resource_type or not resource_id:
        raise InvalidResourceError("Malformed cache key", context={"value": key})
    return resource_type, resource_id


def resource_identity(resource: Any) -> tuple[str, str]:
    """Extract the (type, id) pair from a resource.

    Mappings are read by key, anything else by attribute.
    """
    if resource is None:
        raise InvalidResourceError("Resource is missing", context={"field": "resource"})
    if isinstance(resource, Mapping):
        resource_type = resource.get("type")
        resource_id = resource.get("id")
    else:
        resource_type = getattr(resource, "type", None)
        resource_id = getattr(resource, "id", None)
    make_cache_key(resource_type, resource_id)
    return type_name(resource_type), resource_id


def normalize_tags(tags: Iterable[str] | None, field: str = "tags") -> tuple[str, ...]:
    """De-duplicate tags (or namespaces) while keeping first-seen order.

    Raises:
        InvalidResourceError: If tags is a bare string or holds non-strings.
    """
    if tags is None:
        return ()
    if isinstance(tags, str):
        raise InvalidResourceError(
            f"{field.capitalize()} must be a list of strings, not a string",
            context={"field": field, "value": tags},
        )
    ordered: dict[str, None] = {}
    for tag in tags:
        ordered[tag_name(tag, field)] = None
    return tuple(ordered)


def tag_name(tag: Any, field: str = "tag") -> str:
    """Validate a single tag or namespace name."""
    if not isinstance(tag, str) or not tag:
        raise InvalidResourceError(
            f"{field.rstrip('s').capitalize()} names must be non-empty strings",
            context={"field": field, "value": tag},
        )
    return tag


def is_soft_deleted(resource: Any) -> bool:
    """Check whether a resource carries a deletion timestamp.

    Mappings are read by the ``deletedAt`` key, objects by ``deleted_at`` or
    ``deletedAt``.
    """
    if isinstance(resource, Mapping):
        return resource.get("deletedAt") is not None
    deleted_at = getattr(resource, "deleted_at", None)
    if deleted_at is None:
        deleted_at = getattr(resource, "deletedAt", None)
    return deleted_at is not None


def make_relationship_key(source_id: Any, relationship_type: Any) -> str:
    """Build the primary key holding the targets of one (source, relationship) pair.

    Relationship entries live under the ``relationship`` type with id
    ``"{relationship_type}:{source_id}"``.

    Raises:
        InvalidResourceError: If either part is missing or malformed.
    """
    if (
        not isinstance(relationship_type, str)
        or not relationship_type
        or KEY_SEPARATOR in relationship_type
    ):
        raise InvalidResourceError(
            "Relationship type must be a non-empty string without the key separator",
            context={"field": "relationship_type", "value": relationship_type},
        )
    if not isinstance(source_id, str) or not source_id:
        raise InvalidResourceError(
            "Source id must be a non-empty string",
            context={"field": "source_id", "value": source_id},
        )
    return make_cache_key(RELATIONSHIP_TYPE, f"{relationship_type}{KEY_SEPARATOR}{source_id}")
