"""
Custom exception hierarchy for the resource cache.

All exceptions inherit from ResourceCacheError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class ResourceCacheError(Exception):
    """Base exception for all resource cache errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(ResourceCacheError):
    """Raised when configuration is invalid or a collaborator is missing.

    Examples:
        - persist() called on a cache with no persistence store attached
        - Snapshot file name containing path separators
    """

    pass


class InvalidResourceError(ResourceCacheError):
    """Raised when a resource or lookup lacks its identifying fields.

    Cache operations catch this and degrade to a logged miss/no-op.

    Context should include:
        - field: The missing or invalid field ("type", "id", "ttl", "tags")
        - value: The offending value
    """

    pass


class PersistenceError(ResourceCacheError):
    """Raised when writing the cache snapshot fails.

    Context should include:
        - path: The snapshot file path
        - entries: Number of entries that were being written
    """

    pass


class SnapshotFormatError(ResourceCacheError):
    """Raised when a snapshot file does not have the expected structure.

    Context should include:
        - path: The snapshot file path
        - detail: What was wrong with the content
    """

    pass
