"""
Collaborator interfaces for the cache.

This module defines:
- Clock: Callable returning epoch seconds, injectable for virtual-time tests
- LogSink: Leveled logger accepting a message plus structured keyword extras

ContextLogger from rescache.logging satisfies LogSink; so does any test double
exposing the same four methods.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

Clock = Callable[[], float]


@runtime_checkable
class LogSink(Protocol):
    """Leveled logging interface consumed by the cache and persistence store."""

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        ...

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        ...

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        ...

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        ...
