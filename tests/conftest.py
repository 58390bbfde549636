"""
Pytest configuration and fixtures for resource cache tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Generator
from unittest.mock import patch

import pytest

from rescache.cache.persistence import CachePersistence
from rescache.cache.resource_cache import ResourceCache, reset_resource_cache
from rescache.config import Settings, clear_settings_cache
from rescache.types import ResourceType

# 2025-05-22T00:00:00Z
EPOCH_START = 1_747_872_000.0


class ManualClock:
    """Clock returning a fixed epoch time until advanced."""

    def __init__(self, start: float = EPOCH_START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingLogger:
    """Log sink that keeps every call for assertions."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def _record(self, level: str, msg: str, **kwargs: Any) -> None:
        self.records.append((level, msg, kwargs))

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._record("debug", msg, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._record("info", msg, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._record("warning", msg, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._record("error", msg, **kwargs)

    def at(self, level: str) -> list[tuple[str, dict[str, Any]]]:
        """Messages and extras logged at one level."""
        return [(msg, extra) for lvl, msg, extra in self.records if lvl == level]


def make_resource(
    resource_id: str = "p1",
    resource_type: ResourceType | str = ResourceType.PROJECT,
    **fields: Any,
) -> dict[str, Any]:
    """Create a resource dict shaped like the orchestrator's resources."""
    resource: dict[str, Any] = {
        "id": resource_id,
        "type": resource_type,
        "version": 1,
        "status": "active",
        "createdAt": "2025-05-22T00:00:00Z",
        "updatedAt": "2025-05-22T00:00:00Z",
        "deletedAt": None,
    }
    resource.update(fields)
    return resource


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def clock() -> ManualClock:
    """Provide a manually advanced clock."""
    return ManualClock()


@pytest.fixture
def log_sink() -> RecordingLogger:
    """Provide a recording log sink."""
    return RecordingLogger()


@pytest.fixture
def persistence(
    temp_dir: Path, clock: ManualClock, log_sink: RecordingLogger
) -> CachePersistence:
    """Provide a persistence store writing under temp_dir."""
    return CachePersistence(temp_dir / "cache", clock=clock, log_sink=log_sink)


@pytest.fixture
def cache(
    persistence: CachePersistence, clock: ManualClock, log_sink: RecordingLogger
) -> ResourceCache:
    """Provide an empty cache sharing the test clock and log sink."""
    return ResourceCache(persistence=persistence, clock=clock, log_sink=log_sink)


@pytest.fixture
def mock_env_vars(temp_dir: Path) -> Generator[dict[str, str], None, None]:
    """Provide environment variables for settings tests."""
    env_vars = {
        "CACHE_DIR": str(temp_dir / "env_cache"),
        "SNAPSHOT_FILENAME": "snapshot.json",
        "RESTORE_ON_STARTUP": "true",
        "PERSIST_ON_SHUTDOWN": "true",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Generator[Settings, None, None]:
    """Provide a Settings instance built from mock_env_vars."""
    from rescache.config import get_settings

    settings = get_settings()
    yield settings
    clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_shared_state() -> Generator[None, None, None]:
    """Reset cached settings and the shared cache around each test."""
    clear_settings_cache()
    reset_resource_cache()
    yield
    clear_settings_cache()
    reset_resource_cache()
