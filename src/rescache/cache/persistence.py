"""
Snapshot persistence for the resource cache.

Saves the full cache contents to a versioned JSON file so a restart does not
lose unexpired entries. Each save writes its own uniquely named temp file in
the snapshot directory and renames it over the snapshot, so the file on disk
is always a complete snapshot. Writes on one store are serialized; their
order is not guaranteed.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import orjson

from rescache.cache.base import Clock, LogSink
from rescache.exceptions import PersistenceError, SnapshotFormatError
from rescache.logging import get_logger
from rescache.types import CacheEntry, RestoreStats, to_millis, utc_now

logger = get_logger(__name__)

SNAPSHOT_VERSION = 1
DEFAULT_SNAPSHOT_FILENAME = "cache-snapshot.json"


class CachePersistence:
    """Saves and restores cache entries to/from a snapshot file.

    Snapshot layout::

        {
          "version": 1,
          "timestamp": "2025-05-22T00:00:00+00:00",
          "entries": [
            {"key": "project:p1", "value": {...}, "expiresAt": 1747872060000,
             "tags": ["x"], "namespaces": ["team-a"]}
          ]
        }
    """

    def __init__(
        self,
        cache_dir: str | Path = ".cache",
        filename: str = DEFAULT_SNAPSHOT_FILENAME,
        clock: Clock = time.time,
        log_sink: LogSink | None = None,
    ) -> None:
        """Initialize the persistence store.

        Args:
            cache_dir: Directory holding the snapshot file.
            filename: Snapshot file name inside cache_dir.
            clock: Returns epoch seconds; used to filter expired entries on restore.
            log_sink: Logging sink; defaults to the module logger.
        """
        self.cache_dir = Path(cache_dir)
        self._file_path = self.cache_dir / filename
        self._clock = clock
        self._logger = log_sink or logger
        self._last_persist_time: str | None = None
        self._last_restore: RestoreStats | None = None
        self._write_lock = threading.Lock()

    @property
    def file_path(self) -> Path:
        """Path of the snapshot file."""
        return self._file_path

    @property
    def last_persist_time(self) -> str | None:
        """ISO timestamp of the last successful save (or of the restored snapshot)."""
        return self._last_persist_time

    @property
    def last_restore(self) -> RestoreStats | None:
        """Restored/expired counts from the last restore() call."""
        return self._last_restore

    def exists(self) -> bool:
        """Check if a snapshot file exists."""
        return self._file_path.exists()

    async def save(self, entries: Mapping[str, CacheEntry]) -> None:
        """Write all entries to the snapshot file.

        Args:
            entries: Mapping of primary key to CacheEntry.

        Raises:
            PersistenceError: If serialization or any file operation fails.
                The previous snapshot, if any, is left untouched.
        """
        timestamp = utc_now().isoformat()
        snapshot = {
            "version": SNAPSHOT_VERSION,
            "timestamp": timestamp,
            "entries": [self._entry_to_dict(key, entry) for key, entry in entries.items()],
        }

        loop = asyncio.get_running_loop()
        try:
            payload = orjson.dumps(snapshot, option=orjson.OPT_INDENT_2)
            await loop.run_in_executor(None, self._write_atomic, payload)
        except Exception as e:
            self._logger.error(
                "Failed to save cache snapshot",
                path=str(self._file_path),
                entries=len(snapshot["entries"]),
                error=str(e),
            )
            raise PersistenceError(
                "Failed to save cache snapshot",
                context={"path": str(self._file_path), "entries": len(snapshot["entries"])},
            ) from e

        self._last_persist_time = timestamp
        self._logger.info(
            "Saved cache snapshot",
            path=str(self._file_path),
            entries=len(snapshot["entries"]),
        )

    async def restore(self) -> dict[str, CacheEntry]:
        """Read unexpired entries back from the snapshot file.

        A missing file, an unknown version, or a corrupt file all degrade to an
        empty (or partial) result instead of raising.

        Returns:
            Mapping of primary key to CacheEntry for entries not yet expired.
        """
        result: dict[str, CacheEntry] = {}
        restored = 0
        expired = 0

        if not self._file_path.exists():
            self._logger.debug("No snapshot file found", path=str(self._file_path))
            self._last_restore = RestoreStats()
            return result

        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(None, self._file_path.read_bytes)
            snapshot = orjson.loads(raw)

            version = snapshot.get("version") if isinstance(snapshot, dict) else None
            if isinstance(version, bool) or version != SNAPSHOT_VERSION:
                self._logger.warning(
                    "Unknown snapshot version",
                    version=version,
                    path=str(self._file_path),
                )
                self._last_restore = RestoreStats()
                return result

            items = snapshot.get("entries")
            if not isinstance(items, list):
                raise SnapshotFormatError(
                    "Snapshot entries must be a list",
                    context={"path": str(self._file_path)},
                )

            now_ms = to_millis(self._clock())
            for item in items:
                key, entry = self._dict_to_entry(item)
                if entry.expires_at is not None and entry.expires_at < now_ms:
                    expired += 1
                    continue
                result[key] = entry
                restored += 1

            self._last_persist_time = snapshot.get("timestamp")
            self._logger.info(
                "Restored cache snapshot",
                restored=restored,
                expired=expired,
                path=str(self._file_path),
            )
        except FileNotFoundError:
            # Removed between the exists() check and the read
            pass
        except Exception as e:
            self._logger.error(
                "Failed to restore cache snapshot",
                path=str(self._file_path),
                restored=restored,
                error=str(e),
            )

        self._last_restore = RestoreStats(restored=restored, expired=expired)
        return result

    def _write_atomic(self, payload: bytes) -> None:
        """Write payload to a fresh temp file, fsync it, then rename over the snapshot.

        The temp file is private to this call and is removed if any step fails.
        """
        with self._write_lock:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, name = tempfile.mkstemp(
                dir=self.cache_dir, prefix=f"{self._file_path.name}.", suffix=".tmp"
            )
            temp_path = Path(name)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, self._file_path)
            except BaseException:
                self._discard_temp(temp_path)
                raise

    def _discard_temp(self, temp_path: Path) -> None:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError as e:
            self._logger.warning(
                "Failed to remove temporary snapshot", path=str(temp_path), error=str(e)
            )

    def _entry_to_dict(self, key: str, entry: CacheEntry) -> dict[str, Any]:
        """Convert a CacheEntry to its snapshot form."""
        data: dict[str, Any] = {"key": key, "value": entry.value}
        if entry.expires_at is not None:
            data["expiresAt"] = entry.expires_at
        data["tags"] = list(entry.tags)
        if entry.namespaces:
            data["namespaces"] = list(entry.namespaces)
        return data

    def _dict_to_entry(self, data: Any) -> tuple[str, CacheEntry]:
        """Convert a snapshot item back to (key, CacheEntry)."""
        if not isinstance(data, dict) or not isinstance(data.get("key"), str):
            raise SnapshotFormatError(
                "Snapshot entry is missing its key",
                context={"path": str(self._file_path), "detail": repr(data)[:80]},
            )
        if "value" not in data:
            raise SnapshotFormatError(
                "Snapshot entry is missing its value",
                context={"path": str(self._file_path), "key": data["key"]},
            )
        expires_at = data.get("expiresAt")
        if expires_at is not None and (
            isinstance(expires_at, bool) or not isinstance(expires_at, (int, float))
        ):
            raise SnapshotFormatError(
                "Snapshot entry has a non-numeric expiresAt",
                context={"path": str(self._file_path), "key": data["key"]},
            )
        tags = data.get("tags") or []
        return data["key"], CacheEntry(
            value=data["value"],
            expires_at=int(expires_at) if expires_at is not None else None,
            tags=tuple(tags),
            namespaces=tuple(data.get("namespaces") or ()),
        )
