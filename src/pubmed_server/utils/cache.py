"""
Two-tier response cache.

Entries live in memory and, when a cache directory is configured, are
mirrored to JSON files keyed by a SHA-256 fingerprint of (namespace, params).
Expired entries are treated as misses and purged lazily on read.  Disk I/O
problems never reach the caller: they are logged and the cache degrades to
memory-only.
"""

import hashlib
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from pubmed_server.constants import CACHE_TTL

logger = logging.getLogger(__name__)


class CacheIOError(Exception):
    """Raised by the disk tier when a cache file cannot be read or written."""


def fingerprint(namespace: str, params: dict[str, Any]) -> str:
    """Return a deterministic hex digest for the given namespace and params.

    Keys are sorted and ``None`` values dropped, so two parameter dicts that
    differ only in key order or in explicitly-absent fields hash identically.
    """
    cleaned = {k: v for k, v in params.items() if v is not None}
    raw = json.dumps({"ns": namespace, **cleaned}, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode()).hexdigest()


class CacheEntry(BaseModel):
    """A cached value and its expiry bookkeeping."""

    fingerprint: str
    value: Any
    stored_at: float
    ttl_seconds: int

    def is_valid(self, now: float) -> bool:
        return now < self.stored_at + self.ttl_seconds


class DiskCache:
    """
    JSON disk tier.

    Each entry is a file ``<fingerprint>.json`` containing
    {"fingerprint": ..., "data": ..., "cached_at": ..., "ttl": ...}.
    Writes go through a temporary file and ``os.replace`` so concurrent
    writers of one fingerprint never leave a torn file; the last one wins.
    """

    def __init__(self, directory: Path):
        self.directory = directory
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheIOError(f"Cannot create cache directory {directory}: {e}") from e

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def read(self, key: str) -> CacheEntry | None:
        path = self._path(key)
        try:
            raw = path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheIOError(f"Cannot read {path}: {e}") from e

        try:
            entry = json.loads(raw)
            return CacheEntry(
                fingerprint=key,
                value=entry["data"],
                stored_at=float(entry["cached_at"]),
                ttl_seconds=int(entry["ttl"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("Discarding corrupt cache file %s", path.name)
            self.delete(key)
            return None

    def write(self, entry: CacheEntry) -> None:
        payload = json.dumps(
            {
                "fingerprint": entry.fingerprint,
                "data": entry.value,
                "cached_at": entry.stored_at,
                "ttl": entry.ttl_seconds,
            },
            default=str,
        )
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            with os.fdopen(fd, "w") as fh:
                fh.write(payload)
            os.replace(tmp_name, self._path(entry.fingerprint))
        except OSError as e:
            raise CacheIOError(f"Cannot write cache entry {entry.fingerprint}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise CacheIOError(f"Cannot delete cache entry {key}: {e}") from e


class ResponseCache:
    """
    Fingerprint → parsed result cache with TTL.

    Caching is opt-in: with neither ``ttl_seconds`` nor ``directory`` every
    ``get`` misses and ``set`` is a no-op.  A directory without an explicit
    TTL uses ``CACHE_TTL``.
    """

    def __init__(
        self,
        ttl_seconds: int | None = None,
        directory: Path | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if ttl_seconds is None and directory is not None:
            ttl_seconds = CACHE_TTL
        self.ttl = ttl_seconds
        self.enabled = ttl_seconds is not None and ttl_seconds > 0
        self._clock = clock
        self._memory: dict[str, CacheEntry] = {}
        self._disk: DiskCache | None = None

        if self.enabled and directory is not None:
            try:
                self._disk = DiskCache(directory)
            except CacheIOError as e:
                logger.warning("Disk cache disabled, using memory only: %s", e)

    @property
    def persistent(self) -> bool:
        return self._disk is not None

    def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        now = self._clock()

        entry = self._memory.get(key)
        if entry is not None:
            if entry.is_valid(now):
                logger.debug("Cache hit (memory) %s", key[:12])
                return entry.value
            logger.debug("Cache expired (memory) %s", key[:12])
            del self._memory[key]

        if self._disk is None:
            return None

        try:
            entry = self._disk.read(key)
            if entry is None:
                return None
            if not entry.is_valid(now):
                logger.debug("Cache expired (disk) %s", key[:12])
                self._disk.delete(key)
                return None
        except CacheIOError as e:
            logger.warning("Cache read failed: %s", e)
            return None

        logger.debug("Cache hit (disk) %s", key[:12])
        self._memory[key] = entry
        return entry.value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        if not self.enabled:
            return
        entry = CacheEntry(
            fingerprint=key,
            value=value,
            stored_at=self._clock(),
            ttl_seconds=ttl if ttl is not None else self.ttl,
        )
        self._memory[key] = entry
        if self._disk is not None:
            try:
                self._disk.write(entry)
            except CacheIOError as e:
                logger.warning("Cache write failed: %s", e)

    def invalidate(self, key: str) -> None:
        self._memory.pop(key, None)
        if self._disk is not None:
            try:
                self._disk.delete(key)
            except CacheIOError as e:
                logger.warning("Cache invalidate failed: %s", e)

    def clear(self) -> None:
        """Drop the memory tier. Disk files expire on their own."""
        self._memory.clear()
