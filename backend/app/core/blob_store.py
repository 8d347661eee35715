# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Abstract BlobStore
Key/value byte storage for tile images, thumbnails, cached feature vectors
and hierarchy snapshots. A missing key is a normal condition: get() returns
None and the caller decides whether that is an error.

InMemoryBlobStore  - development / tests
DiskBlobStore      - survives restarts on a single host
RedisBlobStore     - shared storage with TTL expiry
"""

from __future__ import annotations

import shutil
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from app.utils.logger import get_logger
from app.utils.storage import blob_path

log = get_logger(__name__)


# ─── Abstract Interface ──────────────────────────────────────────────────────

class BlobStore(ABC):
    """
    Abstract base class for all blob backends.
    All methods are synchronous; the session calls them from worker threads.
    """

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Store data under key, replacing any previous value."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the bytes stored under key, or None if absent."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every entry owned by this store."""

    def put_many(self, items: dict[str, bytes]) -> None:
        for key, data in items.items():
            self.put(key, data)


# ─── In-Memory Implementation ────────────────────────────────────────────────

class InMemoryBlobStore(BlobStore):
    """
    Thread-safe in-memory store using a dict + RLock.
    All data is lost on process restart.
    """

    def __init__(self) -> None:
        self._store: dict[str, bytes] = {}
        self._lock = threading.RLock()

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._store[key] = bytes(data)

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._store.get(key)

    def clear(self) -> None:
        with self._lock:
            n = len(self._store)
            self._store.clear()
        log.debug("blob_store_cleared", backend="memory", entries=n)

    def count(self) -> int:
        """Return number of stored blobs (useful for health checks)."""
        with self._lock:
            return len(self._store)


# ─── Disk Implementation ─────────────────────────────────────────────────────

class DiskBlobStore(BlobStore):
    """One file per key under root. Writes go through a temp file + rename."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._lock = threading.RLock()
        self._root.mkdir(parents=True, exist_ok=True)
        log.info("disk_blob_store_ready", root=str(root))

    def put(self, key: str, data: bytes) -> None:
        path = blob_path(key, self._root)
        tmp = path.with_suffix(".tmp")
        with self._lock:
            tmp.write_bytes(data)
            tmp.replace(path)

    def get(self, key: str) -> Optional[bytes]:
        path = blob_path(key, self._root)
        with self._lock:
            if not path.exists():
                return None
            return path.read_bytes()

    def clear(self) -> None:
        with self._lock:
            if self._root.exists():
                shutil.rmtree(self._root)
            self._root.mkdir(parents=True, exist_ok=True)
        log.debug("blob_store_cleared", backend="disk", root=str(self._root))


# ─── Redis Implementation ────────────────────────────────────────────────────

class RedisBlobStore(BlobStore):
    """
    Redis-backed store. Blobs are stored as raw bytes with TTL expiry.
    Requires redis-py and a running Redis instance.
    """

    def __init__(self, redis_url: str, ttl_seconds: int = 86400) -> None:
        try:
            import redis as redis_lib
        except ImportError as e:
            raise ImportError(
                "redis package required for RedisBlobStore. "
                "Install with: pip install redis"
            ) from e

        self._client = redis_lib.from_url(redis_url, decode_responses=False)
        self._ttl = ttl_seconds
        self._prefix = "piecelocator:blob:"

        # Verify connection on init
        self._client.ping()
        log.info("redis_blob_store_connected", url=redis_url)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def put(self, key: str, data: bytes) -> None:
        self._client.setex(self._key(key), self._ttl, data)

    def get(self, key: str) -> Optional[bytes]:
        return self._client.get(self._key(key))

    def clear(self) -> None:
        keys = list(self._client.scan_iter(match=f"{self._prefix}*"))
        if keys:
            self._client.delete(*keys)
        log.debug("blob_store_cleared", backend="redis", entries=len(keys))
