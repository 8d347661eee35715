# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Feature Cache
Per-session read-through cache from tile id / hierarchy node id to feature
vector.

Tile lookup order:
  1. in-memory map
  2. blob store ({piece_id}-embedding, .npy)
  3. extractor on the decoded tile blob, then persisted to the blob store

Node vectors are the element-wise mean of their member tiles' vectors.
A node with no resolvable members gets a zero vector of the session
dimension (the length of the first vector seen), never an error.

Caching is by id, not by content. Concurrent requests for the same id
collapse into one computation via a per-id lock.

clear() starts a new generation. A caller that captured an older
generation still gets its vectors back, but nothing it computes is written
to the cache or the blob store.
"""

from __future__ import annotations

import threading
from typing import Mapping, Optional

import numpy as np

from app.core.blob_store import BlobStore
from app.core.errors import ExtractionError, PieceLocatorError, StorageMissing
from app.models.hierarchy import HierarchyNode
from app.models.piece import PieceRecord
from app.modules.feature_extraction.extractor import FeatureExtractor
from app.utils.image_utils import bytes_to_bgr
from app.utils.logger import get_logger
from app.utils.storage import bytes_to_vector, embedding_key, vector_to_bytes

log = get_logger(__name__)


class FeatureCache:
    """
    Holds every tile and node vector for one puzzle session.
    Lifetime equals the session; clear() on reset.
    """

    def __init__(self, extractor: FeatureExtractor, blob_store: BlobStore) -> None:
        self._extractor = extractor
        self._blobs = blob_store
        self._piece_vectors: dict[str, np.ndarray] = {}
        self._node_vectors: dict[str, np.ndarray] = {}
        self._dimension: Optional[int] = None
        self._generation = 0

        self._lock = threading.RLock()
        self._key_locks: dict[str, threading.Lock] = {}

    # ── Locking ──────────────────────────────────────────────────────────────

    def _lock_for(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _note_dimension(self, vector: np.ndarray) -> None:
        with self._lock:
            if self._dimension is None:
                self._dimension = int(vector.shape[0])
                log.debug("feature_dimension_established", dimension=self._dimension)

    # ── Tiles ────────────────────────────────────────────────────────────────

    def ensure_piece_vector(
        self, piece: PieceRecord, generation: Optional[int] = None
    ) -> np.ndarray:
        """
        Return the vector for a tile, computing and persisting it on a miss.
        A vector computed for a stale generation is returned but not stored.

        Raises:
            StorageMissing:  tile image blob is absent
            ImageDecodeError: tile blob is not a decodable image
            ExtractionError: extractor failed
        """
        cached = self._piece_vectors.get(piece.id)
        if cached is not None:
            return cached

        with self._lock_for(f"piece:{piece.id}"):
            cached = self._piece_vectors.get(piece.id)
            if cached is not None:
                return cached

            if generation is None:
                generation = self._generation
            key = piece.embedding_key or embedding_key(piece.id)
            stored = self._blobs.get(key)
            if stored is not None:
                vector = bytes_to_vector(stored)
                source = "blob_store"
            else:
                vector = self._compute(piece)
                source = "extractor"

            with self._lock:
                if generation != self._generation:
                    log.debug("stale_piece_vector_dropped", piece_id=piece.id)
                    return vector
                if source == "extractor":
                    self._blobs.put(key, vector_to_bytes(vector))
                self._note_dimension(vector)
                self._piece_vectors[piece.id] = vector
                piece.embedding_key = key
            log.debug("piece_vector_ready", piece_id=piece.id, source=source)
            return vector

    def _compute(self, piece: PieceRecord) -> np.ndarray:
        blob = self._blobs.get(piece.blob_key)
        if blob is None:
            raise StorageMissing(f"Tile image for piece {piece.id} not found in storage.")
        image = bytes_to_bgr(blob)
        return self.extract(image)

    def extract(self, image_bgr: np.ndarray) -> np.ndarray:
        """Run the extractor, mapping foreign failures to ExtractionError."""
        try:
            vector = self._extractor.extract(image_bgr)
        except PieceLocatorError:
            raise
        except Exception as exc:
            raise ExtractionError(f"Feature extractor failed: {exc}") from exc

        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vector.size == 0:
            raise ExtractionError("Feature extractor returned an empty vector.")
        return vector

    # ── Nodes ────────────────────────────────────────────────────────────────

    def ensure_node_vector(
        self,
        node: HierarchyNode,
        pieces_by_id: Mapping[str, PieceRecord],
        generation: Optional[int] = None,
    ) -> np.ndarray:
        """Mean of member tile vectors; zero vector when none resolve."""
        cached = self._node_vectors.get(node.id)
        if cached is not None:
            return cached

        with self._lock_for(f"node:{node.id}"):
            cached = self._node_vectors.get(node.id)
            if cached is not None:
                return cached

            if generation is None:
                generation = self._generation
            members = [
                self.ensure_piece_vector(pieces_by_id[pid], generation)
                for pid in node.piece_ids
                if pid in pieces_by_id
            ]
            if members:
                vector = np.mean(np.stack(members, axis=0), axis=0).astype(np.float32)
            else:
                vector = np.zeros(self._dimension or 1, dtype=np.float32)
                log.debug("node_vector_placeholder", node_id=node.id, dimension=vector.shape[0])

            with self._lock:
                if generation == self._generation:
                    self._node_vectors[node.id] = vector
            return vector

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def clear(self) -> None:
        with self._lock:
            self._piece_vectors.clear()
            self._node_vectors.clear()
            self._key_locks.clear()
            self._dimension = None
            self._generation += 1
        log.debug("feature_cache_cleared", generation=self._generation)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def summary(self) -> dict:
        return {
            "piece_vectors": len(self._piece_vectors),
            "node_vectors": len(self._node_vectors),
            "dimension": self._dimension,
        }
