# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Blob Keys and Payload Codecs
Every blob the session writes goes through one of the key builders below,
so a reset can clear the store wholesale.

Keys per tile:
    {piece_id}-blob        PNG tile
    {piece_id}-thumb       PNG thumbnail
    {piece_id}-embedding   .npy feature vector
Per split:
    hierarchy-{puzzle_id}  JSON node list
"""

from __future__ import annotations

import io
import json
from pathlib import Path

import numpy as np

from app.config import get_settings
from app.models.hierarchy import HierarchyNode


# ─── Key Builders ────────────────────────────────────────────────────────────

def piece_id_for(puzzle_id: str, row: int, col: int) -> str:
    return f"{puzzle_id}-{row}-{col}"


def piece_blob_key(piece_id: str) -> str:
    return f"{piece_id}-blob"


def thumbnail_key(piece_id: str) -> str:
    return f"{piece_id}-thumb"


def embedding_key(piece_id: str) -> str:
    return f"{piece_id}-embedding"


def hierarchy_key(puzzle_id: str) -> str:
    return f"hierarchy-{puzzle_id}"


# ─── Disk Layout ─────────────────────────────────────────────────────────────

def blob_dir() -> Path:
    return get_settings().blob_dir


def blob_path(key: str, root: Path | None = None) -> Path:
    """File path for a key under the disk backend. Keys never contain '/'."""
    safe = key.replace("/", "_")
    return (root or blob_dir()) / f"{safe}.bin"


# ─── Payload Codecs ──────────────────────────────────────────────────────────

def vector_to_bytes(vector: np.ndarray) -> bytes:
    buf = io.BytesIO()
    np.save(buf, np.asarray(vector, dtype=np.float32), allow_pickle=False)
    return buf.getvalue()


def bytes_to_vector(data: bytes) -> np.ndarray:
    return np.load(io.BytesIO(data), allow_pickle=False)


def hierarchy_to_bytes(nodes: list[HierarchyNode]) -> bytes:
    return json.dumps([n.model_dump() for n in nodes]).encode("utf-8")


def bytes_to_hierarchy(data: bytes) -> list[HierarchyNode]:
    return [HierarchyNode.model_validate(n) for n in json.loads(data)]
