# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Cosine Similarity
dot(a, b) / (||a|| * ||b||), defined as 0.0 when either norm is zero.
Accumulates in float64 and clamps to [-1, 1] so rounding never pushes a
score outside the valid range or turns an exact match into 1.0000001.
"""

from __future__ import annotations

import numpy as np


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity of two 1-D vectors.

    Raises:
        ValueError: if the vectors differ in length.
    """
    a64 = np.asarray(a, dtype=np.float64).reshape(-1)
    b64 = np.asarray(b, dtype=np.float64).reshape(-1)
    if a64.shape != b64.shape:
        raise ValueError(
            f"Feature dimension mismatch: {a64.shape[0]} vs {b64.shape[0]}"
        )

    norm_a = float(np.linalg.norm(a64))
    norm_b = float(np.linalg.norm(b64))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    score = float(np.dot(a64, b64) / (norm_a * norm_b))
    if not np.isfinite(score):
        return 0.0
    return max(-1.0, min(1.0, score))
