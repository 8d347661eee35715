# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Tile and Match Models
Data structures passed between the splitter, the feature cache and the
matcher.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.hierarchy import HierarchyPathItem


class SplitPiece(BaseModel):
    """
    One tile as produced by the splitter, before persistence.
    Image payloads are PNG-encoded bytes.
    """
    id: str
    row: int = Field(..., ge=0)
    col: int = Field(..., ge=0)
    width: int
    height: int
    tile_png: bytes = Field(..., repr=False)
    thumbnail_png: bytes = Field(..., repr=False)


class PieceRecord(BaseModel):
    """Persisted tile metadata owned by the session."""
    id: str
    row: int = Field(..., ge=0)
    col: int = Field(..., ge=0)
    width: int
    height: int
    blob_key: str
    thumbnail_key: str
    embedding_key: Optional[str] = None
    # Last similarity score assigned by the matcher, when ranked
    score: Optional[float] = None


class PieceVector(BaseModel):
    """Tile position plus its feature vector, as fed to the matcher."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    piece_id: str
    row: int
    col: int
    width: int = 0
    height: int = 0
    # np.ndarray (D,) float32
    vector: Any = Field(..., repr=False)


class MatchCandidate(BaseModel):
    piece_id: str
    row: int
    col: int
    score: float
    rank: int = Field(..., ge=1)


class MatchOutcome(BaseModel):
    """
    Matcher output. best_match is set only when the top candidate clears
    the global match threshold; candidates are returned either way.
    """
    best_match: Optional[MatchCandidate] = None
    candidates: list[MatchCandidate] = Field(default_factory=list)
    path: list[HierarchyPathItem] = Field(default_factory=list)
    used_fallback: bool = False
