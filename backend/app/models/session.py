# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Session State Models
Phase of the single puzzle session plus the snapshot returned by the
status endpoint, and the API request/response schemas.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

from app.models.grid import PuzzleGrid
from app.models.hierarchy import HierarchyPathItem
from app.models.piece import MatchCandidate


class Phase(str, Enum):
    IDLE = "idle"
    SPLITTING = "splitting"
    READY = "ready"
    MATCHING = "matching"
    MATCH_FOUND = "match-found"
    MATCH_NOT_FOUND = "match-not-found"


# Phases each operation may start from. SPLITTING/MATCHING are listed so
# a repeated request supersedes the pending one.
SPLIT_ALLOWED_FROM = frozenset({Phase.IDLE, Phase.READY, Phase.SPLITTING})
MATCH_ALLOWED_FROM = frozenset(
    {Phase.READY, Phase.MATCH_FOUND, Phase.MATCH_NOT_FOUND, Phase.MATCHING}
)


class PuzzleImage(BaseModel):
    """Uploaded puzzle photo metadata. Pixels are held by the session."""
    id: str
    width: int = Field(..., ge=1)
    height: int = Field(..., ge=1)
    grid: PuzzleGrid


class TaskProgress(BaseModel):
    processed: int = Field(0, ge=0)
    total: int = Field(0, ge=0)


class PuzzleError(BaseModel):
    code: str
    message: str
    context: Optional[Literal["upload", "split", "match"]] = None


class SessionStatus(BaseModel):
    """Serialisable snapshot returned by GET /status."""
    phase: Phase
    image: Optional[PuzzleImage] = None
    piece_count: int = 0
    split_progress: Optional[TaskProgress] = None
    match_progress: Optional[TaskProgress] = None
    matched_piece: Optional[MatchCandidate] = None
    top_matches: list[MatchCandidate] = Field(default_factory=list)
    hierarchy_node_count: int = 0
    hierarchy_path: list[HierarchyPathItem] = Field(default_factory=list)
    model_status: Literal["idle", "loading", "ready"] = "idle"
    error: Optional[PuzzleError] = None


# ─── API Request/Response Schemas ────────────────────────────────────────────

class PuzzleResponse(BaseModel):
    """Response body for POST /puzzle and PATCH /puzzle/pieces."""
    puzzle_id: str
    width: int
    height: int
    grid: PuzzleGrid
    phase: Phase


class PieceCountRequest(BaseModel):
    """Request body for PATCH /puzzle/pieces."""
    piece_count: float = Field(..., description="Requested number of pieces")


class AcceptedResponse(BaseModel):
    """Response body for the background split/match endpoints."""
    puzzle_id: str
    phase: Phase
    message: str = "Task accepted. Poll /status for progress."
