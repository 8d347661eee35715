# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Matching Engine Module
Public API for hierarchical-then-fallback piece matching.
"""

from app.modules.matching.matcher import (
    HIERARCHY_THRESHOLD,
    MATCH_THRESHOLD,
    TOP_K,
    TraversalResult,
    accept_match,
    evaluate_pieces,
    match_piece,
    select_best_node,
    traverse_hierarchy,
)
from app.modules.matching.similarity import cosine_similarity

__all__ = [
    # Similarity
    "cosine_similarity",
    # Descent
    "TraversalResult",
    "select_best_node",
    "traverse_hierarchy",
    # Scoring
    "evaluate_pieces",
    "accept_match",
    # Orchestrator
    "match_piece",
    # Constants
    "TOP_K",
    "HIERARCHY_THRESHOLD",
    "MATCH_THRESHOLD",
]
