# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Matching Engine Orchestrator
Locates the grid position of a query piece from its feature vector.

Algorithm:
  1. Hierarchical descent (when nodes are given): from the root set, pick
     the node most similar to the query, record it in the path, and descend
     into its children until a node without children (the leaf) is reached.
     Ties keep the first node encountered.
  2. Leaf scoring: cosine-score the tiles of the leaf (all tiles when there
     is no hierarchy, or when none of the leaf's ids resolve), one progress
     update per tile. Stable sort descending, keep the top K.
  3. Fallback: if a hierarchy was used and the leaf's best score is below
     hierarchy_threshold, silently re-score every tile. The full ranking
     replaces the leaf ranking only if its best score is strictly higher.
  4. Accept: the top candidate is the match only if its score is at least
     match_threshold. Ranked candidates are returned either way.

Descent costs about depth x branching + leaf_size comparisons; the fallback
restores recall when noisy vectors route the query into the wrong branch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

import numpy as np

from app.models.hierarchy import HierarchyNode, HierarchyPathItem
from app.models.piece import MatchCandidate, MatchOutcome, PieceVector
from app.modules.matching.similarity import cosine_similarity
from app.utils.logger import get_logger

log = get_logger(__name__)

TOP_K = 5
HIERARCHY_THRESHOLD = 0.55
MATCH_THRESHOLD = 0.78


@dataclass
class TraversalResult:
    leaf: Optional[HierarchyNode] = None
    path: list[tuple[HierarchyNode, float]] = field(default_factory=list)


# ─── Hierarchical Descent ────────────────────────────────────────────────────

def _node_score(
    node: HierarchyNode,
    node_vectors: Mapping[str, np.ndarray],
    query: np.ndarray,
) -> float:
    vector = node_vectors.get(node.id)
    if vector is None:
        return 0.0
    return cosine_similarity(query, vector)


def select_best_node(
    candidates: list[HierarchyNode],
    node_vectors: Mapping[str, np.ndarray],
    query: np.ndarray,
) -> tuple[Optional[HierarchyNode], float]:
    """Highest-scoring node; strict '>' keeps the first of equal scores."""
    best_node: Optional[HierarchyNode] = None
    best_score = -np.inf
    for node in candidates:
        score = _node_score(node, node_vectors, query)
        if score > best_score:
            best_score = score
            best_node = node
    return best_node, float(best_score)


def traverse_hierarchy(
    nodes: list[HierarchyNode],
    node_vectors: Mapping[str, np.ndarray],
    query: np.ndarray,
    root_node_ids: Optional[list[str]] = None,
) -> TraversalResult:
    """
    Descend from the roots to a leaf along the best-scoring nodes.

    Roots are the explicit root_node_ids (unknown ids skipped) or every
    level-0 node. Children are resolved through child_ids.
    """
    if not nodes:
        return TraversalResult()

    by_id = {n.id: n for n in nodes}
    if root_node_ids is not None:
        candidates = [by_id[i] for i in root_node_ids if i in by_id]
    else:
        candidates = [n for n in nodes if n.level == 0]

    result = TraversalResult()
    while candidates:
        best, score = select_best_node(candidates, node_vectors, query)
        if best is None:
            break
        result.path.append((best, score))
        children = [by_id[c] for c in best.child_ids if c in by_id]
        if not children:
            result.leaf = best
            break
        candidates = children

    if result.leaf is None and result.path:
        result.leaf = result.path[-1][0]
    return result


# ─── Tile Scoring ────────────────────────────────────────────────────────────

def evaluate_pieces(
    query: np.ndarray,
    pieces: list[PieceVector],
    top_k: int = TOP_K,
    progress: Optional[Callable[[int, int], None]] = None,
) -> list[MatchCandidate]:
    """Score every piece and return the top_k, ranked 1..k."""
    total = len(pieces)
    scored: list[tuple[PieceVector, float]] = []
    for index, piece in enumerate(pieces):
        scored.append((piece, cosine_similarity(query, piece.vector)))
        if progress is not None:
            progress(index + 1, total)

    # list.sort is stable: equal scores keep input order
    scored.sort(key=lambda item: item[1], reverse=True)
    return [
        MatchCandidate(
            piece_id=piece.piece_id,
            row=piece.row,
            col=piece.col,
            score=score,
            rank=rank,
        )
        for rank, (piece, score) in enumerate(scored[:top_k], start=1)
    ]


def accept_match(
    ranked: list[MatchCandidate],
    match_threshold: float = MATCH_THRESHOLD,
) -> Optional[MatchCandidate]:
    """Top candidate if its score is at or above the threshold, else None."""
    if ranked and ranked[0].score >= match_threshold:
        return ranked[0]
    return None


def _leaf_subset(
    leaf: Optional[HierarchyNode],
    pieces: list[PieceVector],
) -> list[PieceVector]:
    if leaf is None or not leaf.piece_ids:
        return pieces
    wanted = set(leaf.piece_ids)
    subset = [p for p in pieces if p.piece_id in wanted]
    return subset or pieces


# ─── Orchestrator ────────────────────────────────────────────────────────────

def match_piece(
    query: np.ndarray,
    pieces: list[PieceVector],
    nodes: Optional[list[HierarchyNode]] = None,
    node_vectors: Optional[Mapping[str, np.ndarray]] = None,
    root_node_ids: Optional[list[str]] = None,
    *,
    top_k: int = TOP_K,
    hierarchy_threshold: float = HIERARCHY_THRESHOLD,
    match_threshold: float = MATCH_THRESHOLD,
    progress: Optional[Callable[[int, int], None]] = None,
) -> MatchOutcome:
    """
    Rank candidate tile positions for a query vector.

    Args:
        query:               (D,) query feature vector.
        pieces:              Every tile with its vector.
        nodes:               Optional hierarchy node list.
        node_vectors:        Vector per node id (missing ids score 0).
        root_node_ids:       Optional explicit descent roots.
        top_k:               Number of ranked candidates to keep.
        hierarchy_threshold: Leaf score below which a full scan runs.
        match_threshold:     Score required to accept the top candidate.
        progress:            (processed, total) callback for leaf scoring.
                             total is the size of the scored subset.

    Returns:
        MatchOutcome with best_match, ranked candidates and descent path.
    """
    traversal = TraversalResult()
    if nodes:
        traversal = traverse_hierarchy(nodes, node_vectors or {}, query, root_node_ids)

    hierarchy_used = bool(traversal.path)
    subset = _leaf_subset(traversal.leaf, pieces) if hierarchy_used else pieces
    ranked = evaluate_pieces(query, subset, top_k=top_k, progress=progress)
    leaf_best = ranked[0].score if ranked else None

    used_fallback = False
    if hierarchy_used and (leaf_best is None or leaf_best < hierarchy_threshold):
        full = evaluate_pieces(query, pieces, top_k=top_k)
        if full and (leaf_best is None or full[0].score > leaf_best):
            ranked = full
            used_fallback = True
        log.debug(
            "hierarchy_fallback_scan",
            leaf_best=leaf_best,
            full_best=full[0].score if full else None,
            replaced=used_fallback,
        )

    best_match = accept_match(ranked, match_threshold)

    path = [
        HierarchyPathItem(node_id=node.id, level=node.level, score=score, bounds=node.bounds)
        for node, score in traversal.path
    ]

    log.info(
        "match_complete",
        scored=len(subset),
        total_pieces=len(pieces),
        path_depth=len(path),
        leaf_id=traversal.leaf.id if traversal.leaf else None,
        top_score=ranked[0].score if ranked else None,
        accepted=best_match is not None,
        used_fallback=used_fallback,
    )

    return MatchOutcome(
        best_match=best_match,
        candidates=ranked,
        path=path,
        used_fallback=used_fallback,
    )
