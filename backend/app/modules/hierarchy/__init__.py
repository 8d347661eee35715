# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Spatial Hierarchy Module
Public API for building the quad-tree-like index over tiles.
"""

from app.modules.hierarchy.builder import (
    assign_to_bounds,
    build_hierarchy_nodes,
    compute_piece_centers,
    leaves_under,
)

__all__ = [
    "build_hierarchy_nodes",
    "compute_piece_centers",
    "assign_to_bounds",
    "leaves_under",
]
