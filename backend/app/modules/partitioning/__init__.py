# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Grid Partitioning Module
Public API for deriving the tile layout from a piece count.
"""

from app.modules.partitioning.grid_partitioner import (
    calculate_tile_size,
    derive_grid,
    normalize_piece_count,
)

__all__ = [
    "derive_grid",
    "calculate_tile_size",
    "normalize_piece_count",
]
