# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Grid Partitioner
Derives the rows x cols tile layout from the user's piece count.

The scan starts at floor(sqrt(n)) and walks down to 1, returning the first
row count that divides n exactly. Because 1 divides every integer, the scan
always returns, so rows * cols == n holds for every valid n:

    120 -> 10 x 12
    100 -> 10 x 10
     17 ->  1 x 17   (prime: a single row)

The layout is never approximated. A prime count yields a 1 x n strip rather
than a near-square grid with empty cells.
"""

from __future__ import annotations

import math
import numbers

from app.core.errors import InvalidPieceCount
from app.models.grid import PuzzleGrid, TileSize
from app.utils.image_utils import round_half_up
from app.utils.logger import get_logger

log = get_logger(__name__)


def normalize_piece_count(total_pieces: float) -> int:
    """
    Validate a requested piece count and round it to the nearest integer.

    Raises:
        InvalidPieceCount: if the value is not a real number, is NaN or
                           infinite, or is below 1.
    """
    if isinstance(total_pieces, bool) or not isinstance(total_pieces, numbers.Real):
        raise InvalidPieceCount(f"Piece count must be a number, got {total_pieces!r}")
    if not math.isfinite(total_pieces) or total_pieces < 1:
        raise InvalidPieceCount(f"Piece count must be a finite number >= 1, got {total_pieces}")
    return max(1, round_half_up(float(total_pieces)))


def derive_grid(total_pieces: float) -> PuzzleGrid:
    """
    Compute the tile layout for a piece count.

    Args:
        total_pieces: Requested number of pieces. Fractional values are
                      rounded to the nearest integer.

    Returns:
        PuzzleGrid with rows <= floor(sqrt(n)) and rows * cols == n.

    Raises:
        InvalidPieceCount: see normalize_piece_count().
    """
    n = normalize_piece_count(total_pieces)
    start = math.isqrt(n)

    for rows in range(start, 0, -1):
        if n % rows == 0:
            grid = PuzzleGrid(rows=rows, cols=n // rows, total_pieces=n)
            log.debug("grid_derived", total_pieces=n, rows=grid.rows, cols=grid.cols)
            return grid

    # rows == 1 always divides n, so the loop above has returned
    raise AssertionError(f"no divisor found for {n}")


def calculate_tile_size(width: int, height: int, grid: PuzzleGrid) -> TileSize:
    """
    Pixel size of each tile for a photo of width x height.

    Uses floor division, so up to cols-1 pixels on the right and rows-1
    pixels at the bottom are not covered by any tile.
    """
    return TileSize(width=width // grid.cols, height=height // grid.rows)
