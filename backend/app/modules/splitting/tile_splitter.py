# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Tile Splitter
Cuts the puzzle photo into grid tiles plus thumbnails.

Per tile, in row-major order:
  1. Crop the region at (col * tile_w, row * tile_h) of size tile_w x tile_h
  2. Encode the crop as PNG
  3. Derive an aspect-preserving thumbnail capped at thumbnail_size
     (never upscaled) and encode it as PNG
  4. Report progress (processed, total)

The source handle is owned by the splitter for the duration of the call
and is released on return, whether the split succeeded or not. Any crop or
encode failure aborts the remaining tiles; no partial list is returned.
"""

from __future__ import annotations

from typing import Callable, Optional

from app.core.errors import SplitError
from app.models.grid import PuzzleGrid, TileSize
from app.models.piece import SplitPiece
from app.utils.image_utils import SourceImage, bgr_to_png_bytes, fit_within
from app.utils.logger import get_logger
from app.utils.storage import piece_id_for

log = get_logger(__name__)

DEFAULT_THUMBNAIL_SIZE = 160


def split_image(
    image: SourceImage,
    grid: PuzzleGrid,
    tile_size: TileSize,
    puzzle_id: str,
    thumbnail_size: int = DEFAULT_THUMBNAIL_SIZE,
    progress: Optional[Callable[[int, int], None]] = None,
) -> list[SplitPiece]:
    """
    Split image into grid.rows x grid.cols tiles.

    Args:
        image:          Source handle. Closed by this call.
        grid:           Tile layout.
        tile_size:      Pixel size of each tile (see calculate_tile_size).
        puzzle_id:      Prefix for tile ids ("{puzzle_id}-{row}-{col}").
        thumbnail_size: Max thumbnail edge in pixels.
        progress:       Optional (processed, total) callback, called once
                        per completed tile.

    Returns:
        Ordered list of SplitPiece, row-major.

    Raises:
        SplitError: on an empty crop or any encode failure.
    """
    total = grid.rows * grid.cols
    pieces: list[SplitPiece] = []

    try:
        if tile_size.width <= 0 or tile_size.height <= 0:
            raise SplitError(
                f"Tile size {tile_size.width}x{tile_size.height} is empty; "
                f"the photo is too small for a {grid.rows}x{grid.cols} grid."
            )

        pixels = image.pixels
        log.info(
            "split_start",
            puzzle_id=puzzle_id,
            rows=grid.rows,
            cols=grid.cols,
            tile_w=tile_size.width,
            tile_h=tile_size.height,
        )

        for row in range(grid.rows):
            for col in range(grid.cols):
                sx = col * tile_size.width
                sy = row * tile_size.height
                crop = pixels[sy: sy + tile_size.height, sx: sx + tile_size.width]

                try:
                    tile_png = bgr_to_png_bytes(crop)
                    thumb_png = bgr_to_png_bytes(fit_within(crop, thumbnail_size))
                except Exception as exc:
                    raise SplitError(
                        f"Failed to encode tile ({row}, {col}): {exc}"
                    ) from exc

                pieces.append(
                    SplitPiece(
                        id=piece_id_for(puzzle_id, row, col),
                        row=row,
                        col=col,
                        width=tile_size.width,
                        height=tile_size.height,
                        tile_png=tile_png,
                        thumbnail_png=thumb_png,
                    )
                )
                if progress is not None:
                    progress(len(pieces), total)
    finally:
        image.close()

    log.info("split_complete", puzzle_id=puzzle_id, tiles=len(pieces))
    return pieces
