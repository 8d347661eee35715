# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Tile Splitting Module
Public API for cutting the puzzle photo into tiles and thumbnails.
"""

from app.modules.splitting.tile_splitter import DEFAULT_THUMBNAIL_SIZE, split_image

__all__ = [
    "split_image",
    "DEFAULT_THUMBNAIL_SIZE",
]
