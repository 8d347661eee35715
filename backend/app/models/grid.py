# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Grid Models
Row/column layout derived from the requested piece count, and the
per-tile pixel size derived from the layout and the photo dimensions.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PuzzleGrid(BaseModel):
    """Immutable rows x cols layout. rows * cols always equals total_pieces."""
    model_config = ConfigDict(frozen=True)

    rows: int = Field(..., ge=1)
    cols: int = Field(..., ge=1)
    total_pieces: int = Field(..., ge=1)

    @model_validator(mode="after")
    def _check_product(self) -> "PuzzleGrid":
        if self.rows * self.cols != self.total_pieces:
            raise ValueError(
                f"rows*cols must equal total_pieces "
                f"({self.rows}*{self.cols} != {self.total_pieces})"
            )
        return self


class TileSize(BaseModel):
    """Pixel size of one tile. Floor-divided, so may be 0 for tiny images."""
    model_config = ConfigDict(frozen=True)

    width: int = Field(..., ge=0)
    height: int = Field(..., ge=0)
