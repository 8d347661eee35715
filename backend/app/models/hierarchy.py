# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Spatial Hierarchy Models
Flat node list with id references to parent and children. Level 0 nodes
are the root regions of the photo; deeper levels are quadrants.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Bounds(BaseModel):
    """Axis-aligned region in photo pixel coordinates (may be fractional)."""
    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float
    height: float

    @property
    def x_max(self) -> float:
        return self.x + self.width

    @property
    def y_max(self) -> float:
        return self.y + self.height


class HierarchyNode(BaseModel):
    id: str
    level: int = Field(..., ge=0)
    parent_id: Optional[str] = None
    child_ids: list[str] = Field(default_factory=list)
    bounds: Bounds
    piece_ids: list[str] = Field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return not self.child_ids


class HierarchyConfig(BaseModel):
    """Shape of the index: root region layout, leaf size and depth cap."""
    model_config = ConfigDict(frozen=True)

    root_rows: int = Field(3, ge=1)
    root_cols: int = Field(4, ge=1)
    leaf_size: int = Field(4, ge=1)
    max_depth: int = Field(6, ge=1)
    # False reproduces the inclusive-edge assignment; True assigns each
    # center to exactly one cell ([x, x+w) except the last cell per axis)
    half_open_bounds: bool = False


DEFAULT_HIERARCHY_CONFIG = HierarchyConfig()


class HierarchyPathItem(BaseModel):
    """One step of the root-to-leaf descent recorded for diagnostics."""
    node_id: str
    level: int
    score: float
    bounds: Bounds
