# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Hierarchy Builder
Organises tile ids into a multi-level spatial index used to prune search.

  1. Split the photo into root_rows x root_cols regions of near-equal size;
     the last row/column absorbs the remainder so regions cover the photo.
  2. Assign each tile to every region containing its center point
     ((col + 0.5) * W / cols, (row + 0.5) * H / rows).
  3. While a node holds more than leaf_size tiles and depth < max_depth,
     split it into tl / tr / bl / br quadrants. Empty regions and empty
     quadrants never become nodes.

Edge handling: by default all four edges are inclusive, so a center lying
exactly on a shared edge is assigned to both neighbours and a parent's
piece_ids can be smaller than the union of its children's. With
HierarchyConfig.half_open_bounds, cells are [x, x + w) except the last cell
along each axis, and every center lands in exactly one cell.

Node ids:  root-{row}-{col}, then {parent_id}-{quadrant_index}.
The output is the flattened depth-first node list. Pure, no I/O.
"""

from __future__ import annotations

from typing import Iterable, Protocol

from app.models.grid import PuzzleGrid
from app.models.hierarchy import (
    DEFAULT_HIERARCHY_CONFIG,
    Bounds,
    HierarchyConfig,
    HierarchyNode,
)
from app.utils.logger import get_logger

log = get_logger(__name__)

Point = tuple[float, float]


class _GridPlaced(Protocol):
    id: str
    row: int
    col: int


def compute_piece_centers(
    pieces: Iterable[_GridPlaced],
    image_width: float,
    image_height: float,
    grid: PuzzleGrid,
) -> dict[str, Point]:
    """Center of each tile in photo pixels, using unfloored tile size."""
    tile_w = image_width / grid.cols
    tile_h = image_height / grid.rows
    return {
        p.id: ((p.col + 0.5) * tile_w, (p.row + 0.5) * tile_h)
        for p in pieces
    }


def _contains(
    point: Point,
    bounds: Bounds,
    half_open: bool,
    closed_x: bool,
    closed_y: bool,
) -> bool:
    x, y = point
    if not half_open:
        return bounds.x <= x <= bounds.x_max and bounds.y <= y <= bounds.y_max
    in_x = bounds.x <= x and (x <= bounds.x_max if closed_x else x < bounds.x_max)
    in_y = bounds.y <= y and (y <= bounds.y_max if closed_y else y < bounds.y_max)
    return in_x and in_y


def assign_to_bounds(
    piece_ids: Iterable[str],
    bounds: Bounds,
    centers: dict[str, Point],
    half_open: bool = False,
    closed_x: bool = True,
    closed_y: bool = True,
) -> list[str]:
    """
    Return the ids whose center falls inside bounds, preserving input order.
    closed_x/closed_y only matter in half-open mode: they mark cells whose
    right/bottom edge is the photo edge and so stays inclusive.
    """
    allocated: list[str] = []
    for pid in piece_ids:
        center = centers.get(pid)
        if center is None:
            continue
        if _contains(center, bounds, half_open, closed_x, closed_y):
            allocated.append(pid)
    return allocated


def _quadrants(b: Bounds) -> list[tuple[Bounds, bool, bool]]:
    """(bounds, touches_right, touches_bottom) for tl, tr, bl, br."""
    mid_x = b.x + b.width / 2
    mid_y = b.y + b.height / 2
    right_w = b.x + b.width - mid_x
    bottom_h = b.y + b.height - mid_y
    return [
        (Bounds(x=b.x, y=b.y, width=mid_x - b.x, height=mid_y - b.y), False, False),
        (Bounds(x=mid_x, y=b.y, width=right_w, height=mid_y - b.y), True, False),
        (Bounds(x=b.x, y=mid_y, width=mid_x - b.x, height=bottom_h), False, True),
        (Bounds(x=mid_x, y=mid_y, width=right_w, height=bottom_h), True, True),
    ]


def _build_children(
    parent: HierarchyNode,
    centers: dict[str, Point],
    config: HierarchyConfig,
    collect: list[HierarchyNode],
    depth: int,
    closed_x: bool,
    closed_y: bool,
) -> None:
    if len(parent.piece_ids) <= config.leaf_size or depth >= config.max_depth:
        return

    for index, (bounds, right, bottom) in enumerate(_quadrants(parent.bounds)):
        child_closed_x = closed_x and right
        child_closed_y = closed_y and bottom
        assigned = assign_to_bounds(
            parent.piece_ids,
            bounds,
            centers,
            half_open=config.half_open_bounds,
            closed_x=child_closed_x,
            closed_y=child_closed_y,
        )
        if not assigned:
            continue

        child = HierarchyNode(
            id=f"{parent.id}-{index}",
            level=parent.level + 1,
            parent_id=parent.id,
            bounds=bounds,
            piece_ids=assigned,
        )
        collect.append(child)
        parent.child_ids.append(child.id)
        _build_children(
            child, centers, config, collect, depth + 1, child_closed_x, child_closed_y
        )


def build_hierarchy_nodes(
    pieces: list[_GridPlaced],
    image_width: int,
    image_height: int,
    grid: PuzzleGrid,
    config: HierarchyConfig = DEFAULT_HIERARCHY_CONFIG,
) -> list[HierarchyNode]:
    """
    Build the spatial index over pieces.

    Args:
        pieces:       Tile records (anything with id, row, col).
        image_width:  Photo width in pixels.
        image_height: Photo height in pixels.
        grid:         Tile layout the pieces were cut with.
        config:       Root layout, leaf size, depth cap, edge mode.

    Returns:
        Every node at every level, depth-first: each root followed by its
        subtree, roots in row-major order.
    """
    if not pieces:
        return []

    centers = compute_piece_centers(pieces, image_width, image_height, grid)
    all_ids = [p.id for p in pieces]
    nodes: list[HierarchyNode] = []

    root_w = image_width / config.root_cols
    root_h = image_height / config.root_rows

    for row in range(config.root_rows):
        for col in range(config.root_cols):
            last_col = col == config.root_cols - 1
            last_row = row == config.root_rows - 1
            bounds = Bounds(
                x=col * root_w,
                y=row * root_h,
                width=image_width - col * root_w if last_col else root_w,
                height=image_height - row * root_h if last_row else root_h,
            )
            assigned = assign_to_bounds(
                all_ids,
                bounds,
                centers,
                half_open=config.half_open_bounds,
                closed_x=last_col,
                closed_y=last_row,
            )
            if not assigned:
                continue

            root = HierarchyNode(
                id=f"root-{row}-{col}",
                level=0,
                bounds=bounds,
                piece_ids=assigned,
            )
            nodes.append(root)
            _build_children(root, centers, config, nodes, 1, last_col, last_row)

    log.info(
        "hierarchy_built",
        pieces=len(pieces),
        nodes=len(nodes),
        roots=sum(1 for n in nodes if n.level == 0),
        max_level=max((n.level for n in nodes), default=0),
        half_open=config.half_open_bounds,
    )
    return nodes


def leaves_under(nodes: list[HierarchyNode], node_id: str) -> list[HierarchyNode]:
    """All leaf nodes in the subtree rooted at node_id (the node itself if a leaf)."""
    by_id = {n.id: n for n in nodes}
    start = by_id.get(node_id)
    if start is None:
        return []
    leaves: list[HierarchyNode] = []
    stack = [start]
    while stack:
        node = stack.pop()
        if node.is_leaf:
            leaves.append(node)
            continue
        stack.extend(by_id[c] for c in reversed(node.child_ids) if c in by_id)
    return leaves
