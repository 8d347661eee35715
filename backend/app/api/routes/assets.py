# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - GET /assets/pieces/{piece_id}/{kind}
Serves a tile image or its thumbnail as PNG straight from the blob store.
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter
from fastapi.responses import Response

from app.dependencies import SessionDep
from app.utils.logger import get_logger

router = APIRouter(tags=["assets"])
log = get_logger(__name__)


@router.get(
    "/assets/pieces/{piece_id}/{kind}",
    summary="Retrieve a tile or thumbnail image",
    description="kind is 'tile' for the full crop or 'thumbnail' for the preview.",
    response_class=Response,
    responses={200: {"content": {"image/png": {}}}},
)
async def get_piece_asset(
    piece_id: str,
    kind: Literal["tile", "thumbnail"],
    session: SessionDep,
) -> Response:
    data = session.piece_asset(piece_id, kind)
    log.debug("asset_served", piece_id=piece_id, kind=kind, size_bytes=len(data))
    return Response(content=data, media_type="image/png")
