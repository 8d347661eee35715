# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - GET /status
Returns the session phase, task progress, last error and latest match for
frontend polling.
"""

from __future__ import annotations

from fastapi import APIRouter

from app.dependencies import SessionDep
from app.models.session import SessionStatus
from app.utils.logger import get_logger

router = APIRouter(tags=["status"])
log = get_logger(__name__)


@router.get(
    "/status",
    response_model=SessionStatus,
    summary="Poll session progress",
    description=(
        "Poll every 1-2 seconds while phase is 'splitting' or 'matching'. "
        "When phase is 'match-found', matched_piece holds the accepted tile; "
        "top_matches and hierarchy_path are filled for both match outcomes."
    ),
)
async def get_status(session: SessionDep) -> SessionStatus:
    snapshot = session.status()
    log.debug("status_polled", phase=snapshot.phase.value, tiles=snapshot.piece_count)
    return snapshot
