# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - /puzzle routes
Upload the puzzle photo, change its piece count, and enqueue split and
match as FastAPI background tasks. Progress and results are read from
GET /status.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Form, UploadFile, status

from app.api.middleware.error_handler import ImageValidationError
from app.config import get_settings
from app.core.errors import PieceLocatorError
from app.core.session import PuzzleSession
from app.dependencies import SessionDep
from app.models.hierarchy import HierarchyNode
from app.models.session import AcceptedResponse, Phase, PieceCountRequest, PuzzleResponse
from app.utils.image_utils import is_valid_image_bytes
from app.utils.logger import get_logger

router = APIRouter(tags=["puzzle"])
log = get_logger(__name__)

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp"}


def _read_validated_upload(upload: UploadFile) -> bytes:
    """
    Read and validate an uploaded image file.
    Raises ImageValidationError on format/size/content failures.
    """
    settings = get_settings()

    if upload.content_type not in ALLOWED_CONTENT_TYPES:
        raise ImageValidationError(
            f"Unsupported file type '{upload.content_type}'. "
            f"Allowed: {', '.join(sorted(ALLOWED_CONTENT_TYPES))}"
        )

    data = upload.file.read()

    if len(data) > settings.upload_max_bytes:
        raise ImageValidationError(
            f"File '{upload.filename}' exceeds maximum size "
            f"of {settings.upload_max_mb} MB."
        )

    if not is_valid_image_bytes(data):
        raise ImageValidationError(
            f"File '{upload.filename}' could not be decoded as a valid image. "
            "Ensure it is a non-corrupted JPEG, PNG, or WebP file."
        )

    log.debug("upload_read", filename=upload.filename, size_bytes=len(data))
    return data


def _puzzle_response(session: PuzzleSession) -> PuzzleResponse:
    image = session.image
    return PuzzleResponse(
        puzzle_id=image.id,
        width=image.width,
        height=image.height,
        grid=image.grid,
        phase=session.phase,
    )


# ─── Background Runners ──────────────────────────────────────────────────────
# Failures are already recorded on the session and surface via GET /status.

async def run_split(session: PuzzleSession) -> None:
    try:
        await session.split_puzzle()
    except PieceLocatorError as exc:
        log.info("background_split_ended", code=exc.code)


async def run_match(session: PuzzleSession, query: bytes) -> None:
    try:
        await session.match_piece(query)
    except PieceLocatorError as exc:
        log.info("background_match_ended", code=exc.code)


# ─── Routes ──────────────────────────────────────────────────────────────────

@router.post(
    "/puzzle",
    response_model=PuzzleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a puzzle photo",
    description=(
        "Starts a new session: any previous tiles, index and match are "
        "discarded. The grid is derived from piece_count."
    ),
)
async def upload_puzzle(
    image: UploadFile,
    session: SessionDep,
    piece_count: float = Form(...),
) -> PuzzleResponse:
    data = _read_validated_upload(image)
    session.upload_puzzle(data, piece_count)
    return _puzzle_response(session)


@router.patch(
    "/puzzle/pieces",
    response_model=PuzzleResponse,
    summary="Change the piece count",
    description="Re-derives the grid and discards tiles, index and match.",
)
async def change_piece_count(
    body: PieceCountRequest,
    session: SessionDep,
) -> PuzzleResponse:
    session.change_piece_count(body.piece_count)
    return _puzzle_response(session)


@router.post(
    "/puzzle/split",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Split the puzzle photo into tiles",
)
async def split_puzzle(
    background_tasks: BackgroundTasks,
    session: SessionDep,
) -> AcceptedResponse:
    image = session.check_can_split()
    background_tasks.add_task(run_split, session)
    log.info("split_enqueued", puzzle_id=image.id)
    return AcceptedResponse(puzzle_id=image.id, phase=Phase.SPLITTING)


@router.post(
    "/puzzle/match",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Locate a photographed piece",
)
async def match_piece(
    image: UploadFile,
    background_tasks: BackgroundTasks,
    session: SessionDep,
) -> AcceptedResponse:
    puzzle = session.check_can_match()
    query = _read_validated_upload(image)
    background_tasks.add_task(run_match, session, query)
    log.info("match_enqueued", puzzle_id=puzzle.id, size_bytes=len(query))
    return AcceptedResponse(puzzle_id=puzzle.id, phase=Phase.MATCHING)


@router.get(
    "/puzzle/hierarchy",
    response_model=list[HierarchyNode],
    summary="Hierarchy snapshot from the last split",
)
async def get_hierarchy(session: SessionDep) -> list[HierarchyNode]:
    return session.hierarchy_snapshot()


@router.delete(
    "/puzzle",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Reset the session",
)
async def reset_puzzle(session: SessionDep) -> None:
    session.reset()
