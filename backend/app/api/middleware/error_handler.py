# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Global Error Handler
Converts engine errors and unhandled exceptions into structured JSON error
responses. Registered on the FastAPI app in main.py.

    INVALID_PIECE_COUNT, IMAGE_DECODE_ERROR, IMAGE_VALIDATION_ERROR -> 422
    INVALID_PHASE, TASK_SUPERSEDED                                  -> 409
    NO_PUZZLE, STORAGE_MISSING                                      -> 404
    everything else                                                 -> 500
"""

from __future__ import annotations

import traceback

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.core.errors import (
    ImageDecodeError,
    InvalidPhaseError,
    InvalidPieceCount,
    NoPuzzleError,
    PieceLocatorError,
    StorageMissing,
    TaskSuperseded,
)
from app.utils.logger import get_logger

log = get_logger(__name__)


class ImageValidationError(ValueError):
    """Raised when an uploaded image fails content-type or size validation."""


_STATUS_BY_ERROR: list[tuple[type[PieceLocatorError], int]] = [
    (InvalidPieceCount, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ImageDecodeError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidPhaseError, status.HTTP_409_CONFLICT),
    (TaskSuperseded, status.HTTP_409_CONFLICT),
    (NoPuzzleError, status.HTTP_404_NOT_FOUND),
    (StorageMissing, status.HTTP_404_NOT_FOUND),
]


def status_for(exc: PieceLocatorError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _error_body(code: str, message: str, detail: str | None = None) -> dict:
    body = {"error": {"code": code, "message": message}}
    if detail:
        body["error"]["detail"] = detail
    return body


def register_error_handlers(app: FastAPI) -> None:
    """
    Register all global exception handlers on the FastAPI application.
    Call this in main.py after creating the app instance.
    """

    @app.exception_handler(ImageValidationError)
    async def image_validation_handler(
        req: Request, exc: ImageValidationError
    ) -> JSONResponse:
        log.warning("image_validation_error", path=str(req.url), error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_body(
                code="IMAGE_VALIDATION_ERROR",
                message=str(exc),
            ),
        )

    @app.exception_handler(PieceLocatorError)
    async def locator_error_handler(
        req: Request, exc: PieceLocatorError
    ) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            log.error("engine_error", path=str(req.url), code=exc.code, error=exc.message)
        else:
            log.warning("request_rejected", path=str(req.url), code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=status_code,
            content=_error_body(code=exc.code, message=exc.message),
        )

    @app.exception_handler(Exception)
    async def generic_handler(req: Request, exc: Exception) -> JSONResponse:
        tb = traceback.format_exc()
        log.error(
            "unhandled_exception",
            path=str(req.url),
            error=str(exc),
            exc_type=type(exc).__name__,
            traceback=tb,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(
                code="INTERNAL_SERVER_ERROR",
                message="An unexpected error occurred.",
            ),
        )
