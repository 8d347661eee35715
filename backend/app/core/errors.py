# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Error Taxonomy
Every failure the engine reports derives from PieceLocatorError and carries
a stable machine-readable code. The HTTP layer maps codes to status codes
(see api/middleware/error_handler.py).
"""

from __future__ import annotations


class PieceLocatorError(Exception):
    """Base class for all engine errors."""

    code = "UNKNOWN"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidPieceCount(PieceLocatorError, ValueError):
    """Requested piece count is non-finite or below 1."""

    code = "INVALID_PIECE_COUNT"


class ImageDecodeError(PieceLocatorError, ValueError):
    """Puzzle or query image bytes could not be decoded."""

    code = "IMAGE_DECODE_ERROR"


class SplitError(PieceLocatorError):
    """Cropping or encoding failed while tiling; no tiles are published."""

    code = "SPLIT_ERROR"


class StorageMissing(PieceLocatorError, KeyError):
    """An expected blob is absent from the blob store."""

    code = "STORAGE_MISSING"

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.message


class ExtractionError(PieceLocatorError):
    """The feature extractor failed to produce a vector."""

    code = "EXTRACTION_ERROR"


class TaskSuperseded(PieceLocatorError):
    """A newer request of the same task type replaced a pending one."""

    code = "TASK_SUPERSEDED"


class InvalidPhaseError(PieceLocatorError):
    """The operation is not allowed from the session's current phase."""

    code = "INVALID_PHASE"


class NoPuzzleError(PieceLocatorError):
    """No puzzle image has been uploaded yet."""

    code = "NO_PUZZLE"


class UnknownError(PieceLocatorError):
    """Catch-all wrapper for unexpected exceptions escaping a task."""

    code = "UNKNOWN"


def as_locator_error(exc: BaseException) -> PieceLocatorError:
    """Return exc unchanged if it is already in the taxonomy, else wrap it."""
    if isinstance(exc, PieceLocatorError):
        return exc
    wrapped = UnknownError(f"{type(exc).__name__}: {exc}")
    wrapped.__cause__ = exc
    return wrapped
