# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Structured Logging
structlog setup shared by the API, the session controller and the worker
channels. Entries emitted while a split or match runs carry puzzle_id and
task labels bound through task_context().
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, Processor

from app.config import get_settings

_TASK_KEYS = ("puzzle_id", "task")


def _stamp_service(
    logger: Any, method: str, event_dict: EventDict
) -> EventDict:
    event_dict.setdefault("service", "piecelocator")
    return event_dict


def _strip_uvicorn_noise(
    logger: Any, method: str, event_dict: EventDict
) -> EventDict:
    """uvicorn duplicates the message under color_message."""
    event_dict.pop("color_message", None)
    return event_dict


def _renderer(level_name: str) -> list[Processor]:
    if level_name == "DEBUG":
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [
        structlog.processors.dict_tracebacks,
        structlog.processors.JSONRenderer(sort_keys=True),
    ]


def configure_logging() -> None:
    """
    Install the structlog pipeline once at startup.

    DEBUG renders coloured console lines; any other level renders one JSON
    object per line on stdout so the output can be shipped as-is.
    """
    level_name = get_settings().log_level.upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        _stamp_service,
        _strip_uvicorn_noise,
    ]
    processors.extend(_renderer(level_name))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stdout),
        cache_logger_on_first_use=True,
    )

    # uvicorn and fastapi still log through the stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)


@contextmanager
def task_context(puzzle_id: str, task: str) -> Iterator[None]:
    """
    Bind puzzle_id and the task name to every entry logged inside the block.

        with task_context(image.id, "split"):
            log.info("split_started")
    """
    structlog.contextvars.bind_contextvars(puzzle_id=puzzle_id, task=task)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars(*_TASK_KEYS)


def get_logger(name: str = "piecelocator") -> structlog.BoundLogger:
    """Return a structlog bound logger, e.g. get_logger(__name__)."""
    return structlog.get_logger(name)
