# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - FastAPI Application Entry Point
Builds the app around a single PuzzleSession. The lifespan owns the
session: it is created (and the feature model optionally warmed up) on
startup and its worker channels are stopped on shutdown.

Tests pass their own FeatureExtractor to create_app() so no DINOv2
checkpoint is needed.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.middleware.error_handler import register_error_handlers
from app.api.routes import assets, puzzle, status
from app.config import get_settings
from app.dependencies import get_session, init_session, shutdown_session
from app.modules.feature_extraction.extractor import FeatureExtractor
from app.utils.logger import configure_logging, get_logger

__version__ = "1.0.0"

log = get_logger(__name__)

# Front-end origins served during development and by the nginx image
DEV_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://localhost:80",
]


async def _warm_up_model(session) -> None:
    # Non-fatal: the first match loads the model if this fails
    try:
        await asyncio.to_thread(session.warm_up)
    except Exception as e:
        log.warning("feature_model_warmup_failed", error=str(e))
    else:
        log.info("feature_model_warm", status=session.status().model_status)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = get_settings()
    log.info(
        "piecelocator_startup",
        version=__version__,
        feature_model=settings.feature_model_name,
        storage_backend=settings.storage_backend,
        match_threshold=settings.match_threshold,
        hierarchy_threshold=settings.hierarchy_threshold,
    )

    session = init_session(app.state.extractor)
    if settings.feature_model_warmup:
        await _warm_up_model(session)

    yield

    shutdown_session()
    log.info("piecelocator_shutdown")


def create_app(extractor: Optional[FeatureExtractor] = None) -> FastAPI:
    """
    Build the FastAPI application.

    extractor: feature extractor handed to the session at startup. None
    builds the DINOv2 extractor named by FEATURE_MODEL_NAME.
    """
    settings = get_settings()

    app = FastAPI(
        title="PieceLocator",
        summary="Find where a jigsaw piece belongs from a photo of it.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.extractor = extractor

    app.add_middleware(
        CORSMiddleware,
        allow_origins=DEV_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    for module in (puzzle, status, assets):
        app.include_router(module.router)

    @app.get("/health", tags=["health"], summary="Health check")
    async def health() -> dict:
        return {
            "status": "ok",
            "service": "piecelocator",
            "version": __version__,
            "feature_model": settings.feature_model_name,
            "model_status": get_session().status().model_status,
            "storage_backend": settings.storage_backend,
        }

    return app


# Module-level app instance for uvicorn
app = create_app()
