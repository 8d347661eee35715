# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - FastAPI Dependencies
Singleton providers for the blob store, the feature extractor and the
puzzle session. All heavy objects are instantiated once at startup via
the lifespan event in main.py and stored here as module-level singletons.
Route handlers access them via FastAPI's Depends() injection.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from app.config import Settings, get_settings
from app.core.blob_store import BlobStore, DiskBlobStore, InMemoryBlobStore, RedisBlobStore
from app.core.session import PuzzleSession
from app.modules.feature_extraction.extractor import FeatureExtractor
from app.utils.logger import get_logger

log = get_logger(__name__)

# ─── Blob Store ──────────────────────────────────────────────────────────────


def build_blob_store(settings: Settings) -> BlobStore:
    """Pick the blob backend from STORAGE_BACKEND."""
    if settings.storage_backend == "redis":
        log.info("init_blob_store", backend="redis", url=settings.redis_url)
        return RedisBlobStore(
            redis_url=settings.redis_url,
            ttl_seconds=settings.storage_ttl_seconds,
        )
    if settings.storage_backend == "disk":
        log.info("init_blob_store", backend="disk", root=str(settings.blob_dir))
        return DiskBlobStore(settings.blob_dir)
    log.info("init_blob_store", backend="memory")
    return InMemoryBlobStore()


def build_extractor(settings: Settings) -> FeatureExtractor:
    # Imported here so torch is only loaded when the real model is wanted
    from app.modules.feature_extraction.dino_extractor import DinoFeatureExtractor

    return DinoFeatureExtractor(
        model_name=settings.feature_model_name,
        cache_dir=settings.feature_cache_dir,
    )


# ─── Session Singleton ───────────────────────────────────────────────────────

_session: PuzzleSession | None = None


def init_session(extractor: FeatureExtractor | None = None) -> PuzzleSession:
    """
    Initialise the PuzzleSession singleton.
    Called once during application lifespan startup. Tests pass their own
    extractor to avoid downloading model weights.
    """
    global _session
    settings = get_settings()
    if _session is not None:
        _session.close()
    _session = PuzzleSession(
        blob_store=build_blob_store(settings),
        extractor=extractor or build_extractor(settings),
        settings=settings,
    )
    return _session


def shutdown_session() -> None:
    global _session
    if _session is not None:
        _session.close()
    _session = None


def get_session() -> PuzzleSession:
    """
    FastAPI dependency: inject the PuzzleSession singleton into route handlers.

    Usage in a route:
        @router.get("/status")
        def get_status(session: SessionDep):
            return session.status()
    """
    if _session is None:
        raise RuntimeError(
            "PuzzleSession has not been initialised. "
            "Ensure init_session() is called during app lifespan startup."
        )
    return _session


# Annotated type alias for clean route signatures
SessionDep = Annotated[PuzzleSession, Depends(get_session)]
