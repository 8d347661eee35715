# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Application Configuration
All settings are loaded from environment variables with defaults tuned
for a single puzzle session. Override via backend/.env or environment.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ─── Feature Model ───────────────────────────────────────────────────────
    feature_model_name: str = "facebook/dinov2-small"
    # Load the model during app startup instead of on the first match
    feature_model_warmup: bool = True

    # ─── Storage ─────────────────────────────────────────────────────────────
    storage_backend: Literal["memory", "disk", "redis"] = "memory"
    storage_root: Path = Path("./storage")
    redis_url: str = "redis://localhost:6379/0"
    storage_ttl_seconds: int = 86400  # 24 hours

    # ─── Uploads ─────────────────────────────────────────────────────────────
    upload_max_mb: int = 20
    # Long edge cap for the puzzle photo and for the query piece photo
    puzzle_max_dimension: int = 4096
    query_max_dimension: int = 512

    # ─── Tiling ──────────────────────────────────────────────────────────────
    thumbnail_size: int = 160

    # ─── Matching ────────────────────────────────────────────────────────────
    match_threshold: float = 0.78
    hierarchy_threshold: float = 0.55
    top_k: int = 5

    # ─── Hierarchy ───────────────────────────────────────────────────────────
    hierarchy_root_rows: int = 3
    hierarchy_root_cols: int = 4
    hierarchy_leaf_size: int = 4
    hierarchy_max_depth: int = 6
    # Off keeps the inclusive-edge assignment (a center on a shared edge
    # lands in both cells)
    hierarchy_half_open_bounds: bool = False

    # ─── Logging ─────────────────────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ─── Server ──────────────────────────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 8000

    # ─── Derived helpers ─────────────────────────────────────────────────────
    @property
    def upload_max_bytes(self) -> int:
        return self.upload_max_mb * 1024 * 1024

    @property
    def feature_cache_dir(self) -> Path:
        return self.storage_root / "models"

    @property
    def blob_dir(self) -> Path:
        return self.storage_root / "blobs"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached singleton Settings instance."""
    return Settings()
