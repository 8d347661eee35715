# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Feature Extraction Module
Public API for the feature extractor contract and the per-session cache.
The DINOv2 adapter lives in dino_extractor and is imported directly by the
app wiring so that torch is only loaded where it is needed.
"""

from app.modules.feature_extraction.extractor import FeatureExtractor
from app.modules.feature_extraction.feature_cache import FeatureCache

__all__ = [
    "FeatureExtractor",
    "FeatureCache",
]
