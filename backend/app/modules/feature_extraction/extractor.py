# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Feature Extractor Contract
Any callable model that turns an image region into a fixed-length vector.
Implementations must be deterministic for identical input and raise
ExtractionError when they cannot produce a vector.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np


@runtime_checkable
class FeatureExtractor(Protocol):
    def extract(self, image_bgr: np.ndarray) -> np.ndarray:
        """Return a 1-D float32 feature vector for a BGR uint8 image."""
        ...
