# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - DINOv2 Feature Extractor
Wraps a Hugging Face DINOv2 checkpoint as a FeatureExtractor.

- The model is loaded lazily on the first extract() call, or eagerly via
  load() during app startup warm-up.
- The feature vector is the CLS token of the last hidden state,
  (D,) float32 on CPU.
- eval() + no_grad() keep inference deterministic for identical input.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Literal, Optional

import numpy as np
import torch

from app.core.errors import ExtractionError
from app.utils.image_utils import bgr_to_pil
from app.utils.logger import get_logger

log = get_logger(__name__)


def _get_device() -> str:
    if torch.cuda.is_available():
        return "cuda"
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return "mps"
    return "cpu"


class DinoFeatureExtractor:
    """
    DINOv2 CLS-token extractor.

    model/processor can be injected (tests, custom checkpoints); otherwise
    they are fetched with transformers' Auto classes on first use.
    """

    def __init__(
        self,
        model_name: str = "facebook/dinov2-small",
        cache_dir: Optional[Path] = None,
        model: Any = None,
        processor: Any = None,
        device: Optional[str] = None,
    ) -> None:
        self.model_name = model_name
        self._cache_dir = cache_dir
        self._model = model
        self._processor = processor
        self._device = device or ("cpu" if model is not None else _get_device())
        self._lock = threading.Lock()

    @property
    def status(self) -> Literal["idle", "ready"]:
        return "ready" if self._model is not None and self._processor is not None else "idle"

    @property
    def device(self) -> str:
        return self._device

    def load(self) -> None:
        """Load model + processor. Safe to call repeatedly."""
        with self._lock:
            if self._model is not None and self._processor is not None:
                log.debug("feature_model_already_loaded")
                return

            try:
                from transformers import AutoImageProcessor, AutoModel
            except ImportError as e:
                raise ImportError(
                    "transformers package not found. "
                    "Run: pip install transformers"
                ) from e

            cache_dir = str(self._cache_dir) if self._cache_dir else None
            log.info(
                "feature_model_loading",
                model=self.model_name,
                device=self._device,
                cache_dir=cache_dir,
            )
            try:
                processor = AutoImageProcessor.from_pretrained(
                    self.model_name, cache_dir=cache_dir
                )
                model = AutoModel.from_pretrained(self.model_name, cache_dir=cache_dir)
            except Exception as exc:
                raise ExtractionError(
                    f"Could not load feature model '{self.model_name}': {exc}"
                ) from exc

            model.eval()
            model.to(self._device)
            self._processor = processor
            self._model = model
            log.info("feature_model_loaded", model=self.model_name, device=self._device)

    @torch.no_grad()
    def extract(self, image_bgr: np.ndarray) -> np.ndarray:
        if image_bgr is None or image_bgr.size == 0:
            raise ExtractionError("Cannot extract features from an empty image.")
        self.load()

        try:
            inputs = self._processor(images=bgr_to_pil(image_bgr), return_tensors="pt")
            pixel_values = inputs["pixel_values"].to(self._device)
            outputs = self._model(pixel_values=pixel_values)
            cls_token = outputs.last_hidden_state[0, 0]
        except Exception as exc:
            raise ExtractionError(f"Feature extraction failed: {exc}") from exc

        return cls_token.detach().cpu().numpy().astype(np.float32)
