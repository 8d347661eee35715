# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Image I/O and Conversion Utilities
Shared helpers used by the session, the splitter and the feature extractor.
All internal processing uses BGR numpy arrays (OpenCV convention).
Conversion to RGB happens only at the feature model boundary.
"""

from __future__ import annotations

import math

import cv2
import numpy as np
from PIL import Image

from app.core.errors import ImageDecodeError


def round_half_up(value: float) -> int:
    """Round like a canvas does (0.5 goes up), not banker's rounding."""
    return int(math.floor(value + 0.5))


# ─── Encode / Decode ─────────────────────────────────────────────────────────

def bytes_to_bgr(data: bytes) -> np.ndarray:
    """Decode raw image bytes (from upload or blob store) to BGR numpy array."""
    if not data:
        raise ImageDecodeError("Empty image payload.")
    arr = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if img is None:
        raise ImageDecodeError("Could not decode image bytes.")
    return img


def bgr_to_png_bytes(img: np.ndarray) -> bytes:
    """Encode a BGR numpy array to PNG bytes (lossless)."""
    if img.size == 0:
        raise ValueError("Cannot encode an empty image.")
    success, buf = cv2.imencode(".png", img)
    if not success:
        raise RuntimeError("Failed to encode image to PNG bytes.")
    return buf.tobytes()


def decode_limited(data: bytes, max_long_edge: int) -> np.ndarray:
    """Decode bytes and downscale so the long edge is at most max_long_edge."""
    img = bytes_to_bgr(data)
    resized, _ = resize_long_edge(img, max_long_edge)
    return resized


# ─── Color Space ─────────────────────────────────────────────────────────────

def bgr_to_rgb(img: np.ndarray) -> np.ndarray:
    return cv2.cvtColor(img, cv2.COLOR_BGR2RGB)


def bgr_to_pil(img: np.ndarray) -> Image.Image:
    """Convert BGR numpy array to PIL Image (RGB mode)."""
    return Image.fromarray(bgr_to_rgb(img))


# ─── Resize ──────────────────────────────────────────────────────────────────

def resize_long_edge(img: np.ndarray, max_long_edge: int) -> tuple[np.ndarray, float]:
    """
    Resize image so its longest edge equals max_long_edge.
    Preserves aspect ratio. Returns (resized_image, scale_factor).
    Images already within the limit are returned as a copy, unscaled.
    """
    h, w = img.shape[:2]
    long_edge = max(h, w)
    if long_edge <= max_long_edge:
        return img.copy(), 1.0
    scale = max_long_edge / long_edge
    new_w = max(1, round_half_up(w * scale))
    new_h = max(1, round_half_up(h * scale))
    resized = cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_AREA)
    return resized, scale


def fit_within(img: np.ndarray, max_size: int) -> np.ndarray:
    """
    Scale img to fit a max_size x max_size box, preserving aspect ratio.
    Never upscales; each side is at least 1 px.
    """
    h, w = img.shape[:2]
    ratio = min(max_size / w, max_size / h, 1.0)
    new_w = max(1, round_half_up(w * ratio))
    new_h = max(1, round_half_up(h * ratio))
    if (new_w, new_h) == (w, h):
        return img.copy()
    return cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_AREA)


# ─── Source Handle ───────────────────────────────────────────────────────────

class SourceImage:
    """
    Owned handle over a decoded puzzle photo.

    A handle is moved into the splitter: once a split starts, the caller
    must not touch it again, and the splitter closes it when done. Reading
    pixels from a closed handle raises.
    """

    def __init__(self, pixels: np.ndarray) -> None:
        if pixels.ndim != 3 or pixels.shape[2] != 3:
            raise ImageDecodeError("Source image must be an HxWx3 array.")
        self._pixels: np.ndarray | None = pixels

    @classmethod
    def from_bytes(cls, data: bytes, max_long_edge: int | None = None) -> "SourceImage":
        if max_long_edge is None:
            return cls(bytes_to_bgr(data))
        return cls(decode_limited(data, max_long_edge))

    @property
    def closed(self) -> bool:
        return self._pixels is None

    @property
    def pixels(self) -> np.ndarray:
        if self._pixels is None:
            raise RuntimeError("Source image handle has already been released.")
        return self._pixels

    def close(self) -> None:
        self._pixels = None


# ─── Validation ──────────────────────────────────────────────────────────────

def is_valid_image_bytes(data: bytes) -> bool:
    """Return True if bytes can be decoded as a valid BGR image."""
    try:
        img = bytes_to_bgr(data)
    except ImageDecodeError:
        return False
    return img.ndim == 3 and img.shape[2] == 3
