# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
Phase 5 - Feature extraction tests.
All DINOv2 inference is mocked - no model weights or GPU required.
Tests cover: feature cache lookup order, persistence, node vectors,
error mapping, and the DINOv2 adapter's CLS-token extraction.
"""

import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import cv2
import numpy as np
import pytest
import torch

from app.core.blob_store import InMemoryBlobStore
from app.core.errors import ExtractionError, ImageDecodeError, StorageMissing
from app.models.hierarchy import Bounds, HierarchyNode
from app.models.piece import PieceRecord
from app.modules.feature_extraction import FeatureCache, FeatureExtractor
from app.utils.storage import bytes_to_vector, embedding_key, vector_to_bytes


# ─── Helpers ─────────────────────────────────────────────────────────────────

class _CountingExtractor:
    """Mean colour per channel, counting calls."""

    def __init__(self):
        self.calls = 0
        self._lock = threading.Lock()

    def extract(self, image_bgr):
        with self._lock:
            self.calls += 1
        return image_bgr.reshape(-1, 3).mean(axis=0).astype(np.float32)


class _BrokenExtractor:
    def extract(self, image_bgr):
        raise RuntimeError("cuda out of memory")


def _png(color, h: int = 8, w: int = 8) -> bytes:
    img = np.zeros((h, w, 3), dtype=np.uint8)
    img[:] = color
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return buf.tobytes()


def _record(pid: str, store: InMemoryBlobStore, color=None) -> PieceRecord:
    record = PieceRecord(
        id=pid, row=0, col=0, width=8, height=8,
        blob_key=f"{pid}-blob", thumbnail_key=f"{pid}-thumb",
    )
    if color is not None:
        store.put(record.blob_key, _png(color))
    return record


def _node(nid: str, piece_ids: list[str]) -> HierarchyNode:
    return HierarchyNode(
        id=nid, level=0, bounds=Bounds(x=0, y=0, width=1, height=1), piece_ids=piece_ids
    )


# ─── Piece Vectors ───────────────────────────────────────────────────────────

def test_extractor_protocol_is_structural():
    assert isinstance(_CountingExtractor(), FeatureExtractor)


def test_piece_vector_computed_once_and_persisted():
    store = InMemoryBlobStore()
    extractor = _CountingExtractor()
    cache = FeatureCache(extractor, store)
    piece = _record("p-0-0", store, (10, 20, 30))

    first = cache.ensure_piece_vector(piece)
    second = cache.ensure_piece_vector(piece)

    assert extractor.calls == 1
    assert first is second
    np.testing.assert_allclose(first, [10, 20, 30])
    assert piece.embedding_key == embedding_key("p-0-0")
    np.testing.assert_allclose(bytes_to_vector(store.get("p-0-0-embedding")), first)


def test_piece_vector_read_from_blob_store_before_extracting():
    store = InMemoryBlobStore()
    extractor = _CountingExtractor()
    store.put("p-0-0-embedding", vector_to_bytes(np.array([1.0, 2.0, 3.0, 4.0])))
    cache = FeatureCache(extractor, store)

    vec = cache.ensure_piece_vector(_record("p-0-0", store))

    assert extractor.calls == 0
    np.testing.assert_allclose(vec, [1, 2, 3, 4])
    assert cache.dimension == 4


def test_cleared_cache_reuses_persisted_vector():
    store = InMemoryBlobStore()
    extractor = _CountingExtractor()
    cache = FeatureCache(extractor, store)
    piece = _record("p-0-0", store, (5, 5, 5))

    cache.ensure_piece_vector(piece)
    cache.clear()
    assert cache.summary()["piece_vectors"] == 0
    cache.ensure_piece_vector(piece)

    assert extractor.calls == 1


def test_missing_tile_blob_raises_storage_missing():
    store = InMemoryBlobStore()
    cache = FeatureCache(_CountingExtractor(), store)
    with pytest.raises(StorageMissing):
        cache.ensure_piece_vector(_record("ghost", store))


def test_corrupt_tile_blob_raises_decode_error():
    store = InMemoryBlobStore()
    cache = FeatureCache(_CountingExtractor(), store)
    piece = _record("bad", store)
    store.put(piece.blob_key, b"not a png")
    with pytest.raises(ImageDecodeError):
        cache.ensure_piece_vector(piece)


def test_extractor_failure_becomes_extraction_error():
    store = InMemoryBlobStore()
    cache = FeatureCache(_BrokenExtractor(), store)
    with pytest.raises(ExtractionError, match="cuda out of memory"):
        cache.ensure_piece_vector(_record("p", store, (1, 2, 3)))


def test_empty_vector_is_rejected():
    class _Empty:
        def extract(self, image_bgr):
            return np.zeros(0, dtype=np.float32)

    cache = FeatureCache(_Empty(), InMemoryBlobStore())
    with pytest.raises(ExtractionError):
        cache.extract(np.zeros((4, 4, 3), dtype=np.uint8))


def test_concurrent_requests_for_same_id_extract_once():
    store = InMemoryBlobStore()
    extractor = _CountingExtractor()
    cache = FeatureCache(extractor, store)
    piece = _record("p-0-0", store, (7, 8, 9))

    threads = [threading.Thread(target=cache.ensure_piece_vector, args=(piece,)) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert extractor.calls == 1


# ─── Node Vectors ────────────────────────────────────────────────────────────

def test_node_vector_is_mean_of_members():
    store = InMemoryBlobStore()
    cache = FeatureCache(_CountingExtractor(), store)
    a = _record("a", store, (0, 10, 20))
    b = _record("b", store, (10, 30, 40))

    vec = cache.ensure_node_vector(_node("n", ["a", "b", "unknown"]), {"a": a, "b": b})

    np.testing.assert_allclose(vec, [5, 20, 30])
    assert cache.summary()["node_vectors"] == 1


def test_node_without_members_gets_zero_vector_of_session_dimension():
    store = InMemoryBlobStore()
    cache = FeatureCache(_CountingExtractor(), store)
    a = _record("a", store, (1, 2, 3))
    cache.ensure_piece_vector(a)

    vec = cache.ensure_node_vector(_node("empty", []), {"a": a})

    assert vec.shape == (3,)
    assert not vec.any()


def test_node_vector_before_any_piece_is_length_one_zero():
    cache = FeatureCache(_CountingExtractor(), InMemoryBlobStore())
    vec = cache.ensure_node_vector(_node("empty", ["gone"]), {})
    assert vec.shape == (1,)
    assert vec[0] == 0.0


# ─── DINOv2 Adapter ──────────────────────────────────────────────────────────

class _FakeDino(torch.nn.Module):
    """Returns a fixed hidden state whose CLS row is 0..D-1."""

    def __init__(self, d: int = 6):
        super().__init__()
        self.d = d

    def forward(self, pixel_values):
        hidden = torch.arange(3 * self.d, dtype=torch.float32).reshape(1, 3, self.d)
        return SimpleNamespace(last_hidden_state=hidden)


def _mock_processor():
    processor = MagicMock()
    processor.return_value = {"pixel_values": torch.zeros(1, 3, 14, 14)}
    return processor


def test_dino_extractor_returns_cls_token():
    from app.modules.feature_extraction.dino_extractor import DinoFeatureExtractor

    processor = _mock_processor()
    extractor = DinoFeatureExtractor(model=_FakeDino(), processor=processor)
    vec = extractor.extract(np.zeros((20, 30, 3), dtype=np.uint8))

    assert extractor.status == "ready"
    assert extractor.device == "cpu"
    assert vec.dtype == np.float32
    np.testing.assert_allclose(vec, np.arange(6))
    # processor receives an RGB PIL image
    pil = processor.call_args.kwargs["images"]
    assert pil.mode == "RGB"
    assert pil.size == (30, 20)


def test_dino_extractor_is_deterministic():
    from app.modules.feature_extraction.dino_extractor import DinoFeatureExtractor

    extractor = DinoFeatureExtractor(model=_FakeDino(), processor=_mock_processor())
    img = np.full((16, 16, 3), 77, dtype=np.uint8)
    np.testing.assert_array_equal(extractor.extract(img), extractor.extract(img))


def test_dino_extractor_rejects_empty_image():
    from app.modules.feature_extraction.dino_extractor import DinoFeatureExtractor

    extractor = DinoFeatureExtractor(model=_FakeDino(), processor=_mock_processor())
    with pytest.raises(ExtractionError):
        extractor.extract(np.zeros((0, 0, 3), dtype=np.uint8))


def test_dino_extractor_wraps_inference_failure():
    from app.modules.feature_extraction.dino_extractor import DinoFeatureExtractor

    processor = MagicMock(side_effect=RuntimeError("bad tensor"))
    extractor = DinoFeatureExtractor(model=_FakeDino(), processor=processor)
    with pytest.raises(ExtractionError, match="bad tensor"):
        extractor.extract(np.zeros((8, 8, 3), dtype=np.uint8))


def test_dino_extractor_load_failure_is_extraction_error():
    from app.modules.feature_extraction.dino_extractor import DinoFeatureExtractor

    extractor = DinoFeatureExtractor("facebook/dinov2-small", device="cpu")
    assert extractor.status == "idle"
    with patch(
        "transformers.AutoImageProcessor.from_pretrained",
        side_effect=OSError("offline"),
    ):
        with pytest.raises(ExtractionError, match="offline"):
            extractor.load()
    assert extractor.status == "idle"
