# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
Phase 7 - Task channels and the puzzle session.
Uses a colour-based stand-in extractor and synthetic photos whose tiles
are solid, distinct colours. No model weights required.
"""

import asyncio
import threading

import cv2
import numpy as np
import pytest

from app.config import Settings
from app.core.blob_store import InMemoryBlobStore
from app.core.errors import (
    ExtractionError,
    ImageDecodeError,
    InvalidPhaseError,
    InvalidPieceCount,
    NoPuzzleError,
    SplitError,
    TaskSuperseded,
    UnknownError,
)
from app.core.session import PuzzleSession
from app.core.task_runner import TaskChannel
from app.models.session import Phase


# ─── Helpers ─────────────────────────────────────────────────────────────────

class _ColourExtractor:
    """2 x 2 area-averaged thumbnail, centred on mid-grey."""

    def __init__(self):
        self.loads = 0

    def load(self):
        self.loads += 1

    def extract(self, image_bgr):
        small = cv2.resize(image_bgr, (2, 2), interpolation=cv2.INTER_AREA)
        return small.astype(np.float32).reshape(-1) - 127.5


class _GatedExtractor(_ColourExtractor):
    """Blocks inside its Nth extract call until released, then optionally fails."""

    def __init__(self, block_on: int = 2, error: Exception | None = None):
        super().__init__()
        self.calls = 0
        self.block_on = block_on
        self.error = error
        self.entered = threading.Event()
        self.release = threading.Event()

    def extract(self, image_bgr):
        self.calls += 1
        if self.calls == self.block_on:
            self.entered.set()
            self.release.wait(5)
            if self.error is not None:
                raise self.error
        return super().extract(image_bgr)


class _FailingExtractor:
    def extract(self, image_bgr):
        raise RuntimeError("extractor offline")


def _photo_png(rows: int = 3, cols: int = 4, tile: int = 30, seed: int = 11) -> bytes:
    rng = np.random.default_rng(seed)
    img = np.zeros((rows * tile, cols * tile, 3), dtype=np.uint8)
    for r in range(rows):
        for c in range(cols):
            img[r * tile:(r + 1) * tile, c * tile:(c + 1) * tile] = rng.integers(0, 256, 3)
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return buf.tobytes()


def _session(extractor=None, **overrides) -> PuzzleSession:
    settings = Settings(_env_file=None, **overrides)
    return PuzzleSession(InMemoryBlobStore(), extractor or _ColourExtractor(), settings)


# ─── Task Channel ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_channel_returns_result_after_progress():
    channel = TaskChannel("split")
    seen = []

    def work(n, progress):
        for i in range(1, n + 1):
            progress(i, n)
        return "done"

    result = await channel.submit(work, 3, on_progress=lambda d, t: seen.append((d, t)))

    assert result == "done"
    assert seen == [(1, 3), (2, 3), (3, 3)]
    assert channel.busy is False
    channel.close()


@pytest.mark.asyncio
async def test_second_request_supersedes_pending_one():
    channel = TaskChannel("split")
    gate = threading.Event()
    first_progress = []

    def slow(tag, progress):
        gate.wait(5)
        progress(1, 1)
        return tag

    first = asyncio.ensure_future(
        channel.submit(slow, "first", on_progress=lambda d, t: first_progress.append(d))
    )
    await asyncio.sleep(0)
    assert channel.busy

    second = asyncio.ensure_future(channel.submit(slow, "second"))
    await asyncio.sleep(0)

    with pytest.raises(TaskSuperseded):
        await first

    gate.set()
    assert await second == "second"
    # the superseded request kept running but its messages were dropped
    assert first_progress == []
    channel.close()


@pytest.mark.asyncio
async def test_channel_errors_are_mapped_into_taxonomy():
    channel = TaskChannel("match")

    def explode(progress):
        raise ZeroDivisionError("bad maths")

    def split_fail(progress):
        raise SplitError("tile 3 failed")

    with pytest.raises(UnknownError, match="bad maths"):
        await channel.submit(explode)
    with pytest.raises(SplitError):
        await channel.submit(split_fail)
    channel.close()


@pytest.mark.asyncio
async def test_failing_progress_callback_does_not_break_the_task():
    channel = TaskChannel("split")

    def work(progress):
        progress(1, 1)
        return 42

    def bad_sink(done, total):
        raise RuntimeError("ui gone")

    assert await channel.submit(work, on_progress=bad_sink) == 42
    channel.close()


# ─── Session: Upload and Piece Count ─────────────────────────────────────────

def test_upload_derives_grid_and_starts_idle():
    session = _session()
    image = session.upload_puzzle(_photo_png(), 12)

    assert image.id.startswith("puzzle-")
    assert (image.width, image.height) == (120, 90)
    assert (image.grid.rows, image.grid.cols) == (3, 4)
    assert session.phase == Phase.IDLE
    session.close()


def test_upload_downscales_large_photos():
    session = _session(puzzle_max_dimension=60)
    image = session.upload_puzzle(_photo_png(), 12)
    assert (image.width, image.height) == (60, 45)
    session.close()


def test_invalid_upload_leaves_session_untouched():
    session = _session()
    first = session.upload_puzzle(_photo_png(), 12)

    with pytest.raises(InvalidPieceCount):
        session.upload_puzzle(_photo_png(), float("nan"))
    with pytest.raises(ImageDecodeError):
        session.upload_puzzle(b"garbage", 12)

    assert session.image == first
    assert session.error.code == "IMAGE_DECODE_ERROR"
    assert session.error.context == "upload"
    session.close()


def test_change_piece_count_requires_puzzle():
    session = _session()
    with pytest.raises(NoPuzzleError):
        session.change_piece_count(6)
    session.close()


# ─── Session: Split ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_split_publishes_tiles_and_hierarchy():
    session = _session()
    session.upload_puzzle(_photo_png(), 12)
    seen = []

    records = await session.split_puzzle(on_progress=lambda d, t: seen.append((d, t)))

    assert session.phase == Phase.READY
    assert len(records) == 12
    assert seen[-1] == (12, 12)
    # 3 x 4 tiles on the default 3 x 4 root layout: one tile per root
    nodes = session.hierarchy_nodes
    assert len(nodes) == 12
    assert all(len(n.piece_ids) == 1 for n in nodes)
    assert session.hierarchy_snapshot() == nodes

    tile = cv2.imdecode(np.frombuffer(session.piece_asset(records[0].id, "tile"), np.uint8), 1)
    assert tile.shape == (30, 30, 3)
    assert session.piece_asset(records[0].id, "thumbnail")
    assert session.status().split_progress is None
    session.close()


@pytest.mark.asyncio
async def test_split_requires_upload():
    session = _session()
    with pytest.raises(NoPuzzleError):
        await session.split_puzzle()
    session.close()


@pytest.mark.asyncio
async def test_split_failure_rolls_back_to_idle():
    session = _session()
    tiny = cv2.imencode(".png", np.zeros((10, 10, 3), dtype=np.uint8))[1].tobytes()
    session.upload_puzzle(tiny, 17)  # 1 x 17 grid, zero-width tiles

    with pytest.raises(SplitError):
        await session.split_puzzle()

    status = session.status()
    assert status.phase == Phase.IDLE
    assert status.error.code == "SPLIT_ERROR"
    assert status.error.context == "split"
    assert status.piece_count == 0
    session.close()


@pytest.mark.asyncio
async def test_resplit_after_piece_count_change_decodes_fresh_source():
    session = _session()
    session.upload_puzzle(_photo_png(), 12)
    await session.split_puzzle()

    image = session.change_piece_count(6)
    assert (image.grid.rows, image.grid.cols) == (2, 3)
    assert session.phase == Phase.IDLE
    assert session.pieces == []
    assert session.status().hierarchy_node_count == 0

    records = await session.split_puzzle()
    assert len(records) == 6
    assert session.phase == Phase.READY
    session.close()


@pytest.mark.asyncio
async def test_second_split_supersedes_first(monkeypatch):
    from app.core import session as session_module

    gate = threading.Event()
    real_split = session_module.split_image

    def gated_split(*args, **kwargs):
        gate.wait(5)
        return real_split(*args, **kwargs)

    monkeypatch.setattr(session_module, "split_image", gated_split)
    session = _session()
    session.upload_puzzle(_photo_png(), 12)

    first = asyncio.ensure_future(session.split_puzzle())
    await asyncio.sleep(0)
    assert session.phase == Phase.SPLITTING

    second = asyncio.ensure_future(session.split_puzzle())
    await asyncio.sleep(0)
    with pytest.raises(TaskSuperseded):
        await first
    assert session.phase == Phase.SPLITTING

    gate.set()
    records = await second
    assert len(records) == 12
    assert session.phase == Phase.READY
    assert session.error is None
    session.close()


@pytest.mark.asyncio
async def test_reset_during_split_discards_result(monkeypatch):
    from app.core import session as session_module

    gate = threading.Event()
    real_split = session_module.split_image

    def gated_split(*args, **kwargs):
        gate.wait(5)
        return real_split(*args, **kwargs)

    monkeypatch.setattr(session_module, "split_image", gated_split)
    session = _session()
    session.upload_puzzle(_photo_png(), 12)

    pending = asyncio.ensure_future(session.split_puzzle())
    await asyncio.sleep(0)
    session.reset()
    gate.set()

    with pytest.raises(TaskSuperseded):
        await pending
    assert session.phase == Phase.IDLE
    assert session.pieces == []
    assert session.image is None
    session.close()


@pytest.mark.asyncio
async def test_reset_during_publish_leaves_no_blobs(monkeypatch):
    from app.core import session as session_module

    entered, release = threading.Event(), threading.Event()
    real_build = session_module.build_hierarchy_nodes

    def gated_build(*args, **kwargs):
        entered.set()
        release.wait(5)
        return real_build(*args, **kwargs)

    monkeypatch.setattr(session_module, "build_hierarchy_nodes", gated_build)
    store = InMemoryBlobStore()
    session = PuzzleSession(store, _ColourExtractor(), Settings(_env_file=None))
    session.upload_puzzle(_photo_png(), 12)

    pending = asyncio.ensure_future(session.split_puzzle())
    assert await asyncio.to_thread(entered.wait, 5)
    session.reset()
    release.set()

    with pytest.raises(TaskSuperseded):
        await pending
    assert store.count() == 0
    session.close()


# ─── Session: Match ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_match_before_split_is_rejected():
    session = _session()
    with pytest.raises(NoPuzzleError):
        await session.match_piece(_photo_png())
    session.upload_puzzle(_photo_png(), 12)
    with pytest.raises(InvalidPhaseError):
        await session.match_piece(_photo_png())
    session.close()


@pytest.mark.asyncio
async def test_match_finds_the_photographed_tile():
    extractor = _ColourExtractor()
    session = _session(extractor)
    session.upload_puzzle(_photo_png(), 12)
    records = await session.split_puzzle()
    target = records[6]  # row 1, col 2
    seen = []

    outcome = await session.match_piece(
        session.piece_asset(target.id, "tile"),
        on_progress=lambda d, t: seen.append((d, t)),
    )

    assert session.phase == Phase.MATCH_FOUND
    assert outcome.best_match.piece_id == target.id
    assert (outcome.best_match.row, outcome.best_match.col) == (1, 2)
    assert outcome.best_match.score == pytest.approx(1.0, abs=1e-5)
    # descent ends in the single-tile root holding the target
    assert [item.node_id for item in outcome.path] == ["root-1-2"]
    assert seen == [(1, 1)]
    assert extractor.loads == 1

    status = session.status()
    assert status.matched_piece.piece_id == target.id
    assert status.model_status == "ready"
    assert status.hierarchy_path[0].node_id == "root-1-2"
    scored = {p.id: p.score for p in session.pieces}
    assert scored[target.id] == pytest.approx(1.0, abs=1e-5)
    assert session.feature_cache.summary()["piece_vectors"] == 12
    session.close()


@pytest.mark.asyncio
async def test_match_below_threshold_is_not_found_and_repeatable():
    session = _session(match_threshold=1.01)
    session.upload_puzzle(_photo_png(), 12)
    records = await session.split_puzzle()

    outcome = await session.match_piece(session.piece_asset(records[0].id, "tile"))
    assert outcome.best_match is None
    assert outcome.candidates[0].piece_id == records[0].id
    assert session.phase == Phase.MATCH_NOT_FOUND

    # matching again from match-not-found is allowed
    await session.match_piece(session.piece_asset(records[1].id, "tile"))
    assert session.phase == Phase.MATCH_NOT_FOUND
    assert session.status().top_matches[0].piece_id == records[1].id
    session.close()


@pytest.mark.asyncio
async def test_undecodable_query_rolls_back_to_ready():
    session = _session()
    session.upload_puzzle(_photo_png(), 12)
    await session.split_puzzle()

    with pytest.raises(ImageDecodeError):
        await session.match_piece(b"\x00\x01 not an image")

    assert session.phase == Phase.READY
    assert session.error.context == "match"
    assert session.error.code == "IMAGE_DECODE_ERROR"
    session.close()


@pytest.mark.asyncio
async def test_extractor_failure_rolls_back_to_ready():
    session = _session(_FailingExtractor())
    session.upload_puzzle(_photo_png(), 12)
    await session.split_puzzle()

    with pytest.raises(ExtractionError):
        await session.match_piece(_photo_png())

    assert session.phase == Phase.READY
    assert session.error.code == "EXTRACTION_ERROR"
    session.close()


@pytest.mark.asyncio
async def test_reset_returns_to_empty_idle():
    session = _session()
    session.upload_puzzle(_photo_png(), 12)
    records = await session.split_puzzle()
    await session.match_piece(session.piece_asset(records[0].id, "tile"))

    session.reset()

    status = session.status()
    assert status.phase == Phase.IDLE
    assert status.image is None
    assert status.piece_count == 0
    assert status.top_matches == []
    with pytest.raises(NoPuzzleError):
        session.hierarchy_snapshot()
    session.close()


@pytest.mark.asyncio
async def test_piece_count_change_during_match_discards_its_vectors():
    # call 1 is the query, call 2 is tile 0-0
    extractor = _GatedExtractor(block_on=2)
    session = _session(extractor)
    session.upload_puzzle(_photo_png(), 12)
    records = await session.split_puzzle()

    pending = asyncio.ensure_future(
        session.match_piece(session.piece_asset(records[5].id, "tile"))
    )
    assert await asyncio.to_thread(extractor.entered.wait, 5)
    session.change_piece_count(6)
    extractor.release.set()

    with pytest.raises(TaskSuperseded):
        await pending
    assert session.phase == Phase.IDLE
    assert session.error is None
    assert session.feature_cache.summary()["piece_vectors"] == 0

    # same ids, new pixels: tile 0-0 is now 40 x 45 and spans four old tiles
    fresh = await session.split_puzzle()
    assert fresh[0].id == records[0].id
    tile = cv2.imdecode(np.frombuffer(session.piece_asset(fresh[0].id, "tile"), np.uint8), 1)
    assert tile.shape == (45, 40, 3)

    vector = session.feature_cache.ensure_piece_vector(fresh[0])
    np.testing.assert_allclose(vector, _ColourExtractor().extract(tile), atol=1e-5)
    session.close()


@pytest.mark.asyncio
async def test_failure_in_match_made_stale_by_reset_reports_superseded():
    extractor = _GatedExtractor(block_on=2, error=RuntimeError("camera unplugged"))
    session = _session(extractor)
    session.upload_puzzle(_photo_png(), 12)
    records = await session.split_puzzle()

    pending = asyncio.ensure_future(
        session.match_piece(session.piece_asset(records[0].id, "tile"))
    )
    assert await asyncio.to_thread(extractor.entered.wait, 5)
    session.reset()
    extractor.release.set()

    with pytest.raises(TaskSuperseded):
        await pending
    assert session.phase == Phase.IDLE
    assert session.error is None
    session.close()


@pytest.mark.asyncio
async def test_stale_generation_vectors_are_not_cached():
    session = _session()
    session.upload_puzzle(_photo_png(), 12)
    records = await session.split_puzzle()
    cache = session.feature_cache

    old_generation = cache.generation
    cache.clear()
    vector = cache.ensure_piece_vector(records[0], old_generation)

    assert vector.shape == (12,)
    assert cache.summary()["piece_vectors"] == 0
    assert cache.dimension is None
    session.close()
