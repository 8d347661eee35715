# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Puzzle Session Controller
Owns all state of the single puzzle session and drives the phase machine:

    idle -> splitting -> ready -> matching -> match-found | match-not-found
                                    ^                          |
                                    +--------------------------+

  - upload / piece-count change / reset discard tiles, hierarchy, feature
    cache, blobs and match result, and return to idle.
  - split: idle|ready -> splitting -> ready, or back to idle on failure.
  - match: ready|match-found|match-not-found -> matching -> match-found |
    match-not-found, or back to ready on failure.

Splitting and scoring run on their own TaskChannel. Repeating a request
while one is pending supersedes it; the older caller gets TaskSuperseded and
the phase belongs to the newer request. A request whose session was reset
while it ran is discarded the same way.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from typing import Optional

from app.config import Settings, get_settings
from app.core.blob_store import BlobStore
from app.core.errors import (
    ExtractionError,
    InvalidPhaseError,
    NoPuzzleError,
    PieceLocatorError,
    StorageMissing,
    TaskSuperseded,
    as_locator_error,
)
from app.core.task_runner import ProgressCallback, TaskChannel
from app.models.hierarchy import HierarchyConfig, HierarchyNode
from app.models.piece import MatchOutcome, PieceRecord, PieceVector, SplitPiece
from app.models.session import (
    MATCH_ALLOWED_FROM,
    SPLIT_ALLOWED_FROM,
    Phase,
    PuzzleError,
    PuzzleImage,
    SessionStatus,
    TaskProgress,
)
from app.modules.feature_extraction.extractor import FeatureExtractor
from app.modules.feature_extraction.feature_cache import FeatureCache
from app.modules.hierarchy.builder import build_hierarchy_nodes
from app.modules.matching.matcher import match_piece
from app.modules.partitioning.grid_partitioner import calculate_tile_size, derive_grid
from app.modules.splitting.tile_splitter import split_image
from app.utils.image_utils import SourceImage, bgr_to_png_bytes, decode_limited
from app.utils.logger import get_logger, task_context
from app.utils.storage import (
    bytes_to_hierarchy,
    hierarchy_key,
    hierarchy_to_bytes,
    piece_blob_key,
    thumbnail_key,
)

log = get_logger(__name__)


class PuzzleSession:
    """One puzzle photo, its tiles, its index and its latest match."""

    def __init__(
        self,
        blob_store: BlobStore,
        extractor: FeatureExtractor,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._blobs = blob_store
        self._extractor = extractor
        self._cache = FeatureCache(extractor, blob_store)
        self._split_channel = TaskChannel("split")
        self._match_channel = TaskChannel("match")

        self._phase = Phase.IDLE
        self._image: Optional[PuzzleImage] = None
        self._source_png: Optional[bytes] = None
        self._source: Optional[SourceImage] = None

        self._pieces: list[PieceRecord] = []
        self._pieces_by_id: dict[str, PieceRecord] = {}
        self._nodes: list[HierarchyNode] = []

        self._outcome: Optional[MatchOutcome] = None
        self._split_progress: Optional[TaskProgress] = None
        self._match_progress: Optional[TaskProgress] = None
        self._error: Optional[PuzzleError] = None
        self._model_status = "idle"

        # Bumped whenever a newer request or a reset makes in-flight work stale
        self._split_ticket = 0
        self._match_ticket = 0
        # Held while tickets move and blobs are cleared or published
        self._store_lock = threading.Lock()

    # ── Accessors ────────────────────────────────────────────────────────────

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def image(self) -> Optional[PuzzleImage]:
        return self._image

    @property
    def pieces(self) -> list[PieceRecord]:
        return list(self._pieces)

    @property
    def hierarchy_nodes(self) -> list[HierarchyNode]:
        return list(self._nodes)

    @property
    def last_outcome(self) -> Optional[MatchOutcome]:
        return self._outcome

    @property
    def error(self) -> Optional[PuzzleError]:
        return self._error

    @property
    def feature_cache(self) -> FeatureCache:
        return self._cache

    def _set_phase(self, phase: Phase) -> None:
        if phase != self._phase:
            log.info("phase_transition", from_phase=self._phase.value, to_phase=phase.value)
        self._phase = phase

    def _record_error(self, exc: PieceLocatorError, context: str) -> None:
        self._error = PuzzleError(code=exc.code, message=exc.message, context=context)
        log.warning("session_error", code=exc.code, error=exc.message, context=context)

    def _hierarchy_config(self) -> HierarchyConfig:
        s = self._settings
        return HierarchyConfig(
            root_rows=s.hierarchy_root_rows,
            root_cols=s.hierarchy_root_cols,
            leaf_size=s.hierarchy_leaf_size,
            max_depth=s.hierarchy_max_depth,
            half_open_bounds=s.hierarchy_half_open_bounds,
        )

    # ── Invalidation ─────────────────────────────────────────────────────────

    def _discard_derived(self) -> None:
        """Drop tiles, index, vectors, blobs and results. Keeps the photo."""
        with self._store_lock:
            self._split_ticket += 1
            self._match_ticket += 1
            self._cache.clear()
            self._blobs.clear()
        self._pieces = []
        self._pieces_by_id = {}
        self._nodes = []
        self._outcome = None
        self._split_progress = None
        self._match_progress = None

    def reset(self) -> None:
        """Return to an empty idle session."""
        self._discard_derived()
        if self._source is not None:
            self._source.close()
        self._source = None
        self._source_png = None
        self._image = None
        self._error = None
        self._set_phase(Phase.IDLE)
        log.info("session_reset")

    # ── Upload / Piece Count ─────────────────────────────────────────────────

    def upload_puzzle(self, image_bytes: bytes, piece_count: float) -> PuzzleImage:
        """
        Start a new session from a puzzle photo.

        Raises:
            InvalidPieceCount: bad piece count (session left untouched)
            ImageDecodeError:  undecodable photo (session left untouched)
        """
        try:
            grid = derive_grid(piece_count)
            pixels = decode_limited(image_bytes, self._settings.puzzle_max_dimension)
            source_png = bgr_to_png_bytes(pixels)
        except PieceLocatorError as exc:
            self._record_error(exc, "upload")
            raise

        self.reset()
        self._source = SourceImage(pixels)
        self._source_png = source_png
        self._image = PuzzleImage(
            id=f"puzzle-{uuid.uuid4()}",
            width=int(pixels.shape[1]),
            height=int(pixels.shape[0]),
            grid=grid,
        )
        log.info(
            "puzzle_uploaded",
            puzzle_id=self._image.id,
            width=self._image.width,
            height=self._image.height,
            rows=grid.rows,
            cols=grid.cols,
        )
        return self._image

    def change_piece_count(self, piece_count: float) -> PuzzleImage:
        """Re-derive the grid for the current photo and return to idle."""
        try:
            grid = derive_grid(piece_count)
            if self._image is None:
                raise NoPuzzleError("Upload a puzzle photo before setting the piece count.")
        except PieceLocatorError as exc:
            self._record_error(exc, "upload")
            raise

        self._discard_derived()
        self._error = None
        self._image = self._image.model_copy(update={"grid": grid})
        self._set_phase(Phase.IDLE)
        log.info("piece_count_changed", rows=grid.rows, cols=grid.cols, total=grid.total_pieces)
        return self._image

    # ── Guards ───────────────────────────────────────────────────────────────

    def check_can_split(self) -> PuzzleImage:
        if self._image is None or self._source_png is None:
            raise NoPuzzleError("Upload a puzzle photo before splitting.")
        if self._phase not in SPLIT_ALLOWED_FROM:
            raise InvalidPhaseError(f"Cannot split while {self._phase.value}.")
        return self._image

    def check_can_match(self) -> PuzzleImage:
        if self._image is None:
            raise NoPuzzleError("Upload and split a puzzle photo before matching.")
        if self._phase not in MATCH_ALLOWED_FROM or not self._pieces:
            raise InvalidPhaseError(f"Cannot match while {self._phase.value}; split first.")
        return self._image

    # ── Split ────────────────────────────────────────────────────────────────

    async def split_puzzle(
        self, on_progress: Optional[ProgressCallback] = None
    ) -> list[PieceRecord]:
        """
        Cut the photo into tiles, persist them and build the hierarchy.

        Raises:
            NoPuzzleError, InvalidPhaseError: before any work starts
            TaskSuperseded: a newer split or a reset replaced this one
            SplitError, ImageDecodeError, UnknownError: split failed
        """
        self.check_can_split()

        self._split_ticket += 1
        ticket = self._split_ticket
        image = self._image
        grid = image.grid

        self._error = None
        self._outcome = None
        self._split_progress = TaskProgress(processed=0, total=grid.total_pieces)
        self._set_phase(Phase.SPLITTING)

        def report(processed: int, total: int) -> None:
            if ticket == self._split_ticket:
                self._split_progress = TaskProgress(processed=processed, total=total)
            if on_progress is not None:
                on_progress(processed, total)

        with task_context(image.id, "split"):
            try:
                # The handle moves into the splitter; later splits decode afresh
                source = self._source or SourceImage.from_bytes(self._source_png)
                self._source = None

                tiles: list[SplitPiece] = await self._split_channel.submit(
                    split_image,
                    source,
                    grid,
                    calculate_tile_size(image.width, image.height, grid),
                    image.id,
                    thumbnail_size=self._settings.thumbnail_size,
                    on_progress=report,
                )
                self._ensure_current("split", ticket)
                records, nodes = await asyncio.to_thread(
                    self._publish_split, image, tiles, ticket
                )
                self._ensure_current("split", ticket)
            except TaskSuperseded:
                log.info("split_superseded")
                raise
            except Exception as exc:
                if ticket != self._split_ticket:
                    log.info("split_superseded", error=type(exc).__name__)
                    raise TaskSuperseded(
                        "split result discarded: a newer request or reset replaced it."
                    ) from exc
                err = as_locator_error(exc)
                self._split_progress = None
                self._record_error(err, "split")
                self._set_phase(Phase.IDLE)
                if err is exc:
                    raise
                raise err from exc

        self._pieces = records
        self._pieces_by_id = {r.id: r for r in records}
        self._nodes = nodes
        self._split_progress = None
        self._set_phase(Phase.READY)
        return list(records)

    def _publish_split(
        self, image: PuzzleImage, tiles: list[SplitPiece], ticket: int
    ) -> tuple[list[PieceRecord], list[HierarchyNode]]:
        """
        Build the hierarchy, then persist tile, thumbnail and hierarchy blobs
        in one commit. Nothing is written if the split went stale meanwhile.
        """
        staged: dict[str, bytes] = {}
        records: list[PieceRecord] = []
        for tile in tiles:
            blob_key = piece_blob_key(tile.id)
            thumb_key = thumbnail_key(tile.id)
            staged[blob_key] = tile.tile_png
            staged[thumb_key] = tile.thumbnail_png
            records.append(
                PieceRecord(
                    id=tile.id,
                    row=tile.row,
                    col=tile.col,
                    width=tile.width,
                    height=tile.height,
                    blob_key=blob_key,
                    thumbnail_key=thumb_key,
                )
            )

        nodes = build_hierarchy_nodes(
            records, image.width, image.height, image.grid, self._hierarchy_config()
        )
        staged[hierarchy_key(image.id)] = hierarchy_to_bytes(nodes)

        with self._store_lock:
            self._ensure_current("split", ticket)
            self._blobs.put_many(staged)
        log.info("split_published", tiles=len(records), hierarchy_nodes=len(nodes))
        return records, nodes

    def _ensure_current(self, kind: str, ticket: int) -> None:
        current = self._split_ticket if kind == "split" else self._match_ticket
        if ticket != current:
            raise TaskSuperseded(f"{kind} result discarded: a newer request or reset replaced it.")

    # ── Match ────────────────────────────────────────────────────────────────

    async def match_piece(
        self,
        query_bytes: bytes,
        on_progress: Optional[ProgressCallback] = None,
    ) -> MatchOutcome:
        """
        Locate a photographed piece among the tiles.

        Raises:
            NoPuzzleError, InvalidPhaseError: before any work starts
            TaskSuperseded: a newer match or a reset replaced this one
            ImageDecodeError, StorageMissing, ExtractionError, UnknownError
        """
        self.check_can_match()

        self._match_ticket += 1
        ticket = self._match_ticket
        generation = self._cache.generation
        pieces = list(self._pieces)
        nodes = list(self._nodes)
        s = self._settings

        self._error = None
        self._match_progress = TaskProgress(processed=0, total=len(pieces))
        self._set_phase(Phase.MATCHING)

        def report(processed: int, total: int) -> None:
            if ticket == self._match_ticket:
                self._match_progress = TaskProgress(processed=processed, total=total)
            if on_progress is not None:
                on_progress(processed, total)

        with task_context(self._image.id, "match"):
            try:
                query, piece_vectors, node_vectors = await asyncio.to_thread(
                    self._prepare_match, query_bytes, pieces, nodes, generation
                )
                self._ensure_current("match", ticket)
                outcome: MatchOutcome = await self._match_channel.submit(
                    match_piece,
                    query,
                    piece_vectors,
                    nodes or None,
                    node_vectors,
                    [n.id for n in nodes if n.level == 0] if nodes else None,
                    top_k=s.top_k,
                    hierarchy_threshold=s.hierarchy_threshold,
                    match_threshold=s.match_threshold,
                    on_progress=report,
                )
                self._ensure_current("match", ticket)
            except TaskSuperseded:
                log.info("match_superseded")
                raise
            except Exception as exc:
                if ticket != self._match_ticket:
                    log.info("match_superseded", error=type(exc).__name__)
                    raise TaskSuperseded(
                        "match result discarded: a newer request or reset replaced it."
                    ) from exc
                err = as_locator_error(exc)
                self._match_progress = None
                self._record_error(err, "match")
                self._set_phase(Phase.READY)
                if err is exc:
                    raise
                raise err from exc

        for candidate in outcome.candidates:
            record = self._pieces_by_id.get(candidate.piece_id)
            if record is not None:
                record.score = candidate.score

        self._outcome = outcome
        self._match_progress = None
        self._set_phase(Phase.MATCH_FOUND if outcome.best_match else Phase.MATCH_NOT_FOUND)
        return outcome

    def _ensure_generation(self, generation: int) -> None:
        if generation != self._cache.generation:
            raise TaskSuperseded("match result discarded: the tiles were replaced.")

    def warm_up(self) -> None:
        """Load the feature model if it is not loaded yet."""
        load = getattr(self._extractor, "load", None)
        if self._model_status == "ready" or load is None:
            self._model_status = "ready"
            return
        self._model_status = "loading"
        try:
            load()
        except Exception:
            self._model_status = "idle"
            raise
        self._model_status = "ready"

    def _prepare_match(
        self,
        query_bytes: bytes,
        pieces: list[PieceRecord],
        nodes: list[HierarchyNode],
        generation: int,
    ):
        """
        Decode the query and make sure every tile and node has a vector.
        Stops with TaskSuperseded once the cache generation moves on.
        """
        self.warm_up()
        query_img = decode_limited(query_bytes, self._settings.query_max_dimension)
        query = self._cache.extract(query_img)

        piece_vectors: list[PieceVector] = []
        for p in pieces:
            vector = self._cache.ensure_piece_vector(p, generation)
            self._ensure_generation(generation)
            piece_vectors.append(
                PieceVector(
                    piece_id=p.id,
                    row=p.row,
                    col=p.col,
                    width=p.width,
                    height=p.height,
                    vector=vector,
                )
            )
        by_id = {p.id: p for p in pieces}
        node_vectors = {
            n.id: self._cache.ensure_node_vector(n, by_id, generation) for n in nodes
        }
        self._ensure_generation(generation)

        dim = self._cache.dimension
        if dim is not None and query.shape[0] != dim:
            raise ExtractionError(
                f"Query vector has {query.shape[0]} dims, tiles have {dim}."
            )
        return query, piece_vectors, node_vectors

    # ── Assets / Diagnostics ─────────────────────────────────────────────────

    def piece_asset(self, piece_id: str, kind: str) -> bytes:
        """PNG bytes of a tile ('tile') or its thumbnail ('thumbnail')."""
        record = self._pieces_by_id.get(piece_id)
        if record is None:
            raise StorageMissing(f"Unknown piece '{piece_id}'.")
        key = record.blob_key if kind == "tile" else record.thumbnail_key
        data = self._blobs.get(key)
        if data is None:
            raise StorageMissing(f"{kind} for piece '{piece_id}' not found in storage.")
        return data

    def hierarchy_snapshot(self) -> list[HierarchyNode]:
        """The hierarchy persisted by the last successful split."""
        if self._image is None:
            raise NoPuzzleError("No puzzle uploaded.")
        data = self._blobs.get(hierarchy_key(self._image.id))
        if data is None:
            raise StorageMissing("No hierarchy snapshot stored; split the puzzle first.")
        return bytes_to_hierarchy(data)

    def status(self) -> SessionStatus:
        outcome = self._outcome
        return SessionStatus(
            phase=self._phase,
            image=self._image,
            piece_count=len(self._pieces),
            split_progress=self._split_progress,
            match_progress=self._match_progress,
            matched_piece=outcome.best_match if outcome else None,
            top_matches=list(outcome.candidates) if outcome else [],
            hierarchy_node_count=len(self._nodes),
            hierarchy_path=list(outcome.path) if outcome else [],
            model_status=self._model_status,
            error=self._error,
        )

    def close(self) -> None:
        self._split_channel.close()
        self._match_channel.close()
