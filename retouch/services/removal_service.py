"""
Removal orchestrator.

Owns one editing session on one pixel buffer:
    IDLE -> DRAWING (accumulate strokes) -> COMMITTING -> IDLE

Drawing never touches pixels, and strokes drawn while a commit runs are
queued for the next one. At commit time each stroke is turned into a
mask and routed through one tier:
1. spot removal for small masks (hard time budget)
2. remote inpainting when networked and quota allows
3. local PatchMatch -> fill -> gradient blend (always available)

Remote failures are logged and fall through to the local pipeline; they are
never raised to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from retouch.config import get_settings
from retouch.engine.blend import GradientBlender
from retouch.engine.fill import RegionFillEngine
from retouch.engine.mask import StrokeMaskBuilder
from retouch.engine.patchmatch import PatchSimilaritySearch
from retouch.engine.spot import SpotRemover, is_spot_removal
from retouch.engine.types import BrushMode, FillResult, Mask, Point, Stroke
from retouch.errors import (
    FastPathTimeoutError,
    InvalidCommitError,
    InvalidMaskGeometryError,
    RecoverableRemoteFailure,
    SessionBusyError,
)
from retouch.services.inpaint_client import RemoteInpaintClient, RemoteStatus
from retouch.services.quota_service import UsageQuotaTracker

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    DRAWING = "drawing"
    COMMITTING = "committing"


class CommitStage(str, Enum):
    PREPARING = "preparing"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    BLENDING = "blending"
    COMPLETE = "complete"


class Route(str, Enum):
    SPOT = "spot"
    REMOTE = "remote"
    LOCAL = "local"
    NOOP = "noop"


ProgressCallback = Callable[[CommitStage, str], None]


@dataclass
class StrokeOutcome:
    route: Route
    modified: int = 0
    partial: bool = False
    message: str = ""


@dataclass
class CommitResult:
    image: np.ndarray
    outcomes: List[StrokeOutcome] = field(default_factory=list)
    stage: CommitStage = CommitStage.COMPLETE
    stages: List[CommitStage] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return any(o.partial for o in self.outcomes)


class RemovalOrchestrator:
    """
    Tiered object-removal session.

    Usage:
        orchestrator = RemovalOrchestrator(quota=tracker, remote_client=client)
        orchestrator.activate(image)
        orchestrator.begin_stroke(Point(10, 10), radius=20)
        orchestrator.extend_stroke(Point(12, 11))
        orchestrator.end_stroke()
        result = await orchestrator.commit()
    """

    def __init__(
        self,
        quota: UsageQuotaTracker,
        remote_client: Optional[RemoteInpaintClient] = None,
        networked: Optional[bool] = None,
        mask_builder: Optional[StrokeMaskBuilder] = None,
        search: Optional[PatchSimilaritySearch] = None,
        fill_engine: Optional[RegionFillEngine] = None,
        blender: Optional[GradientBlender] = None,
        spot_remover: Optional[SpotRemover] = None,
        small_area_threshold: Optional[int] = None,
        remote_timeout: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        settings = get_settings()
        self.quota = quota
        self.remote_client = remote_client
        self.networked = settings.NETWORKED if networked is None else networked
        self.mask_builder = mask_builder or StrokeMaskBuilder()
        self.search = search or PatchSimilaritySearch()
        self.fill_engine = fill_engine or RegionFillEngine()
        self.blender = blender or GradientBlender()
        self.spot_remover = spot_remover or SpotRemover()
        self.small_area_threshold = (
            small_area_threshold if small_area_threshold is not None else settings.SMALL_AREA_THRESHOLD
        )
        self.remote_timeout = remote_timeout if remote_timeout is not None else settings.REMOTE_TIMEOUT_SECONDS
        self.on_progress = on_progress

        self._snapshot: Optional[np.ndarray] = None
        self._working: Optional[np.ndarray] = None
        self._strokes: List[Stroke] = []
        self._current: Optional[Stroke] = None
        self._state = SessionState.IDLE
        self._stages: List[CommitStage] = []
        # Strokes at the head of the queue owned by the running commit
        self._in_flight = 0

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def image(self) -> Optional[np.ndarray]:
        return None if self._working is None else self._working.copy()

    @property
    def pending_strokes(self) -> List[Stroke]:
        return list(self._strokes)

    @property
    def active(self) -> bool:
        return self._working is not None

    def _ensure_not_committing(self) -> None:
        if self._state is SessionState.COMMITTING:
            raise SessionBusyError("A commit is in progress")

    def _settle(self) -> None:
        if self._state is SessionState.COMMITTING:
            return
        drawing = bool(self._strokes) or self._current is not None
        self._state = SessionState.DRAWING if drawing else SessionState.IDLE

    def activate(self, image: np.ndarray) -> None:
        """Start a session on an RGBA buffer; the buffer is snapshotted."""
        self._ensure_not_committing()
        if image.ndim != 3 or image.shape[2] != 4:
            raise ValueError(f"Expected an RGBA buffer, got shape {image.shape}")
        self._snapshot = np.array(image, dtype=np.uint8, copy=True)
        self._working = self._snapshot.copy()
        self._strokes = []
        self._current = None
        self._state = SessionState.IDLE
        logger.info(f"Removal session activated: {image.shape[1]}x{image.shape[0]}")

    def begin_stroke(
        self,
        point: Point,
        radius: float,
        feather: float = 0.3,
        opacity: float = 1.0,
        mode: BrushMode = BrushMode.CONTENT_AWARE,
        source_point: Optional[Point] = None,
    ) -> Stroke:
        """
        Start a stroke. Allowed while a commit runs; the stroke is queued
        for the next commit.
        """
        if not self.active:
            raise InvalidCommitError("No image loaded")
        self._current = Stroke(
            points=[point],
            radius=radius,
            feather=feather,
            opacity=opacity,
            mode=mode,
            source_point=source_point,
        )
        self._settle()
        return self._current

    def extend_stroke(self, point: Point) -> None:
        if self._current is None:
            return
        self._current.points.append(point)

    def end_stroke(self) -> Optional[Stroke]:
        stroke, self._current = self._current, None
        if stroke is not None:
            self._strokes.append(stroke)
        return stroke

    def add_stroke(self, stroke: Stroke) -> None:
        """Queue an already-finalized stroke."""
        if not self.active:
            raise InvalidCommitError("No image loaded")
        self._strokes.append(stroke)
        self._settle()

    def undo(self) -> Optional[Stroke]:
        """Drop the stroke in progress, or else the last finalized stroke."""
        if self._current is not None:
            stroke, self._current = self._current, None
        elif len(self._strokes) > self._in_flight:
            stroke = self._strokes.pop()
        elif self._strokes:
            raise SessionBusyError("The last stroke is being committed")
        else:
            stroke = None
        self._settle()
        return stroke

    def cancel(self) -> Optional[np.ndarray]:
        """Discard uncommitted strokes and restore the activation snapshot."""
        self._ensure_not_committing()
        self._strokes = []
        self._current = None
        self._state = SessionState.IDLE
        if self._snapshot is None:
            return None
        self._working = self._snapshot.copy()
        logger.info("Removal session cancelled, snapshot restored")
        return self._working.copy()

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _report(self, stage: CommitStage, message: str) -> None:
        self._stages.append(stage)
        logger.debug(f"Stage {stage.value}: {message}")
        if self.on_progress:
            self.on_progress(stage, message)

    def remote_allowed(self) -> bool:
        return (
            self.networked
            and self.remote_client is not None
            and self.remote_client.configured
            and self.quota.can_call()
        )

    async def commit(self, force_general: bool = False) -> CommitResult:
        """
        Apply all pending strokes, one at a time.

        Args:
            force_general: skip the spot-removal fast path (retry after a
                FastPathTimeoutError)

        Raises:
            InvalidCommitError: no image loaded or no strokes
            SessionBusyError: another commit is running
            FastPathTimeoutError: spot removal exceeded its budget; the
                failing stroke and those after it stay pending
        """
        self._ensure_not_committing()
        if not self.active:
            raise InvalidCommitError("No image loaded")
        if self._current is not None:
            self.end_stroke()
        if not self._strokes:
            raise InvalidCommitError("No strokes to commit")

        self._state = SessionState.COMMITTING
        self._stages = []
        buffer = self._working.copy()
        strokes = list(self._strokes)
        self._in_flight = len(strokes)
        outcomes: List[StrokeOutcome] = []
        messages: List[str] = []
        done = 0
        try:
            for stroke in strokes:
                buffer, outcome = await self._commit_stroke(buffer, stroke, force_general)
                outcomes.append(outcome)
                if outcome.message:
                    messages.append(outcome.message)
                done += 1
                # Each applied stroke is kept even if a later one fails.
                self._working = buffer.copy()
            self._report(CommitStage.COMPLETE, "Done")
        finally:
            # Strokes queued during the commit stay pending after the failed ones.
            del self._strokes[:done]
            self._in_flight = 0
            self._state = SessionState.IDLE
            self._settle()

        logger.info(f"Commit complete: {[o.route.value for o in outcomes]}")
        return CommitResult(
            image=self._working.copy(),
            outcomes=outcomes,
            stage=CommitStage.COMPLETE,
            stages=list(self._stages),
            messages=messages,
        )

    async def _commit_stroke(self, buffer: np.ndarray, stroke: Stroke, force_general: bool):
        height, width = buffer.shape[:2]
        self._report(CommitStage.PREPARING, "Preparing mask...")
        try:
            mask = await asyncio.to_thread(self.mask_builder.build, stroke, width, height)
        except InvalidMaskGeometryError as e:
            logger.info(f"Stroke skipped: {e}")
            return buffer, StrokeOutcome(route=Route.NOOP, message=str(e))

        removal = stroke.mode is BrushMode.CONTENT_AWARE
        if removal and not force_general and is_spot_removal(mask, self.small_area_threshold):
            return await self._spot(buffer, mask)

        if removal and self.remote_allowed():
            try:
                return await self._remote(buffer, mask)
            except RecoverableRemoteFailure as e:
                logger.warning(f"Remote inpainting unavailable, falling back to local: {e}")
                message = "AI unavailable, using local processing..."
                if self.quota.exhausted:
                    message = "AI limit reached, using local processing..."
                self._report(CommitStage.ANALYZING, message)
                buffer, outcome = await self._local(buffer, mask, stroke)
                outcome.message = message
                return buffer, outcome

        if removal and self.networked and self.quota.exhausted:
            self._report(CommitStage.ANALYZING, "AI limit reached, using local processing...")
        return await self._local(buffer, mask, stroke)

    async def _spot(self, buffer: np.ndarray, mask: Mask):
        self._report(CommitStage.GENERATING, "Removing spot...")
        try:
            result: FillResult = await asyncio.to_thread(self.spot_remover.remove, buffer, mask)
        except FastPathTimeoutError:
            logger.error(f"Spot removal timed out for bounds {mask.bounds}")
            raise
        return result.image, StrokeOutcome(route=Route.SPOT, modified=result.modified, partial=result.partial)

    async def _remote(self, buffer: np.ndarray, mask: Mask):
        self._report(CommitStage.ANALYZING, "Sending to AI server...")
        try:
            result = await asyncio.wait_for(
                self.remote_client.inpaint(buffer, mask), timeout=self.remote_timeout
            )
        except asyncio.TimeoutError:
            raise RecoverableRemoteFailure(f"Remote inpainting timed out after {self.remote_timeout}s")

        if not result.success:
            if result.status is RemoteStatus.RATE_LIMITED:
                self.quota.mark_exhausted()
            raise RecoverableRemoteFailure(f"{result.status.value}: {result.message}")

        self._report(CommitStage.GENERATING, "Processing AI result...")
        self.quota.record_success(result.remaining)

        weights = mask.weights[:, :, None].astype(np.float64)
        rows, cols = mask.bounds.slices()
        out = buffer.copy()
        current = buffer[rows, cols, :3].astype(np.float64)
        remote = result.image[rows, cols, :3].astype(np.float64)
        out[rows, cols, :3] = np.clip(np.rint(current * (1.0 - weights) + remote * weights), 0, 255).astype(np.uint8)
        return out, StrokeOutcome(route=Route.REMOTE, modified=mask.area, message=result.message)

    async def _local(self, buffer: np.ndarray, mask: Mask, stroke: Stroke):
        nnf = None
        if stroke.mode is BrushMode.CONTENT_AWARE:
            self._report(CommitStage.ANALYZING, "Searching for matching patches...")
            nnf = await asyncio.to_thread(self.search.search, buffer, mask)

        self._report(CommitStage.GENERATING, "Filling region...")
        result = await asyncio.to_thread(self.fill_engine.apply, buffer, mask, stroke, nnf)
        image = result.image

        if stroke.mode is BrushMode.CONTENT_AWARE and result.modified and self.blender.should_blend(mask):
            self._report(CommitStage.BLENDING, "Blending edges...")
            image = await asyncio.to_thread(self.blender.blend, image, buffer, mask, result.alpha)

        return image, StrokeOutcome(route=Route.LOCAL, modified=result.modified, partial=result.partial)
