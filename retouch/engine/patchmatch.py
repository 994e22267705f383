"""
PatchMatch approximate nearest-neighbour search.

For every masked pixel, finds an offset to an unmasked source pixel whose
surrounding patch looks similar. Patch distance only compares samples that
are inside the image and outside the mask in both windows, so the known
context around the hole drives the match.

The search is randomized and approximate:
1. random initialization within the search radius
2. serpentine propagation of neighbours' offsets
3. random search in geometrically shrinking windows

Every update is a strict improvement, so per-pixel distance never increases.
"""

import logging
from typing import Callable, Optional

import cv2
import numpy as np

from retouch.config import get_settings
from retouch.engine.types import Mask, NearestNeighborField

logger = logging.getLogger(__name__)

PhaseCallback = Callable[[int, str, NearestNeighborField], None]


class PatchMatchState:
    """
    Working state of one search over one image/mask pair.
    """

    def __init__(
        self,
        image: np.ndarray,
        masked: np.ndarray,
        patch_size: int,
        search_radius: int,
        rng: np.random.Generator,
        init_attempts: int,
    ):
        self.height, self.width = masked.shape
        self.patch_size = patch_size
        self.half = patch_size // 2
        self.search_radius = search_radius
        self.rng = rng
        self.init_attempts = init_attempts
        self.masked = masked

        h = self.half
        # Padded copies so every window is a plain slice; padding is never usable.
        self.rgb = np.zeros((self.height + 2 * h, self.width + 2 * h, 3), dtype=np.float32)
        self.rgb[h:h + self.height, h:h + self.width] = image[:, :, :3]
        self.usable = np.zeros((self.height + 2 * h, self.width + 2 * h), dtype=bool)
        self.usable[h:h + self.height, h:h + self.width] = ~masked

        # Pixels whose own window holds no usable sample can never get a finite distance.
        support = cv2.boxFilter(
            self.usable.astype(np.float32), -1, (patch_size, patch_size),
            normalize=False, borderType=cv2.BORDER_CONSTANT,
        )
        self.has_support = support[h:h + self.height, h:h + self.width] > 0.5

        ys, xs = np.nonzero(masked)
        self.masked_ys = ys
        self.masked_xs = xs
        self.source_ys, self.source_xs = np.nonzero(~masked)

    def is_source_ok(self, sx: int, sy: int) -> bool:
        return 0 <= sx < self.width and 0 <= sy < self.height and not self.masked[sy, sx]

    def distance(self, x: int, y: int, sx: int, sy: int) -> float:
        """Mean squared RGB difference between the windows at (x, y) and (sx, sy)."""
        p = self.patch_size
        valid = self.usable[y:y + p, x:x + p] & self.usable[sy:sy + p, sx:sx + p]
        n = int(np.count_nonzero(valid))
        if n == 0:
            return float("inf")
        diff = self.rgb[y:y + p, x:x + p][valid] - self.rgb[sy:sy + p, sx:sx + p][valid]
        return float(np.square(diff).sum()) / (n * 3)

    def initialize(self) -> NearestNeighborField:
        """Random offsets for masked pixels, identity elsewhere."""
        shape = (self.height, self.width)
        nnf = NearestNeighborField(
            offset_x=np.zeros(shape, dtype=np.int32),
            offset_y=np.zeros(shape, dtype=np.int32),
            distance=np.zeros(shape, dtype=np.float64),
            masked=self.masked.copy(),
            valid=np.zeros(shape, dtype=bool),
        )
        count = len(self.masked_xs)
        if count == 0:
            return nnf

        nnf.distance[self.masked] = np.inf
        if len(self.source_xs) == 0:
            logger.warning("PatchMatch: no unmasked pixels to sample from")
            return nnf

        xs, ys = self.masked_xs, self.masked_ys
        ox = np.zeros(count, dtype=np.int64)
        oy = np.zeros(count, dtype=np.int64)
        pending = np.ones(count, dtype=bool)
        radius = self.search_radius
        for _ in range(self.init_attempts):
            idx = np.nonzero(pending)[0]
            if len(idx) == 0:
                break
            cand_x = self.rng.integers(-radius, radius + 1, size=len(idx))
            cand_y = self.rng.integers(-radius, radius + 1, size=len(idx))
            sx = xs[idx] + cand_x
            sy = ys[idx] + cand_y
            inside = (sx >= 0) & (sx < self.width) & (sy >= 0) & (sy < self.height)
            ok = inside.copy()
            ok[inside] = ~self.masked[sy[inside], sx[inside]]
            hit = idx[ok]
            ox[hit] = cand_x[ok]
            oy[hit] = cand_y[ok]
            pending[hit] = False

        # Resample misses uniformly from the unmasked pixels.
        idx = np.nonzero(pending)[0]
        if len(idx) > 0:
            pick = self.rng.integers(0, len(self.source_xs), size=len(idx))
            ox[idx] = self.source_xs[pick] - xs[idx]
            oy[idx] = self.source_ys[pick] - ys[idx]

        nnf.offset_x[ys, xs] = ox
        nnf.offset_y[ys, xs] = oy
        nnf.valid[ys, xs] = True
        for x, y, dx, dy in zip(xs.tolist(), ys.tolist(), ox.tolist(), oy.tolist()):
            if self.has_support[y, x]:
                nnf.distance[y, x] = self.distance(x, y, x + dx, y + dy)
        return nnf

    def _try(self, nnf: NearestNeighborField, x: int, y: int, dx: int, dy: int) -> bool:
        sx, sy = x + dx, y + dy
        if not self.is_source_ok(sx, sy):
            return False
        d = self.distance(x, y, sx, sy)
        if d < nnf.distance[y, x]:
            nnf.offset_x[y, x] = dx
            nnf.offset_y[y, x] = dy
            nnf.distance[y, x] = d
            nnf.valid[y, x] = True
            return True
        return False

    def _order(self, reverse: bool):
        coords = zip(self.masked_xs.tolist(), self.masked_ys.tolist())
        return reversed(list(coords)) if reverse else coords

    def propagate(self, nnf: NearestNeighborField, reverse: bool = False) -> int:
        """
        One serpentine pass: forward tests left/up, reverse tests right/down.

        Returns the number of adopted offsets.
        """
        step = 1 if reverse else -1
        adopted = 0
        for x, y in self._order(reverse):
            if not self.has_support[y, x]:
                continue
            for nx, ny in ((x + step, y), (x, y + step)):
                if not (0 <= nx < self.width and 0 <= ny < self.height):
                    continue
                if not nnf.valid[ny, nx]:
                    continue
                if self._try(nnf, x, y, int(nnf.offset_x[ny, nx]), int(nnf.offset_y[ny, nx])):
                    adopted += 1
        return adopted

    def random_search(self, nnf: NearestNeighborField) -> int:
        """
        Sample around the current best in windows that halve down to radius 1.

        Returns the number of accepted candidates.
        """
        accepted = 0
        for x, y in self._order(False):
            if not self.has_support[y, x]:
                continue
            radius = self.search_radius
            while radius >= 1:
                dx = int(nnf.offset_x[y, x]) + int(self.rng.integers(-radius, radius + 1))
                dy = int(nnf.offset_y[y, x]) + int(self.rng.integers(-radius, radius + 1))
                if self._try(nnf, x, y, dx, dy):
                    accepted += 1
                radius //= 2
        return accepted


class PatchSimilaritySearch:
    """
    PatchMatch nearest-neighbour field search over a mask.

    Usage:
        search = PatchSimilaritySearch(seed=0)
        nnf = search.search(image, mask)
    """

    def __init__(
        self,
        patch_size: Optional[int] = None,
        iterations: Optional[int] = None,
        search_radius: Optional[int] = None,
        seed: Optional[int] = None,
        init_attempts: Optional[int] = None,
    ):
        settings = get_settings()
        self.patch_size = patch_size if patch_size is not None else settings.PATCH_SIZE
        if self.patch_size % 2 == 0:
            raise ValueError(f"patch_size must be odd, got {self.patch_size}")
        self.iterations = iterations if iterations is not None else settings.PATCHMATCH_ITERATIONS
        self.search_radius = search_radius if search_radius is not None else settings.PATCHMATCH_SEARCH_RADIUS
        self.seed = seed if seed is not None else settings.PATCHMATCH_SEED
        self.init_attempts = init_attempts if init_attempts is not None else settings.PATCHMATCH_INIT_ATTEMPTS

    def prepare(self, image: np.ndarray, mask: Mask) -> PatchMatchState:
        height, width = image.shape[:2]
        radius = self.search_radius
        if radius is None:
            radius = max(width, height) // 2
        radius = max(1, radius)
        return PatchMatchState(
            image=image,
            masked=mask.full() > 0,
            patch_size=self.patch_size,
            search_radius=int(radius),
            rng=np.random.default_rng(self.seed),
            init_attempts=self.init_attempts,
        )

    def search(
        self,
        image: np.ndarray,
        mask: Mask,
        on_phase: Optional[PhaseCallback] = None,
    ) -> NearestNeighborField:
        """
        Run the full search.

        Args:
            image: RGBA uint8 buffer
            mask: mask over the image
            on_phase: called after every phase with (iteration, phase, nnf)

        Returns:
            NearestNeighborField for the image
        """
        state = self.prepare(image, mask)
        nnf = state.initialize()
        if on_phase:
            on_phase(-1, "initialize", nnf)
        if not nnf.valid.any():
            return nnf

        for iteration in range(self.iterations):
            reverse = iteration % 2 == 1
            adopted = state.propagate(nnf, reverse=reverse)
            if on_phase:
                on_phase(iteration, "propagate", nnf)
            accepted = state.random_search(nnf)
            if on_phase:
                on_phase(iteration, "random_search", nnf)
            logger.debug(
                f"PatchMatch iteration {iteration + 1}/{self.iterations}: "
                f"propagated={adopted}, random={accepted}"
            )

        finite = nnf.masked_distances()
        finite = finite[np.isfinite(finite)]
        logger.info(
            f"PatchMatch done: masked={int(nnf.masked.sum())}, "
            f"mean_distance={float(finite.mean()) if len(finite) else float('inf'):.2f}"
        )
        return nnf
