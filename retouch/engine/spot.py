"""
Spot removal: fast local averaging for small masks.
"""

import logging
import time
from typing import Optional

import cv2
import numpy as np

from retouch.config import get_settings
from retouch.engine.types import Bounds, FillResult, Mask
from retouch.errors import FastPathTimeoutError

logger = logging.getLogger(__name__)


def mask_area(mask: Mask) -> int:
    """Number of pixels with non-zero weight."""
    return mask.area


def is_spot_removal(mask: Mask, threshold: Optional[int] = None) -> bool:
    """Small masks (by bounding-box area) take the fast path."""
    threshold = threshold if threshold is not None else get_settings().SMALL_AREA_THRESHOLD
    return mask.bounds_area < threshold


def recommended_timeout_ms(mask: Mask) -> int:
    """Time budget for a mask, scaled by area and capped at 5 seconds."""
    settings = get_settings()
    area = mask_area(mask)
    if area < settings.SMALL_AREA_THRESHOLD:
        return settings.SPOT_TIMEOUT_MS
    return int(min(5000, max(500, area * 2)))


class SpotRemover:
    """
    Replaces each masked pixel with the mean of nearby unmasked pixels.

    The time budget is hard: the deadline is checked between rows and the
    whole operation fails with FastPathTimeoutError once it passes.
    """

    def __init__(self, sample_radius: Optional[int] = None, timeout_ms: Optional[float] = None):
        settings = get_settings()
        self.sample_radius = sample_radius if sample_radius is not None else settings.SPOT_SAMPLE_RADIUS
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.SPOT_TIMEOUT_MS

    def _check(self, start: float) -> None:
        elapsed_ms = (time.monotonic() - start) * 1000
        if elapsed_ms > self.timeout_ms:
            raise FastPathTimeoutError(self.timeout_ms, elapsed_ms)

    def remove(self, image: np.ndarray, mask: Mask) -> FillResult:
        start = time.monotonic()
        height, width = image.shape[:2]
        r = self.sample_radius
        b = mask.bounds
        region = Bounds(b.x0 - r, b.y0 - r, b.x1 + r, b.y1 + r).clip(width, height)
        rows, cols = region.slices()

        weights = mask.full()[rows, cols]
        usable = (weights <= 0).astype(np.float32)
        crop = image[rows, cols].astype(np.float32)

        ksize = (2 * r + 1, 2 * r + 1)
        sums = cv2.boxFilter(
            crop[:, :, :3] * usable[:, :, None], -1, ksize,
            normalize=False, borderType=cv2.BORDER_CONSTANT,
        )
        counts = cv2.boxFilter(usable, -1, ksize, normalize=False, borderType=cv2.BORDER_CONSTANT)
        self._check(start)

        result = image.copy()
        out = result[rows, cols]
        modified = skipped = 0
        for row in range(b.y0 - region.y0, b.y1 - region.y0):
            self._check(start)
            w_row = weights[row]
            targets = np.nonzero(w_row > 0)[0]
            if len(targets) == 0:
                continue
            have = counts[row, targets] > 0.5
            skipped += int(np.count_nonzero(~have))
            targets = targets[have]
            if len(targets) == 0:
                continue
            avg = sums[row, targets] / counts[row, targets][:, None]
            alpha = w_row[targets][:, None]
            blended = crop[row, targets, :3] * (1.0 - alpha) + avg * alpha
            out[row, targets, :3] = np.clip(np.rint(blended), 0, 255).astype(np.uint8)
            modified += len(targets)

        elapsed_ms = (time.monotonic() - start) * 1000
        logger.debug(f"Spot removal: {modified} pixels in {elapsed_ms:.1f}ms")
        return FillResult(image=result, modified=modified, skipped=skipped)
