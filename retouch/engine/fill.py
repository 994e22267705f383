"""
Region fill engine: clone, heal and content-aware fill.

All modes read source pixels from the unmodified input buffer and return a
new buffer. Pixels whose source falls outside the image are left untouched
and counted as skipped, which makes the fill partial.
"""

import logging
import math
from typing import Optional, Tuple

import numpy as np

from retouch.config import get_settings
from retouch.engine.types import (
    BrushMode,
    FillResult,
    Mask,
    NearestNeighborField,
    Stroke,
)

logger = logging.getLogger(__name__)

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)

Offset = Tuple[int, int]


def luminance(rgb: np.ndarray) -> np.ndarray:
    return rgb[..., :3].astype(np.float64) @ LUMA_WEIGHTS


class RegionFillEngine:
    """
    Applies a fill to the masked region of an image.

    Usage:
        engine = RegionFillEngine()
        result = engine.apply(image, mask, stroke, nnf=nnf)
    """

    def __init__(
        self,
        ring_min: Optional[float] = None,
        ring_max: Optional[float] = None,
        correction_falloff: Optional[float] = None,
        auto_source_rings: Optional[int] = None,
    ):
        settings = get_settings()
        self.ring_min = ring_min if ring_min is not None else settings.HEAL_RING_MIN
        self.ring_max = ring_max if ring_max is not None else settings.HEAL_RING_MAX
        self.correction_falloff = (
            correction_falloff if correction_falloff is not None else settings.HEAL_CORRECTION_FALLOFF
        )
        self.auto_source_rings = (
            auto_source_rings if auto_source_rings is not None else settings.AUTO_SOURCE_RINGS
        )

    # ------------------------------------------------------------------
    # Source resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _masked_coords(mask: Mask) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        ly, lx = np.nonzero(mask.weights > 0)
        weights = mask.weights[ly, lx].astype(np.float64)
        return lx + mask.bounds.x0, ly + mask.bounds.y0, weights

    def resolve_source_offset(self, image: np.ndarray, mask: Mask, stroke: Stroke) -> Optional[Offset]:
        """
        Offset from target to source.

        An explicit source point is taken relative to the rounded mask
        centroid; otherwise the nearby region with the closest mean
        luminance is picked.
        """
        if stroke.source_point is not None:
            cx, cy = mask.centroid()
            return (
                int(round(stroke.source_point.x)) - int(round(cx)),
                int(round(stroke.source_point.y)) - int(round(cy)),
            )
        return self.auto_source_offset(image, mask, stroke.radius)

    def auto_source_offset(self, image: np.ndarray, mask: Mask, radius: float) -> Optional[Offset]:
        """Search outward in rings for a region matching the target's mean luminance."""
        height, width = image.shape[:2]
        xs, ys, weights = self._masked_coords(mask)
        if len(xs) == 0:
            return None

        lum = luminance(image)
        target_lum = float((lum[ys, xs] * weights).sum() / weights.sum())

        base = max(2.0 * radius, float(max(mask.bounds.width, mask.bounds.height)))
        step = max(2.0, radius / 2.0)
        best: Optional[Offset] = None
        best_score = math.inf
        for ring in range(self.auto_source_rings):
            dist = base + ring * step
            for k in range(16):
                angle = k * math.pi / 8
                dx = int(round(math.cos(angle) * dist))
                dy = int(round(math.sin(angle) * dist))
                if mask.bounds.shifted(dx, dy).intersects(mask.bounds):
                    continue
                sx, sy = xs + dx, ys + dy
                inside = (sx >= 0) & (sx < width) & (sy >= 0) & (sy < height)
                if not inside.any():
                    continue
                score = abs(float(lum[sy[inside], sx[inside]].mean()) - target_lum)
                if score < best_score:
                    best_score = score
                    best = (dx, dy)

        if best is None:
            logger.warning(f"No source region found around bounds {mask.bounds}")
        else:
            logger.debug(f"Auto-selected source offset {best}, luminance delta {best_score:.2f}")
        return best

    # ------------------------------------------------------------------
    # Fill modes
    # ------------------------------------------------------------------

    def _surround_mean(self, image: np.ndarray, mask: Mask) -> Optional[np.ndarray]:
        ring = (mask.weights > self.ring_min) & (mask.weights < self.ring_max)
        if not ring.any():
            return None
        region = image[mask.bounds.slices()][ring]
        return region[:, :3].astype(np.float64).mean(axis=0)

    def _composite(
        self,
        image: np.ndarray,
        mask: Mask,
        dx: np.ndarray,
        dy: np.ndarray,
        opacity: float,
        heal: bool,
        usable: Optional[np.ndarray] = None,
    ) -> FillResult:
        height, width = image.shape[:2]
        xs, ys, weights = self._masked_coords(mask)
        result = image.copy()
        applied = np.zeros(mask.weights.shape, dtype=np.float64)
        if len(xs) == 0:
            return FillResult(image=result, alpha=applied)

        sx, sy = xs + dx, ys + dy
        ok = (sx >= 0) & (sx < width) & (sy >= 0) & (sy < height)
        if usable is not None:
            ok &= usable
        skipped = int(np.count_nonzero(~ok))
        xs, ys, sx, sy, weights = xs[ok], ys[ok], sx[ok], sy[ok], weights[ok]
        if len(xs) == 0:
            return FillResult(image=result, modified=0, skipped=skipped, alpha=applied)

        src = image[sy, sx].astype(np.float64)
        tgt = image[ys, xs].astype(np.float64)
        alpha = (weights * opacity)[:, None]

        if heal:
            surround = self._surround_mean(image, mask)
            correction = np.zeros(3, dtype=np.float64)
            if surround is not None:
                correction = surround - np.average(src[:, :3], axis=0, weights=weights)
            edge = np.clip(1.0 - self.correction_falloff * weights, 0.0, 1.0)[:, None]
            healed = np.clip(src[:, :3] + correction[None, :] * edge, 0.0, 255.0)
            out = tgt.copy()
            out[:, :3] = tgt[:, :3] * (1.0 - alpha) + healed * alpha
        else:
            out = tgt * (1.0 - alpha) + src * alpha

        result[ys, xs] = np.clip(np.rint(out), 0, 255).astype(np.uint8)
        applied[ys - mask.bounds.y0, xs - mask.bounds.x0] = alpha[:, 0]
        modified = int(np.count_nonzero(alpha[:, 0] > 0))
        return FillResult(image=result, modified=modified, skipped=skipped, alpha=applied)

    def _constant_offset(self, mask: Mask, offset: Offset) -> Tuple[np.ndarray, np.ndarray]:
        count = mask.area
        return np.full(count, offset[0], dtype=np.int64), np.full(count, offset[1], dtype=np.int64)

    def clone(self, image: np.ndarray, mask: Mask, offset: Offset, opacity: float = 1.0) -> FillResult:
        """Direct copy from source, alpha-blended by weight x opacity."""
        dx, dy = self._constant_offset(mask, offset)
        return self._composite(image, mask, dx, dy, opacity, heal=False)

    def heal(self, image: np.ndarray, mask: Mask, offset: Offset, opacity: float = 1.0) -> FillResult:
        """Copy from source with colour correction strongest at the mask edge."""
        dx, dy = self._constant_offset(mask, offset)
        return self._composite(image, mask, dx, dy, opacity, heal=True)

    def content_aware(
        self, image: np.ndarray, mask: Mask, nnf: NearestNeighborField, opacity: float = 1.0
    ) -> FillResult:
        """Heal blending with a per-pixel source offset taken from the NNF."""
        xs, ys, _ = self._masked_coords(mask)
        dx = nnf.offset_x[ys, xs].astype(np.int64)
        dy = nnf.offset_y[ys, xs].astype(np.int64)
        return self._composite(image, mask, dx, dy, opacity, heal=True, usable=nnf.valid[ys, xs])

    def apply(
        self,
        image: np.ndarray,
        mask: Mask,
        stroke: Stroke,
        nnf: Optional[NearestNeighborField] = None,
    ) -> FillResult:
        """Dispatch on the stroke's brush mode."""
        match stroke.mode:
            case BrushMode.CONTENT_AWARE:
                if nnf is None:
                    raise ValueError("Content-aware fill requires a nearest-neighbour field")
                result = self.content_aware(image, mask, nnf, stroke.opacity)
            case BrushMode.CLONE | BrushMode.HEAL:
                offset = self.resolve_source_offset(image, mask, stroke)
                if offset is None:
                    return FillResult(
                        image=image.copy(), skipped=mask.area, alpha=np.zeros(mask.weights.shape)
                    )
                if stroke.mode is BrushMode.CLONE:
                    result = self.clone(image, mask, offset, stroke.opacity)
                else:
                    result = self.heal(image, mask, offset, stroke.opacity)
            case _:
                raise ValueError(f"Unknown brush mode: {stroke.mode}")

        if result.partial:
            logger.info(f"Partial fill: {result.skipped} pixels had no in-bounds source")
        return result
