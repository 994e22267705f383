"""
Stroke mask builder.

Turns brush stroke samples into a weighted coverage mask:
- per-point radial falloff (hard core, smoothstep edge)
- closed loops are simplified and filled, with a feathered exterior band
"""

import logging
import math
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from retouch.config import get_settings
from retouch.engine.types import (
    Bounds,
    ClosedLoop,
    Dot,
    Mask,
    OpenPath,
    Point,
    Stroke,
    StrokeGeometry,
)
from retouch.errors import InvalidMaskGeometryError

logger = logging.getLogger(__name__)


def smoothstep(t: np.ndarray) -> np.ndarray:
    t = np.clip(t, 0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)


def radial_falloff(dist: np.ndarray, radius: float, feather: float) -> np.ndarray:
    """
    Weight for a distance from a stroke point.

    1 up to radius*(1-feather), smoothstep down to 0 at radius, 0 beyond.
    """
    inner = radius * (1.0 - feather)
    weights = np.zeros(dist.shape, dtype=np.float32)
    weights[dist <= inner] = 1.0
    if feather > 0:
        band = (dist > inner) & (dist < radius)
        t = (dist[band] - inner) / (radius * feather)
        weights[band] = 1.0 - smoothstep(t)
    return weights


def points_in_polygon(xs: np.ndarray, ys: np.ndarray, polygon: np.ndarray) -> np.ndarray:
    """Even-odd ray casting test for every (x, y) pair."""
    inside = np.zeros(xs.shape, dtype=bool)
    n = len(polygon)
    j = n - 1
    for i in range(n):
        xi, yi = polygon[i]
        xj, yj = polygon[j]
        j = i
        if yi == yj:
            continue
        crosses = (yi > ys) != (yj > ys)
        x_cross = (xj - xi) * (ys - yi) / (yj - yi) + xi
        inside ^= crosses & (xs < x_cross)
    return inside


def distance_to_polygon_edges(xs: np.ndarray, ys: np.ndarray, polygon: np.ndarray) -> np.ndarray:
    """Distance from every (x, y) pair to the nearest edge of a closed polygon."""
    best = np.full(xs.shape, np.inf, dtype=np.float64)
    n = len(polygon)
    for i in range(n):
        ax, ay = polygon[i]
        bx, by = polygon[(i + 1) % n]
        dx, dy = bx - ax, by - ay
        seg_len2 = dx * dx + dy * dy
        if seg_len2 == 0:
            d = np.hypot(xs - ax, ys - ay)
        else:
            t = np.clip(((xs - ax) * dx + (ys - ay) * dy) / seg_len2, 0.0, 1.0)
            d = np.hypot(xs - (ax + t * dx), ys - (ay + t * dy))
        np.minimum(best, d, out=best)
    return best


def simplify_path(points: Sequence[Point], tolerance: float) -> np.ndarray:
    """Douglas-Peucker simplification of a closed path."""
    curve = np.array([[p.x, p.y] for p in points], dtype=np.float32).reshape(-1, 1, 2)
    simplified = cv2.approxPolyDP(curve, max(tolerance, 0.0), True)
    return simplified.reshape(-1, 2).astype(np.float64)


class StrokeMaskBuilder:
    """
    Builds weighted masks from brush strokes.

    Usage:
        builder = StrokeMaskBuilder()
        mask = builder.build(stroke, width, height)
    """

    def __init__(
        self,
        closed_min_points: Optional[int] = None,
        closing_distance_ratio: Optional[float] = None,
        simplify_tolerance_ratio: Optional[float] = None,
    ):
        settings = get_settings()
        self.closed_min_points = (
            closed_min_points if closed_min_points is not None else settings.CLOSED_MIN_POINTS
        )
        self.closing_distance_ratio = (
            closing_distance_ratio if closing_distance_ratio is not None else settings.CLOSING_DISTANCE_RATIO
        )
        self.simplify_tolerance_ratio = (
            simplify_tolerance_ratio
            if simplify_tolerance_ratio is not None
            else settings.SIMPLIFY_TOLERANCE_RATIO
        )

    def is_closed(self, stroke: Stroke) -> bool:
        points = stroke.points
        if len(points) < self.closed_min_points:
            return False
        return points[0].distance_to(points[-1]) <= stroke.radius * self.closing_distance_ratio

    def classify(self, stroke: Stroke) -> StrokeGeometry:
        """Resolve the stroke into its geometry variant."""
        points = stroke.points
        if len(points) == 1 or all(p == points[0] for p in points):
            return Dot(points[0])
        if self.is_closed(stroke):
            polygon = simplify_path(points, stroke.radius * self.simplify_tolerance_ratio)
            if len(polygon) >= 3:
                return ClosedLoop(tuple(points), polygon)
            logger.debug("Closed stroke simplified to fewer than 3 vertices, treating as open path")
        return OpenPath(tuple(points))

    @staticmethod
    def stroke_bounds(stroke: Stroke, width: int, height: int) -> Bounds:
        """Stroke extent expanded by radius*(1+feather), clipped to the image."""
        pad = stroke.radius * (1.0 + stroke.feather)
        xs = [p.x for p in stroke.points]
        ys = [p.y for p in stroke.points]
        raw = Bounds(
            int(math.floor(min(xs) - pad)),
            int(math.floor(min(ys) - pad)),
            int(math.ceil(max(xs) + pad)) + 1,
            int(math.ceil(max(ys) + pad)) + 1,
        )
        return raw.clip(width, height)

    def _radial_weights(
        self, points: Sequence[Point], stroke: Stroke, grid: Tuple[np.ndarray, np.ndarray]
    ) -> np.ndarray:
        xs, ys = grid
        min_dist = np.full(xs.shape, np.inf, dtype=np.float64)
        for p in points:
            np.minimum(min_dist, np.hypot(xs - p.x, ys - p.y), out=min_dist)
        return radial_falloff(min_dist, stroke.radius, stroke.feather)

    def _loop_weights(
        self, polygon: np.ndarray, stroke: Stroke, grid: Tuple[np.ndarray, np.ndarray]
    ) -> np.ndarray:
        xs, ys = grid
        inside = points_in_polygon(xs, ys, polygon)
        weights = inside.astype(np.float32)
        band = stroke.radius * stroke.feather
        if band > 0:
            edge_dist = distance_to_polygon_edges(xs, ys, polygon)
            outer = ~inside & (edge_dist < band)
            weights[outer] = 1.0 - smoothstep(edge_dist[outer] / band)
        return weights

    def build(self, stroke: Stroke, width: int, height: int) -> Mask:
        """
        Build the mask for a stroke on a width x height image.

        Raises:
            InvalidMaskGeometryError: no points, non-positive radius, or the
                stroke does not cover any pixel of the image.
        """
        if not stroke.points:
            raise InvalidMaskGeometryError("Stroke has no points")
        if stroke.radius <= 0:
            raise InvalidMaskGeometryError(f"Invalid brush radius: {stroke.radius}")

        bounds = self.stroke_bounds(stroke, width, height)
        if bounds.is_empty:
            raise InvalidMaskGeometryError("Stroke lies outside the image")

        ys, xs = np.mgrid[bounds.y0:bounds.y1, bounds.x0:bounds.x1].astype(np.float64)
        grid = (xs, ys)

        geometry = self.classify(stroke)
        match geometry:
            case Dot(point=point):
                weights = self._radial_weights([point], stroke, grid)
            case OpenPath(points=points):
                weights = self._radial_weights(points, stroke, grid)
            case ClosedLoop(points=points, polygon=polygon):
                weights = np.maximum(
                    self._loop_weights(polygon, stroke, grid),
                    self._radial_weights(points, stroke, grid),
                )

        mask = Mask(weights=weights.astype(np.float32), bounds=bounds, image_width=width, image_height=height)
        if mask.is_empty:
            raise InvalidMaskGeometryError("Stroke mask has zero area")

        logger.debug(
            f"Mask built: geometry={type(geometry).__name__}, bounds={bounds}, area={mask.area}"
        )
        return mask
