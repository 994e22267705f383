"""
Core data types for the removal engine.

Pixel buffers are numpy arrays of shape (H, W, 4), dtype uint8, RGBA order.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple, Union

import numpy as np


class BrushMode(str, Enum):
    """Brush operation applied at commit time."""
    CLONE = "clone"
    HEAL = "heal"
    CONTENT_AWARE = "content-aware"


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    def distance_to(self, other: "Point") -> float:
        return float(np.hypot(self.x - other.x, self.y - other.y))


@dataclass
class Stroke:
    """A brush stroke in image space."""
    points: List[Point]
    radius: float
    feather: float = 0.3
    opacity: float = 1.0
    mode: BrushMode = BrushMode.CONTENT_AWARE
    source_point: Optional[Point] = None

    def __post_init__(self) -> None:
        self.feather = min(1.0, max(0.0, float(self.feather)))
        self.opacity = min(1.0, max(0.0, float(self.opacity)))


# Stroke geometry: tagged union consumed by the mask builder.

@dataclass(frozen=True)
class Dot:
    point: Point


@dataclass(frozen=True)
class OpenPath:
    points: Tuple[Point, ...]


@dataclass(frozen=True)
class ClosedLoop:
    points: Tuple[Point, ...]
    polygon: np.ndarray = field(compare=False)  # (N, 2) float64, simplified


StrokeGeometry = Union[Dot, OpenPath, ClosedLoop]


@dataclass(frozen=True)
class Bounds:
    """Half-open integer rectangle [x0, x1) x [y0, y1)."""
    x0: int
    y0: int
    x1: int
    y1: int

    @property
    def width(self) -> int:
        return max(0, self.x1 - self.x0)

    @property
    def height(self) -> int:
        return max(0, self.y1 - self.y0)

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def is_empty(self) -> bool:
        return self.area == 0

    def shifted(self, dx: int, dy: int) -> "Bounds":
        return Bounds(self.x0 + dx, self.y0 + dy, self.x1 + dx, self.y1 + dy)

    def intersects(self, other: "Bounds") -> bool:
        return (
            self.x0 < other.x1 and other.x0 < self.x1
            and self.y0 < other.y1 and other.y0 < self.y1
        )

    def clip(self, width: int, height: int) -> "Bounds":
        return Bounds(
            max(0, self.x0), max(0, self.y0),
            min(width, self.x1), min(height, self.y1),
        )

    def slices(self) -> Tuple[slice, slice]:
        return slice(self.y0, self.y1), slice(self.x0, self.x1)


@dataclass
class Mask:
    """
    Per-pixel weights in [0, 1] over a bounding rectangle of an image.

    Weight is 0 everywhere outside ``bounds``.
    """
    weights: np.ndarray  # (bounds.height, bounds.width) float32
    bounds: Bounds
    image_width: int
    image_height: int

    def full(self) -> np.ndarray:
        """Expand to an image-sized float32 grid."""
        grid = np.zeros((self.image_height, self.image_width), dtype=np.float32)
        grid[self.bounds.slices()] = self.weights
        return grid

    @property
    def area(self) -> int:
        return int(np.count_nonzero(self.weights > 0))

    @property
    def bounds_area(self) -> int:
        return self.bounds.area

    @property
    def is_empty(self) -> bool:
        return self.area == 0

    def centroid(self) -> Tuple[float, float]:
        """Weighted centroid in image coordinates."""
        total = float(self.weights.sum())
        if total <= 0:
            return (
                (self.bounds.x0 + self.bounds.x1 - 1) / 2.0,
                (self.bounds.y0 + self.bounds.y1 - 1) / 2.0,
            )
        ys, xs = np.mgrid[self.bounds.y0:self.bounds.y1, self.bounds.x0:self.bounds.x1]
        cx = float((xs * self.weights).sum()) / total
        cy = float((ys * self.weights).sum()) / total
        return cx, cy


@dataclass
class NearestNeighborField:
    """
    Per-pixel source offsets over a whole image.

    Only entries where ``masked`` is True carry search results; ``valid``
    marks masked entries whose offset resolves to an in-bounds unmasked pixel.
    """
    offset_x: np.ndarray  # (H, W) int32
    offset_y: np.ndarray  # (H, W) int32
    distance: np.ndarray  # (H, W) float64
    masked: np.ndarray  # (H, W) bool
    valid: np.ndarray  # (H, W) bool

    def masked_distances(self) -> np.ndarray:
        return self.distance[self.masked]


@dataclass
class FillResult:
    image: np.ndarray
    modified: int = 0
    skipped: int = 0
    # weight x opacity actually applied, over the mask bounds; 0 where skipped
    alpha: Optional[np.ndarray] = None

    @property
    def partial(self) -> bool:
        return self.skipped > 0
