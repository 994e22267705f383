"""
Pydantic models for the removal API request/response.
"""

from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from retouch.engine.types import BrushMode, Point, Stroke


class StrokeModel(BaseModel):
    """One brush stroke in image pixel coordinates."""

    points: List[Tuple[float, float]] = Field(..., min_length=1, description="Stroke points as [x, y] pairs")
    radius: float = Field(..., gt=0, description="Brush radius in pixels")
    feather: float = Field(default=0.3, ge=0.0, le=1.0, description="Edge softness")
    opacity: float = Field(default=1.0, ge=0.0, le=1.0, description="Stroke opacity")
    mode: BrushMode = Field(default=BrushMode.CONTENT_AWARE, description="Brush mode")
    source_point: Optional[Tuple[float, float]] = Field(
        default=None,
        description="Clone/heal source point; chosen automatically when omitted",
    )

    def to_stroke(self) -> Stroke:
        return Stroke(
            points=[Point(x, y) for x, y in self.points],
            radius=self.radius,
            feather=self.feather,
            opacity=self.opacity,
            mode=self.mode,
            source_point=Point(*self.source_point) if self.source_point else None,
        )


class RemovalOptions(BaseModel):
    """Options for one removal request."""

    force_general: bool = Field(default=False, description="Skip the spot-removal fast path")
    return_base64: bool = Field(default=True, description="Return the image as base64 PNG")


class StrokeOutcomeData(BaseModel):
    route: Literal["spot", "remote", "local", "noop"]
    modified: int = Field(default=0, description="Pixels written")
    partial: bool = Field(default=False, description="Some masked pixels had no usable source")
    message: str = Field(default="")


class RemovalResultData(BaseModel):
    """Data returned from a removal commit."""

    status: Literal["complete", "error"]
    reason: str = Field(default="", description="Status reason/description")
    width: int = Field(default=0)
    height: int = Field(default=0)
    strokes: List[StrokeOutcomeData] = Field(default_factory=list)
    stages: List[str] = Field(default_factory=list, description="Progress stages in order")
    messages: List[str] = Field(default_factory=list, description="User-facing status messages")
    time_ms: int = Field(default=0, description="Processing time in milliseconds")
    output_image_base64: Optional[str] = Field(default=None, description="Result PNG as base64")


class RemovalResponse(BaseModel):
    """Standard API response for removal endpoints."""

    success: bool = Field(description="Whether the request was successful")
    data: Optional[RemovalResultData] = Field(default=None)
    error: Optional[str] = Field(default=None, description="Error message if success=false")


class QuotaResponse(BaseModel):
    used: int
    remaining: int
    limit: int
    exhausted: bool = False


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(default="ok")
    version: str = Field(default="0.1.0")
    networked: bool = Field(default=False)
