"""
Removal API endpoints.
"""

import json
import logging
import time
from typing import Annotated, List

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from pydantic import TypeAdapter, ValidationError

from retouch.config import get_settings
from retouch.errors import FastPathTimeoutError, RemovalError
from retouch.models.removal import (
    HealthResponse,
    QuotaResponse,
    RemovalOptions,
    RemovalResponse,
    RemovalResultData,
    StrokeModel,
    StrokeOutcomeData,
)
from retouch.services.inpaint_client import RemoteInpaintClient
from retouch.services.quota_service import UsageQuotaTracker
from retouch.services.removal_service import CommitResult, RemovalOrchestrator
from retouch.utils.image_utils import decode_image, encode_png_base64

logger = logging.getLogger(__name__)

router = APIRouter()

_strokes_adapter = TypeAdapter(List[StrokeModel])


def get_quota_tracker(request: Request) -> UsageQuotaTracker:
    return request.app.state.quota_tracker


def get_remote_client(request: Request) -> RemoteInpaintClient:
    return request.app.state.remote_client


def parse_strokes(raw: str) -> List[StrokeModel]:
    try:
        strokes = _strokes_adapter.validate_python(json.loads(raw))
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid strokes: {e}")
    if not strokes:
        raise HTTPException(status_code=422, detail="At least one stroke is required")
    return strokes


def _result_data(result: CommitResult, elapsed_ms: int, return_base64: bool) -> RemovalResultData:
    height, width = result.image.shape[:2]
    return RemovalResultData(
        status="complete",
        reason="partial" if result.partial else "ok",
        width=width,
        height=height,
        strokes=[
            StrokeOutcomeData(route=o.route.value, modified=o.modified, partial=o.partial, message=o.message)
            for o in result.outcomes
        ],
        stages=[s.value for s in result.stages],
        messages=result.messages,
        time_ms=elapsed_ms,
        output_image_base64=encode_png_base64(result.image) if return_base64 else None,
    )


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint.
    """
    return HealthResponse(status="ok", version="0.1.0", networked=get_settings().NETWORKED)


@router.get("/api/v1/quota", response_model=QuotaResponse, tags=["Quota"])
async def quota_status(tracker: UsageQuotaTracker = Depends(get_quota_tracker)) -> QuotaResponse:
    """Remote inpainting usage for today."""
    stats = tracker.usage_stats()
    return QuotaResponse(**stats, exhausted=tracker.exhausted)


@router.post(
    "/api/v1/remove",
    response_model=RemovalResponse,
    tags=["Removal"],
    summary="Remove objects (multipart upload)",
    description="Upload an image and brush strokes; the strokes are committed and the edited image returned.",
)
async def remove_objects(
    file: Annotated[UploadFile, File(description="Image to edit")],
    strokes: Annotated[str, Form(description="JSON array of strokes")],
    force_general: Annotated[bool, Form()] = False,
    return_base64: Annotated[bool, Form()] = True,
    tracker: UsageQuotaTracker = Depends(get_quota_tracker),
    remote_client: RemoteInpaintClient = Depends(get_remote_client),
) -> RemovalResponse:
    """
    Apply brush strokes to an uploaded image.

    Each stroke goes through spot removal, remote inpainting or the local
    PatchMatch pipeline. A spot-removal timeout is retried once on the
    general path.
    """
    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid file type: {file.content_type}. Expected image/*",
        )

    stroke_models = parse_strokes(strokes)
    options = RemovalOptions(force_general=force_general, return_base64=return_base64)

    try:
        image = decode_image(await file.read())
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Could not decode image: {e}")

    orchestrator = RemovalOrchestrator(quota=tracker, remote_client=remote_client)
    orchestrator.activate(image)
    for model in stroke_models:
        orchestrator.add_stroke(model.to_stroke())

    start = time.monotonic()
    try:
        try:
            result = await orchestrator.commit(force_general=options.force_general)
        except FastPathTimeoutError as e:
            logger.warning(f"{e}; retrying pending strokes on the general path")
            result = await orchestrator.commit(force_general=True)
            result.messages.insert(0, "Spot removal timed out, using general removal")
    except RemovalError as e:
        logger.error(f"Removal failed: {e}")
        return RemovalResponse(
            success=False,
            error=str(e),
            data=RemovalResultData(status="error", reason=str(e)),
        )

    elapsed_ms = int((time.monotonic() - start) * 1000)
    logger.info(f"Removal request complete: strokes={len(stroke_models)}, time={elapsed_ms}ms")
    return RemovalResponse(success=True, data=_result_data(result, elapsed_ms, options.return_base64))
