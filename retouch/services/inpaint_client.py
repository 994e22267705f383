"""
Remote Inpainting Client - AI object removal over HTTP

Sends the image and mask as base64 PNG data URLs and loads the returned
result image. Request body:
    {"image": "data:image/png;base64,...", "mask": "data:image/png;base64,..."}
Success response:
    {"imageUrl": "...", "remaining": 4}

The client never raises for remote problems; every failure comes back as a
RemoteInpaintResult with success=False so the caller can fall back.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
import numpy as np

from retouch.config import get_settings
from retouch.engine.types import Mask
from retouch.utils.image_utils import (
    decode_image,
    mask_to_data_url,
    resize_rgba,
    split_data_url,
    to_data_url,
)

logger = logging.getLogger(__name__)


class RemoteStatus(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    NOT_CONFIGURED = "not_configured"
    FAILED = "failed"


@dataclass
class RemoteInpaintResult:
    """Remote inpainting result"""
    success: bool
    status: RemoteStatus
    message: str = ""
    image: Optional[np.ndarray] = None
    remaining: Optional[int] = None
    raw_response: Optional[dict] = None


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return default
    if isinstance(data, dict):
        return str(data.get("message") or default)
    return default


class RemoteInpaintClient:
    """
    Remote inpainting service client.

    Usage:
        client = RemoteInpaintClient(api_url="https://example.com/api/inpaint")
        result = await client.inpaint(image, mask)
        if result.success:
            image = result.image
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_url: inpainting endpoint (defaults to REMOTE_INPAINT_URL)
            timeout: per-request timeout in seconds
            transport: custom httpx transport
        """
        settings = get_settings()
        self.api_url = api_url or settings.REMOTE_INPAINT_URL
        self.timeout = timeout if timeout is not None else settings.REMOTE_TIMEOUT_SECONDS
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_url)

    async def _load_result(self, client: httpx.AsyncClient, image_url: str) -> np.ndarray:
        if image_url.startswith("data:"):
            _, payload = split_data_url(image_url)
            return decode_image(payload)
        response = await client.get(image_url)
        response.raise_for_status()
        return decode_image(response.content)

    async def inpaint(self, image: np.ndarray, mask: Mask) -> RemoteInpaintResult:
        """
        Inpaint the masked region remotely.

        Args:
            image: RGBA uint8 buffer
            mask: region to inpaint (weight > 0.5 is sent as white)

        Returns:
            RemoteInpaintResult; ``image`` has the same size as the input
        """
        if not self.configured:
            return RemoteInpaintResult(
                success=False,
                status=RemoteStatus.NOT_CONFIGURED,
                message="AI server not configured",
            )

        height, width = image.shape[:2]
        payload = {"image": to_data_url(image), "mask": mask_to_data_url(mask)}

        try:
            logger.info(f"Calling remote inpainting API: {self.api_url}")

            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.api_url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )

                if response.status_code == 429:
                    message = _error_message(response, "Daily limit reached")
                    logger.warning(f"Remote inpainting rate limited: {message}")
                    return RemoteInpaintResult(
                        success=False,
                        status=RemoteStatus.RATE_LIMITED,
                        message=message,
                        remaining=0,
                    )

                if response.status_code == 503:
                    logger.warning("Remote inpainting not configured (HTTP 503)")
                    return RemoteInpaintResult(
                        success=False,
                        status=RemoteStatus.NOT_CONFIGURED,
                        message="AI server not configured",
                    )

                if response.status_code != 200:
                    logger.error(f"Remote inpainting failed: HTTP {response.status_code}")
                    return RemoteInpaintResult(
                        success=False,
                        status=RemoteStatus.FAILED,
                        message=_error_message(response, f"HTTP error: {response.status_code}"),
                        raw_response={"status_code": response.status_code, "text": response.text},
                    )

                data = response.json()
                if not isinstance(data, dict):
                    raise ValueError("Response body is not an object")

                if data.get("error") == "rate_limit":
                    return RemoteInpaintResult(
                        success=False,
                        status=RemoteStatus.RATE_LIMITED,
                        message=data.get("message", "Daily limit reached"),
                        remaining=0,
                        raw_response=data,
                    )
                if data.get("error"):
                    return RemoteInpaintResult(
                        success=False,
                        status=RemoteStatus.FAILED,
                        message=data.get("message", "AI processing failed"),
                        raw_response=data,
                    )

                image_url = data.get("imageUrl")
                if not isinstance(image_url, str) or not image_url:
                    raise ValueError("Response is missing imageUrl")
                remaining = data.get("remaining")
                if not isinstance(remaining, int) or isinstance(remaining, bool):
                    remaining = None

                result_image = await self._load_result(client, image_url)

            result_image = resize_rgba(result_image, width, height)
            logger.info(f"Remote inpainting complete: remaining={remaining}")
            return RemoteInpaintResult(
                success=True,
                status=RemoteStatus.OK,
                message="AI removal complete",
                image=result_image,
                remaining=remaining,
                raw_response={k: v for k, v in data.items() if k != "imageUrl"},
            )

        except httpx.TimeoutException as e:
            logger.error(f"Remote inpainting timed out: {e}")
            return RemoteInpaintResult(
                success=False,
                status=RemoteStatus.FAILED,
                message=f"Request timed out: {self.timeout}s",
            )
        except httpx.HTTPError as e:
            logger.error(f"Remote inpainting request error: {e}")
            return RemoteInpaintResult(
                success=False,
                status=RemoteStatus.FAILED,
                message=f"Request error: {str(e)}",
            )
        except Exception as e:
            logger.error(f"Remote inpainting returned an unusable response: {e}")
            return RemoteInpaintResult(
                success=False,
                status=RemoteStatus.FAILED,
                message=str(e),
            )
