"""
Image conversion helpers: raw bytes <-> RGBA numpy buffers, PNG/base64.
"""

import base64
import binascii
import io
import logging
from typing import Tuple

import numpy as np
from PIL import Image

from retouch.engine.types import Mask

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:image/png;base64,"


def decode_image(image_bytes: bytes) -> np.ndarray:
    """
    Decode any Pillow-readable image into an RGBA uint8 buffer.

    Args:
        image_bytes: encoded image data

    Returns:
        np.ndarray of shape (H, W, 4)
    """
    img = Image.open(io.BytesIO(image_bytes))
    original_format = img.format or "UNKNOWN"
    if img.mode != "RGBA":
        img = img.convert("RGBA")
    logger.debug(f"Image decoded: format={original_format}, size={img.size}")
    return np.array(img, dtype=np.uint8)


def encode_png(rgba: np.ndarray) -> bytes:
    """Encode an RGBA buffer as PNG bytes."""
    output = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8)).save(output, format="PNG")
    return output.getvalue()


def encode_png_base64(rgba: np.ndarray) -> str:
    return base64.b64encode(encode_png(rgba)).decode("utf-8")


def to_data_url(rgba: np.ndarray) -> str:
    """RGBA buffer as a PNG data URL."""
    return DATA_URL_PREFIX + encode_png_base64(rgba)


def mask_to_data_url(mask: Mask, threshold: float = 0.5) -> str:
    """
    Mask as a PNG data URL: white = inpaint, black = keep.
    """
    full = mask.full()
    value = np.where(full > threshold, 255, 0).astype(np.uint8)
    rgba = np.empty(full.shape + (4,), dtype=np.uint8)
    rgba[:, :, 0] = value
    rgba[:, :, 1] = value
    rgba[:, :, 2] = value
    rgba[:, :, 3] = 255
    return to_data_url(rgba)


def split_data_url(url: str) -> Tuple[str, bytes]:
    """
    Split a base64 data URL into (media type, payload bytes).

    Raises:
        ValueError: the URL is not a base64 data URL
    """
    if not url.startswith("data:") or "," not in url:
        raise ValueError("Not a data URL")
    header, payload = url[5:].split(",", 1)
    if not header.endswith(";base64"):
        raise ValueError("Only base64 data URLs are supported")
    try:
        return header[: -len(";base64")], base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e


def resize_rgba(rgba: np.ndarray, width: int, height: int) -> np.ndarray:
    """Resize an RGBA buffer to (width, height); no-op when the size matches."""
    if rgba.shape[1] == width and rgba.shape[0] == height:
        return rgba
    img = Image.fromarray(np.ascontiguousarray(rgba)).resize((width, height), Image.Resampling.BILINEAR)
    return np.array(img, dtype=np.uint8)
