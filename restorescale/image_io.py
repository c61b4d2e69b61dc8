"""
Image decoding/encoding helpers for callers of the pipeline
"""

import io
from pathlib import Path
from typing import Union

import numpy as np
from PIL import Image

from restorescale.datatypes import PixelBuffer
from restorescale.logger import setup_logger

logger = setup_logger(__name__)


def pixel_buffer_from_pil(image: Image.Image) -> PixelBuffer:
    """Convert any Pillow image to an RGBA PixelBuffer."""
    rgba = image.convert("RGBA")
    return PixelBuffer.from_array(np.asarray(rgba, dtype=np.uint8))


def pixel_buffer_from_bytes(image_bytes: bytes) -> PixelBuffer:
    """
    Decode encoded image bytes (PNG, JPEG, WebP, ...)

    Args:
        image_bytes: Encoded image data

    Returns:
        Decoded RGBA PixelBuffer

    Raises:
        ValueError: If the bytes cannot be decoded
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            return pixel_buffer_from_pil(image)
    except Exception as exc:
        logger.error(f"Error decoding image bytes: {exc}")
        raise ValueError(f"Unable to decode image: {exc}") from exc


def load_pixel_buffer(image_path: Union[str, Path]) -> PixelBuffer:
    """Load an image file into an RGBA PixelBuffer."""
    with Image.open(image_path) as image:
        buffer = pixel_buffer_from_pil(image)
    logger.info(f"Loaded image: {image_path} ({buffer.width}x{buffer.height})")
    return buffer


def pixel_buffer_from_array(array: np.ndarray) -> PixelBuffer:
    """
    Wrap an RGB(A) or grayscale uint8 array

    Grayscale is replicated into RGB and a missing alpha channel is set
    fully opaque.
    """
    data = np.asarray(array)
    if data.dtype != np.uint8:
        data = np.clip(data, 0, 255).astype(np.uint8)
    if data.ndim == 2:
        data = np.stack([data, data, data], axis=-1)
    if data.ndim != 3 or data.shape[2] not in (3, 4):
        raise ValueError(f"Unsupported image array shape {data.shape}")
    if data.shape[2] == 3:
        alpha = np.full(data.shape[:2] + (1,), 255, dtype=np.uint8)
        data = np.concatenate([data, alpha], axis=-1)
    return PixelBuffer.from_array(data)


def to_pil(buffer: PixelBuffer) -> Image.Image:
    return Image.fromarray(np.ascontiguousarray(buffer.as_array()))


def encode_png(buffer: PixelBuffer) -> bytes:
    payload = io.BytesIO()
    to_pil(buffer).save(payload, format="PNG")
    return payload.getvalue()


def save_pixel_buffer(buffer: PixelBuffer, path: Union[str, Path]) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    to_pil(buffer).save(target)
    logger.info(f"Saved {buffer.width}x{buffer.height} image to {target}")
    return target


__all__ = [
    "pixel_buffer_from_pil",
    "pixel_buffer_from_bytes",
    "load_pixel_buffer",
    "pixel_buffer_from_array",
    "to_pil",
    "encode_png",
    "save_pixel_buffer",
]
