"""Bilinear resizing of pixel buffers between pipeline stages."""

from __future__ import annotations

import numpy as np
from PIL import Image

from restorescale.datatypes import PixelBuffer
from restorescale.logger import setup_logger

logger = setup_logger(__name__)


def resize(buffer: PixelBuffer, target_width: int, target_height: int) -> PixelBuffer:
    """Resize to exactly ``target_width`` x ``target_height``.

    Aspect ratio is not preserved; the caller dictates the geometry.
    """
    if target_width <= 0 or target_height <= 0:
        raise ValueError(
            f"Resize target must be positive, got {target_width}x{target_height}"
        )

    if (buffer.width, buffer.height) == (target_width, target_height):
        return buffer.copy()

    image = buffer.as_array()
    resized = _resize_array(image, target_width, target_height)
    return PixelBuffer.from_array(resized)


def _resize_array(image: np.ndarray, width: int, height: int) -> np.ndarray:
    try:
        import cv2  # type: ignore

        return cv2.resize(image, (width, height), interpolation=cv2.INTER_LINEAR)
    except Exception as exc:
        logger.debug("OpenCV resize unavailable, using Pillow: %s", exc)
        pil_image = Image.fromarray(np.ascontiguousarray(image))
        resized = pil_image.resize((width, height), Image.Resampling.BILINEAR)
        return np.array(resized)


__all__ = ["resize"]
