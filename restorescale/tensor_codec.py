"""Conversions between RGBA pixel buffers and planar float tensors.

The inference sessions consume ``float32`` tensors shaped ``(1, 3, H, W)``
with values in ``[0, 1]``; everything else in the pipeline works on
interleaved 8-bit RGBA.
"""

from __future__ import annotations

import numpy as np

from restorescale.datatypes import CHANNELS, PixelBuffer


def to_tensor(buffer: PixelBuffer) -> np.ndarray:
    """Drop alpha, split RGB into contiguous planes and normalize to [0, 1]."""
    rgb = buffer.as_array()[:, :, :3]
    planar = np.transpose(rgb, (2, 0, 1)).astype(np.float32) / 255.0
    return np.ascontiguousarray(planar[np.newaxis, ...])


def from_tensor(tensor: np.ndarray, width: int, height: int) -> PixelBuffer:
    """Inverse of :func:`to_tensor`; alpha is set fully opaque."""
    values = np.asarray(tensor, dtype=np.float32).reshape(-1)
    expected = 3 * width * height
    if values.size != expected:
        raise ValueError(
            f"Tensor has {values.size} values, expected {expected} for {width}x{height}"
        )

    planes = np.nan_to_num(values.reshape(3, height, width), nan=0.0)
    scaled = np.clip(np.rint(planes * 255.0), 0, 255).astype(np.uint8)

    pixels = np.empty((height, width, CHANNELS), dtype=np.uint8)
    pixels[:, :, :3] = np.transpose(scaled, (1, 2, 0))
    pixels[:, :, 3] = 255
    return PixelBuffer(width, height, pixels.reshape(-1))


__all__ = ["to_tensor", "from_tensor"]
