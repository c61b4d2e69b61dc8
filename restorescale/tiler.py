"""Tiling and stitching primitives.

Inference on a whole high-resolution frame can exhaust memory, so the
super-resolution stage walks the image in fixed-size tiles. Tiles are
produced in row-major order (top row left to right, then the next row);
tiles on the right and bottom edges are clipped rather than padded.
"""

from __future__ import annotations

import math
from typing import Iterator, Optional, Tuple

import numpy as np

from restorescale.datatypes import CHANNELS, PixelBuffer, Tile
from restorescale.logger import setup_logger

logger = setup_logger(__name__)

Rect = Tuple[int, int, int, int]


def tile_count(width: int, height: int, tile_size: int) -> int:
    if tile_size <= 0:
        raise ValueError("tile_size must be positive")
    return math.ceil(width / tile_size) * math.ceil(height / tile_size)


def tile_grid(width: int, height: int, tile_size: int) -> Iterator[Rect]:
    """Yield ``(x, y, w, h)`` rectangles covering the image exactly once."""
    if tile_size <= 0:
        raise ValueError("tile_size must be positive")

    for row in range(math.ceil(height / tile_size)):
        y = row * tile_size
        tile_height = min(tile_size, height - y)
        for col in range(math.ceil(width / tile_size)):
            x = col * tile_size
            tile_width = min(tile_size, width - x)
            yield x, y, tile_width, tile_height


def split(buffer: PixelBuffer, tile_size: int) -> Iterator[Tile]:
    """Extract every tile of ``buffer`` in row-major order.

    Each call starts a fresh iteration, so the sequence can be replayed.
    """
    for x, y, width, height in tile_grid(buffer.width, buffer.height, tile_size):
        yield Tile(x, y, width, height, extract(buffer, x, y, width, height))


def extract(source: PixelBuffer, x: int, y: int, width: int, height: int) -> PixelBuffer:
    """Copy a sub-rectangle of ``source`` row by row into a new buffer."""
    _check_bounds(source, x, y, width, height)

    src = source.as_array()
    out = np.empty((height, width, CHANNELS), dtype=np.uint8)
    for row in range(height):
        out[row] = src[y + row, x : x + width]
    return PixelBuffer(width, height, out.reshape(-1))


def paste(dest: PixelBuffer, tile: PixelBuffer, x: int, y: int) -> None:
    """Write ``tile`` into ``dest`` with its top-left corner at ``(x, y)``."""
    _check_bounds(dest, x, y, tile.width, tile.height)

    dst = dest.as_array()
    src = tile.as_array()
    for row in range(tile.height):
        dst[y + row, x : x + tile.width] = src[row]


def _check_bounds(buffer: PixelBuffer, x: int, y: int, width: int, height: int) -> None:
    if width <= 0 or height <= 0:
        raise ValueError(f"Empty rectangle {width}x{height}")
    if x < 0 or y < 0 or x + width > buffer.width or y + height > buffer.height:
        raise ValueError(
            f"Rectangle ({x}, {y}, {width}, {height}) exceeds "
            f"{buffer.width}x{buffer.height} buffer"
        )


class TileAssembler:
    """Stitch streamed tiles back into one output buffer.

    Feed it the events of a run (``InitializeEvent`` first, then
    ``TileEvent``s); :attr:`result` holds the stitched image.
    """

    def __init__(self) -> None:
        self._canvas: Optional[PixelBuffer] = None
        self.tiles_received = 0

    def initialize(self, width: int, height: int) -> None:
        self._canvas = PixelBuffer.blank(width, height)
        self.tiles_received = 0
        logger.debug("Assembler canvas allocated at %dx%d", width, height)

    def add_tile(self, tile: PixelBuffer, x: int, y: int) -> None:
        if self._canvas is None:
            raise ValueError("TileAssembler received a tile before initialize()")
        paste(self._canvas, tile, x, y)
        self.tiles_received += 1

    @property
    def result(self) -> Optional[PixelBuffer]:
        return self._canvas


__all__ = ["tile_count", "tile_grid", "split", "extract", "paste", "TileAssembler"]
