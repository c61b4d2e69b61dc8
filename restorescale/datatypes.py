"""Core data model shared by the orchestrator and the execution context."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple

import numpy as np

from restorescale.config import get_config
from restorescale.exceptions import ProtocolMisuseError

config = get_config()

CHANNELS = 4

# onnxruntime execution providers per backend identifier. "cpu" is the
# portable fallback; every other backend is accelerator specific.
BACKEND_PROVIDERS: Dict[str, Tuple[str, ...]] = {
    "cpu": ("CPUExecutionProvider",),
    "cuda": ("CUDAExecutionProvider",),
    "tensorrt": ("TensorrtExecutionProvider",),
    "directml": ("DmlExecutionProvider",),
    "coreml": ("CoreMLExecutionProvider",),
    "openvino": ("OpenVINOExecutionProvider",),
}
SUPPORTED_BACKENDS = tuple(BACKEND_PROVIDERS)


def _as_samples(data) -> np.ndarray:
    """Flatten ``data`` into a writable uint8 array without wrapping values."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return np.frombuffer(data, dtype=np.uint8).copy()

    array = np.asarray(data)
    if array.dtype == np.uint8:
        return array.reshape(-1)
    if array.size and (
        not np.issubdtype(array.dtype, np.number)
        or array.min() < 0
        or array.max() > 255
    ):
        raise ValueError("PixelBuffer samples must be numbers in the range 0..255")
    return array.astype(np.uint8).reshape(-1)


@dataclass(eq=False)
class PixelBuffer:
    """Interleaved RGBA, 8 bits per sample, row-major.

    ``data`` is a flat ``uint8`` array of ``width * height * 4`` samples.
    Raw bytes are accepted as-is; other arrays must hold values in 0..255.
    Sending a buffer to the execution context moves it: see :meth:`detach`.
    """

    width: int
    height: int
    data: np.ndarray
    detached: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(
                f"PixelBuffer dimensions must be positive, got {self.width}x{self.height}"
            )
        data = _as_samples(self.data)
        expected = self.width * self.height * CHANNELS
        if data.size != expected:
            raise ValueError(
                f"PixelBuffer data has {data.size} samples, expected {expected} "
                f"for {self.width}x{self.height}"
            )
        self.data = data

    @classmethod
    def blank(cls, width: int, height: int) -> "PixelBuffer":
        return cls(width, height, np.zeros(width * height * CHANNELS, dtype=np.uint8))

    @classmethod
    def from_array(cls, array: np.ndarray) -> "PixelBuffer":
        """Wrap an ``(H, W, 4)`` uint8 array (copied into a flat buffer)."""
        if array.ndim != 3 or array.shape[2] != CHANNELS:
            raise ValueError(f"Expected an (H, W, 4) array, got shape {array.shape}")
        height, width = array.shape[:2]
        return cls(width, height, np.array(array).reshape(-1))

    def as_array(self) -> np.ndarray:
        """Return an ``(H, W, 4)`` view over the samples."""
        self._check_attached()
        return self.data.reshape(self.height, self.width, CHANNELS)

    def copy(self) -> "PixelBuffer":
        self._check_attached()
        return PixelBuffer(self.width, self.height, self.data.copy())

    def detach(self) -> "PixelBuffer":
        """Move the samples into a new buffer and neuter this one.

        After a detach the original must not be read again; doing so raises
        :class:`ProtocolMisuseError`.
        """
        self._check_attached()
        moved = PixelBuffer(self.width, self.height, self.data)
        self.data = np.empty(0, dtype=np.uint8)
        self.detached = True
        return moved

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def _check_attached(self) -> None:
        if self.detached:
            raise ProtocolMisuseError(
                "PixelBuffer was transferred to the execution context and can no longer be read"
            )


@dataclass
class Tile:
    """A sub-rectangle of a source image, edge tiles clipped not padded."""

    x: int
    y: int
    width: int
    height: int
    buffer: PixelBuffer


class ModelRole(str, Enum):
    FACE_RESTORATION = "face_restoration"
    SUPER_RESOLUTION = "super_resolution"


@dataclass(frozen=True)
class ModelDescriptor:
    key: str
    source_url: str
    display_name: str
    role: ModelRole


ESRGAN_MODEL = ModelDescriptor(
    key="esrgan-v1",
    source_url=config.ESRGAN_MODEL_URL,
    display_name="Real-ESRGAN (~25 MB)",
    role=ModelRole.SUPER_RESOLUTION,
)

GFPGAN_MODEL = ModelDescriptor(
    key="gfpgan-v1.4",
    source_url=config.GFPGAN_MODEL_URL,
    display_name="GFPGAN (~330 MB)",
    role=ModelRole.FACE_RESTORATION,
)

DEFAULT_MODELS: Tuple[ModelDescriptor, ...] = (ESRGAN_MODEL, GFPGAN_MODEL)


def normalize_backend(backend: str) -> str:
    return (backend or "").strip().lower()


__all__ = [
    "BACKEND_PROVIDERS",
    "SUPPORTED_BACKENDS",
    "PixelBuffer",
    "Tile",
    "ModelRole",
    "ModelDescriptor",
    "ESRGAN_MODEL",
    "GFPGAN_MODEL",
    "DEFAULT_MODELS",
    "normalize_backend",
]
