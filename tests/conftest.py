"""Shared fixtures and fakes for the pipeline tests."""

import os

os.environ.setdefault("ENVIRONMENT", "testing")

import threading
from typing import Dict, List, Optional

import numpy as np
import pytest

from restorescale.datatypes import ModelDescriptor, ModelRole, PixelBuffer
from restorescale.exceptions import NetworkFetchError
from restorescale.model_cache import ModelCache


class _Node:
    def __init__(self, name: str):
        self.name = name


class FakeEngine:
    """Stands in for an onnxruntime session.

    ``scale`` > 1 repeats pixels (super-resolution); ``scale == 1`` passes
    the tensor through (face restoration).
    """

    def __init__(self, scale: int = 1, fail_on_call: Optional[int] = None, gate=None):
        self.scale = scale
        self.fail_on_call = fail_on_call
        self.gate = gate
        self.calls = 0

    def get_inputs(self):
        return [_Node("input")]

    def get_outputs(self):
        return [_Node("output")]

    def run(self, output_names, feeds):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail_on_call is not None and self.calls >= self.fail_on_call:
            raise RuntimeError("engine exploded")
        tensor = feeds["input"]
        if self.scale > 1:
            tensor = np.repeat(np.repeat(tensor, self.scale, axis=2), self.scale, axis=3)
        return [tensor]


class FakeSessionFactory:
    """Builds FakeEngines and records every compilation."""

    def __init__(self, blob_scales: Optional[Dict[bytes, int]] = None):
        self.blob_scales = blob_scales or {b"esrgan-weights": 4, b"gfpgan-weights": 1}
        self.compiled: List[tuple] = []
        self.fail_backends = set()
        self.engine_kwargs: Dict[bytes, dict] = {}
        self.engines: List[FakeEngine] = []

    def __call__(self, blob: bytes, backend: str):
        if backend in self.fail_backends:
            raise RuntimeError(f"{backend} provider unavailable")
        self.compiled.append((bytes(blob), backend))
        engine = FakeEngine(
            scale=self.blob_scales.get(bytes(blob), 1),
            **self.engine_kwargs.get(bytes(blob), {}),
        )
        self.engines.append(engine)
        return engine


class FakeFetcher:
    """Serves model bytes from memory, optionally failing for some keys."""

    def __init__(self, payloads: Optional[Dict[str, bytes]] = None, failing=()):
        self.payloads = payloads or {
            "esrgan-v1": b"esrgan-weights",
            "gfpgan-v1.4": b"gfpgan-weights",
        }
        self.failing = set(failing)
        self.calls: List[str] = []

    def fetch(self, descriptor, progress=None):
        self.calls.append(descriptor.key)
        if descriptor.key in self.failing:
            raise NetworkFetchError(
                f"Failed to fetch {descriptor.display_name}: 503 Service Unavailable",
                url=descriptor.source_url,
                status_code=503,
            )
        return self.payloads[descriptor.key]


class CountingCache(ModelCache):
    def __init__(self, cache_dir):
        super().__init__(cache_dir)
        self.puts: List[str] = []

    def put(self, key, blob):
        self.puts.append(key)
        super().put(key, blob)


TEST_MODELS = (
    ModelDescriptor(
        key="esrgan-v1",
        source_url="https://models.invalid/esrgan.onnx",
        display_name="Real-ESRGAN",
        role=ModelRole.SUPER_RESOLUTION,
    ),
    ModelDescriptor(
        key="gfpgan-v1.4",
        source_url="https://models.invalid/gfpgan.onnx",
        display_name="GFPGAN",
        role=ModelRole.FACE_RESTORATION,
    ),
)


def make_image(width: int, height: int, seed: int = 0) -> PixelBuffer:
    rng = np.random.default_rng(seed)
    data = rng.integers(0, 256, size=width * height * 4, dtype=np.uint8)
    return PixelBuffer(width, height, data)


@pytest.fixture()
def session_factory():
    return FakeSessionFactory()


@pytest.fixture()
def fetcher():
    return FakeFetcher()


@pytest.fixture()
def cache(tmp_path):
    return CountingCache(tmp_path / "model-cache")


@pytest.fixture()
def gate():
    event = threading.Event()
    yield event
    event.set()
