"""Inference session lifecycle for the execution context.

A session is compiled from raw model bytes for one backend. Sessions are
cached per model key and replaced when the backend changes; compilation
failures are isolated to the model being compiled.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import numpy as np

from restorescale.config import get_config
from restorescale.datatypes import BACKEND_PROVIDERS, normalize_backend
from restorescale.exceptions import BackendInitError, InferenceError
from restorescale.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()

SessionFactory = Callable[[bytes, str], Any]


def create_onnx_session(blob: bytes, backend: str) -> Any:
    """Compile an ``onnxruntime.InferenceSession`` for ``backend``."""
    import onnxruntime as ort  # type: ignore

    providers = BACKEND_PROVIDERS.get(backend)
    if providers is None:
        raise BackendInitError(f"Unknown backend '{backend}'")

    available = set(ort.get_available_providers())
    missing = [name for name in providers if name not in available]
    if missing:
        raise BackendInitError(
            f"Backend '{backend}' requires {', '.join(missing)}, "
            f"available providers: {', '.join(sorted(available))}"
        )

    sess_options = ort.SessionOptions()
    sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    if config.ORT_INTRA_OP_THREADS > 0:
        sess_options.intra_op_num_threads = config.ORT_INTRA_OP_THREADS

    return ort.InferenceSession(
        blob, sess_options=sess_options, providers=list(providers)
    )


@dataclass
class Session:
    """A compiled engine bound to one ``(model_key, backend)`` pair."""

    model_key: str
    backend: str
    engine: Any

    def run(self, tensor: np.ndarray) -> np.ndarray:
        try:
            input_name = self.engine.get_inputs()[0].name
            output_name = self.engine.get_outputs()[0].name
            outputs = self.engine.run([output_name], {input_name: tensor})
        except Exception as exc:
            raise InferenceError(f"{self.model_key} inference failed: {exc}") from exc

        if not outputs or outputs[0] is None:
            raise InferenceError(
                f"{self.model_key} execution failed to return an output tensor."
            )
        return np.asarray(outputs[0])


class SessionManager:
    """Owns at most one live session per model key."""

    def __init__(self, session_factory: Optional[SessionFactory] = None) -> None:
        self._factory = session_factory or create_onnx_session
        self._sessions: Dict[str, Session] = {}
        self.compile_count = 0

    def ensure(self, model_key: str, blob: bytes, backend: str) -> Session:
        """Return the live session for ``(model_key, backend)``, compiling if needed."""
        backend = normalize_backend(backend)
        current = self._sessions.get(model_key)
        if current is not None and current.backend == backend:
            return current

        if current is not None:
            logger.info(
                "Replacing %s session compiled for %s with %s",
                model_key,
                current.backend,
                backend,
            )
            del self._sessions[model_key]

        if not blob:
            raise BackendInitError(f"No model bytes available for '{model_key}'")

        try:
            engine = self._factory(blob, backend)
        except BackendInitError:
            raise
        except Exception as exc:
            raise BackendInitError(
                f"Failed to initialize {model_key} on {backend}: {exc}"
            ) from exc

        self.compile_count += 1
        session = Session(model_key=model_key, backend=backend, engine=engine)
        self._sessions[model_key] = session
        logger.info("Compiled %s session for backend %s", model_key, backend)
        return session

    def invalidate(self, model_key: Optional[str] = None) -> None:
        """Drop one session, or every session when ``model_key`` is None."""
        if model_key is None:
            if self._sessions:
                logger.debug("Invalidating %d session(s)", len(self._sessions))
            self._sessions.clear()
        else:
            self._sessions.pop(model_key, None)

    def get(self, model_key: str) -> Optional[Session]:
        return self._sessions.get(model_key)

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = ["Session", "SessionManager", "SessionFactory", "create_onnx_session"]
