"""Execution context: the dedicated thread that runs inference.

The orchestrator never touches sessions or model bytes once they have been
posted here. Messages are processed one at a time, in arrival order, and
every event for a request is published on that request's ``EventStream``.
"""

from __future__ import annotations

import queue
import threading
import time
from typing import Dict, Optional

from restorescale import resampler, tensor_codec, tiler
from restorescale.config import get_config
from restorescale.datatypes import ModelRole, PixelBuffer, normalize_backend
from restorescale.exceptions import InferenceError
from restorescale.logger import setup_logger
from restorescale.messages import (
    CompleteEvent,
    ErrorEvent,
    EventStream,
    InitializeEvent,
    IntermediateResultEvent,
    StatusEvent,
    TileEvent,
    WorkerMessage,
)
from restorescale.session_manager import Session, SessionFactory, SessionManager

logger = setup_logger(__name__)
config = get_config()

_STOP = object()


class _Terminated(Exception):
    """Raised inside the run loop when terminate() interrupts a request."""


class ExecutionContext:
    """Independently scheduled worker owning model blobs and sessions."""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        tile_size: Optional[int] = None,
        scale: Optional[int] = None,
        face_size: Optional[int] = None,
    ) -> None:
        self.tile_size = int(tile_size or config.UPSCALE_TILE_SIZE)
        self.scale = int(scale or config.UPSCALE_FACTOR)
        self.face_size = int(face_size or config.FACE_RESTORE_SIZE)
        self.sessions = SessionManager(session_factory)

        self._inbox: "queue.Queue[object]" = queue.Queue()
        self._stop = threading.Event()
        self._blobs: Dict[str, bytes] = {}
        self._roles: Dict[str, str] = {}
        self._active_backend: Optional[str] = None
        self._current_reply: Optional[EventStream] = None
        self._thread = threading.Thread(
            target=self._run_loop, name="restorescale-execution-context", daemon=True
        )
        self._thread.start()

    # ------------------------------------------------------------------
    # Orchestrator-facing API
    # ------------------------------------------------------------------
    def post(self, message: WorkerMessage) -> None:
        if self._stop.is_set():
            raise RuntimeError("Execution context has been terminated")
        self._inbox.put(message)

    def terminate(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the worker; the in-flight request ends without a terminal event."""
        if self._stop.is_set():
            return
        self._stop.set()

        reply = self._current_reply
        if reply is not None:
            reply.close()
        self._drain_inbox()
        self._inbox.put(_STOP)

        if timeout is not None and threading.current_thread() is not self._thread:
            self._thread.join(timeout)
        logger.info("Execution context terminated")

    @property
    def alive(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    @property
    def active_backend(self) -> Optional[str]:
        return self._active_backend

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------
    def _run_loop(self) -> None:
        while True:
            message = self._inbox.get()
            if message is _STOP or self._stop.is_set():
                break
            self._handle(message)  # type: ignore[arg-type]

    def _drain_inbox(self) -> None:
        while True:
            try:
                pending = self._inbox.get_nowait()
            except queue.Empty:
                return
            if isinstance(pending, WorkerMessage):
                pending.reply.close()

    def _handle(self, message: WorkerMessage) -> None:
        request = message.request
        reply = message.reply
        self._current_reply = reply
        try:
            if message.model_blobs:
                self._adopt_blobs(message.model_blobs, message.model_roles)

            backend = normalize_backend(request.backend)
            if backend != self._active_backend:
                if self._active_backend is not None:
                    logger.info(
                        "Backend changed from %s to %s, invalidating sessions",
                        self._active_backend,
                        backend,
                    )
                self.sessions.invalidate()
                self._active_backend = backend

            image = request.image
            total_ms = 0.0

            if request.use_face_restore:
                image, elapsed = self._restore_faces(image, backend, reply)
                total_ms += elapsed

            if request.use_super_res:
                total_ms += self._upscale_tiles(image, backend, reply)

            reply.publish(CompleteEvent(total_ms))
        except _Terminated:
            logger.info("Request aborted by terminate()")
            reply.close()
        except Exception as exc:
            if self._stop.is_set():
                reply.close()
                return
            label = (self._active_backend or "processing").upper()
            detail = f"Error in {label} backend: {exc}"
            logger.error("%s", detail, exc_info=not isinstance(exc, InferenceError))
            reply.publish(ErrorEvent(detail))
            self._reset_after_error()
        finally:
            self._current_reply = None

    def _adopt_blobs(self, blobs: Dict[str, bytes], roles: Dict[str, str]) -> None:
        for key, blob in blobs.items():
            if self._blobs.get(key) is not blob:
                self.sessions.invalidate(key)
            self._blobs[key] = blob
        self._roles.update(roles)
        logger.info("Execution context received %d model blob(s)", len(blobs))

    def _reset_after_error(self) -> None:
        self.sessions.invalidate()
        self._active_backend = None

    def _session_for(self, role: ModelRole, backend: str, reply: EventStream) -> Session:
        key = next((k for k, r in self._roles.items() if r == role.value), None)
        if key is None or key not in self._blobs:
            raise InferenceError(
                f"No {role.value.replace('_', ' ')} model was provided to the execution context"
            )

        existing = self.sessions.get(key)
        if existing is not None and existing.backend == backend:
            return existing

        reply.publish(StatusEvent(f"Initializing {key} with {backend.upper()}..."))
        session = self.sessions.ensure(key, self._blobs[key], backend)
        reply.publish(StatusEvent(f"{key} initialized."))
        return session

    def _check_stop(self) -> None:
        if self._stop.is_set():
            raise _Terminated()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _restore_faces(self, image: PixelBuffer, backend: str, reply: EventStream):
        session = self._session_for(ModelRole.FACE_RESTORATION, backend, reply)
        self._check_stop()
        reply.publish(StatusEvent("Running face restoration..."))
        started = time.perf_counter()

        original_width, original_height = image.width, image.height
        working = resampler.resize(image, self.face_size, self.face_size)
        output = session.run(tensor_codec.to_tensor(working))
        try:
            restored = tensor_codec.from_tensor(output, self.face_size, self.face_size)
        except ValueError as exc:
            raise InferenceError(
                f"Face restoration produced an unexpected output shape: {exc}"
            ) from exc
        result = resampler.resize(restored, original_width, original_height)

        reply.publish(IntermediateResultEvent(result.copy()))

        elapsed = (time.perf_counter() - started) * 1000.0
        reply.publish(StatusEvent(f"Face restoration finished in {elapsed:.0f}ms."))
        return result, elapsed

    def _upscale_tiles(self, image: PixelBuffer, backend: str, reply: EventStream) -> float:
        session = self._session_for(ModelRole.SUPER_RESOLUTION, backend, reply)
        scale = self.scale

        reply.publish(InitializeEvent(image.width * scale, image.height * scale))

        total_tiles = tiler.tile_count(image.width, image.height, self.tile_size)
        elapsed_ms = 0.0
        for index, tile in enumerate(tiler.split(image, self.tile_size), start=1):
            self._check_stop()
            tensor = tensor_codec.to_tensor(tile.buffer)

            started = time.perf_counter()
            output = session.run(tensor)
            elapsed_ms += (time.perf_counter() - started) * 1000.0

            try:
                upscaled = tensor_codec.from_tensor(
                    output, tile.width * scale, tile.height * scale
                )
            except ValueError as exc:
                raise InferenceError(
                    f"Tile {index} produced an unexpected output shape: {exc}"
                ) from exc

            reply.publish(StatusEvent(f"Upscaling tile {index} of {total_tiles}..."))
            reply.publish(TileEvent(upscaled, tile.x * scale, tile.y * scale))

        return elapsed_ms


__all__ = ["ExecutionContext"]
