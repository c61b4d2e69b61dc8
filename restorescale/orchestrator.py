"""Caller-side coordinator of the restoration/upscaling pipeline.

The :class:`Upscaler` makes sure model weights are present (model cache hit,
or network download followed by a cache write), hands them to its
:class:`ExecutionContext` exactly once, and forwards one request at a time.
Everything it learns back from the worker arrives as pipeline events.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from restorescale.config import get_config
from restorescale.datatypes import (
    DEFAULT_MODELS,
    SUPPORTED_BACKENDS,
    ModelDescriptor,
    ModelRole,
    PixelBuffer,
    normalize_backend,
)
from restorescale.exceptions import NetworkFetchError
from restorescale.logger import setup_logger
from restorescale.messages import (
    CompleteEvent,
    ErrorEvent,
    EventListener,
    EventStream,
    PipelineCallbacks,
    PipelineEvent,
    PipelineRequest,
    StatusEvent,
    WorkerMessage,
)
from restorescale.model_cache import ModelCache
from restorescale.model_fetcher import ModelFetcher
from restorescale.session_manager import SessionFactory
from restorescale.worker import ExecutionContext

logger = setup_logger(__name__)
config = get_config()


class PipelineState(str, Enum):
    IDLE = "idle"
    LOADING_MODELS = "loading_models"
    READY = "ready"
    RUNNING = "running"
    FAILED = "failed"


class Upscaler:
    """Orchestrates model loading and upscale requests for one worker.

    Typical use::

        upscaler = Upscaler()
        upscaler.initialize()
        for event in upscaler.upscale(image, "cpu", use_face_restore=True):
            ...
        upscaler.terminate()
    """

    def __init__(
        self,
        cache: Optional[ModelCache] = None,
        fetcher: Optional[ModelFetcher] = None,
        callbacks: Optional[PipelineCallbacks] = None,
        on_event: Optional[EventListener] = None,
        session_factory: Optional[SessionFactory] = None,
        context: Optional[ExecutionContext] = None,
    ) -> None:
        self.cache = cache if cache is not None else ModelCache()
        self.fetcher = fetcher if fetcher is not None else ModelFetcher()
        self.callbacks = callbacks or PipelineCallbacks()
        self._on_event = on_event
        self._context = context or ExecutionContext(session_factory=session_factory)

        self._lock = threading.RLock()
        self._state = PipelineState.IDLE
        self._model_buffers: Dict[str, bytes] = {}
        self._model_roles: Dict[str, str] = {}
        self._models_ready = False
        self._models_sent = False
        self._terminated = False
        self._active_stream: Optional[EventStream] = None
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Model loading
    # ------------------------------------------------------------------
    def initialize(self, descriptors: Sequence[ModelDescriptor] = DEFAULT_MODELS) -> bool:
        """Load every descriptor's weights; False (plus an Error event) on failure."""
        with self._lock:
            guard = self._loading_guard()
            if guard is not None:
                self._emit(ErrorEvent(guard))
                return False
            self._transition(PipelineState.LOADING_MODELS)

        self._emit(StatusEvent("Checking model cache..."))
        buffers: Dict[str, bytes] = {}
        roles: Dict[str, str] = {}
        try:
            for descriptor in descriptors:
                buffers[descriptor.key] = self._load_model(descriptor)
                roles[descriptor.key] = ModelRole(descriptor.role).value
        except Exception as exc:
            detail = str(exc) or type(exc).__name__
            with self._lock:
                self._model_buffers = {}
                self._model_roles = {}
                self._models_ready = False
                self._models_sent = False
                self.last_error = detail
                self._transition(PipelineState.FAILED)
                self._transition(PipelineState.IDLE)
            logger.error(
                "Model loading aborted: %s",
                detail,
                exc_info=not isinstance(exc, NetworkFetchError),
            )
            self._emit(ErrorEvent(detail))
            return False

        with self._lock:
            self._model_buffers = buffers
            self._model_roles = roles
            self._models_ready = True
            self._models_sent = False
            self.last_error = None
            self._transition(PipelineState.READY)

        self._emit(StatusEvent("All models loaded. Ready to upscale."))
        return True

    def start_loading(
        self, descriptors: Sequence[ModelDescriptor] = DEFAULT_MODELS
    ) -> threading.Thread:
        """Run :meth:`initialize` on a background thread."""
        thread = threading.Thread(
            target=self.initialize,
            args=(tuple(descriptors),),
            name="restorescale-model-loader",
            daemon=True,
        )
        thread.start()
        return thread

    def _loading_guard(self) -> Optional[str]:
        if self._terminated:
            return "Upscaler has been terminated."
        if self._state == PipelineState.RUNNING:
            return "Cannot reload models while an upscale request is running."
        if self._state == PipelineState.LOADING_MODELS:
            return "Models are already being loaded."
        return None

    def _load_model(self, descriptor: ModelDescriptor) -> bytes:
        cached = self.cache.get(descriptor.key)
        if cached:
            self._emit(StatusEvent(f"{descriptor.display_name} model loaded from cache."))
            return cached

        self._emit(StatusEvent(f"Downloading {descriptor.display_name}..."))
        blob = self.fetcher.fetch(descriptor)
        self.cache.put(descriptor.key, blob)
        self._emit(StatusEvent(f"{descriptor.display_name} downloaded and cached."))
        return blob

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def upscale(
        self,
        image: PixelBuffer,
        backend: Optional[str] = None,
        use_face_restore: bool = False,
        use_super_res: bool = True,
    ) -> EventStream:
        """Send ``image`` to the execution context and return its event stream.

        ``image`` is moved: after this call the caller's buffer is detached.
        Misuse (models missing, a request already running, a detached image)
        yields a stream holding a single ``ErrorEvent``.
        """
        backend = normalize_backend(backend or config.DEFAULT_BACKEND)

        with self._lock:
            guard = self._request_guard(image, use_face_restore, use_super_res)
            if guard is not None:
                logger.warning("Rejected upscale request: %s", guard)
                return EventStream.failed(guard, listener=self._emit)

            stream = EventStream(listener=self._on_request_event)
            message = WorkerMessage(
                request=PipelineRequest(
                    image=image.detach(),
                    backend=backend,
                    use_face_restore=bool(use_face_restore),
                    use_super_res=bool(use_super_res),
                ),
                reply=stream,
            )
            if not self._models_sent:
                message.model_blobs = self._model_buffers
                message.model_roles = dict(self._model_roles)
                self._model_buffers = {}
                self._models_sent = True

            self._active_stream = stream
            self._transition(PipelineState.RUNNING)
            self._context.post(message)

        logger.info(
            "Posted %dx%d image (backend=%s, face_restore=%s, super_res=%s)",
            message.request.image.width,
            message.request.image.height,
            backend,
            use_face_restore,
            use_super_res,
        )
        return stream

    def _request_guard(
        self, image: PixelBuffer, use_face_restore: bool, use_super_res: bool
    ) -> Optional[str]:
        if self._terminated or not self._context.alive:
            return "Upscaler has been terminated."
        if not self._models_ready or self._state == PipelineState.LOADING_MODELS:
            return "Models not loaded yet. Please wait until initialization is complete."
        if self._state == PipelineState.RUNNING:
            return "An upscale request is already running; wait for it to finish."
        if image is None or image.detached:
            return "Image buffer has already been transferred and cannot be reused."

        required: List[ModelRole] = []
        if use_face_restore:
            required.append(ModelRole.FACE_RESTORATION)
        if use_super_res:
            required.append(ModelRole.SUPER_RESOLUTION)
        loaded = set(self._model_roles.values())
        for role in required:
            if role.value not in loaded:
                return f"No {role.value.replace('_', ' ')} model was loaded."
        return None

    def _on_request_event(self, event: PipelineEvent) -> None:
        if event.terminal:
            with self._lock:
                if isinstance(event, ErrorEvent):
                    self.last_error = event.detail
                    self._transition(PipelineState.FAILED)
                self._active_stream = None
                self._transition(PipelineState.IDLE)
            if isinstance(event, CompleteEvent):
                logger.info("Upscale finished, inference time %.0fms", event.elapsed_ms)
        self._emit(event)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    def terminate(self) -> None:
        """Stop the execution context; any in-flight request is abandoned."""
        with self._lock:
            if self._terminated:
                return
            self._terminated = True
            self._model_buffers = {}
            self._active_stream = None
        self._context.terminate()
        with self._lock:
            self._transition(PipelineState.IDLE)

    def __enter__(self) -> "Upscaler":
        return self

    def __exit__(self, *_exc) -> None:
        self.terminate()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def models_ready(self) -> bool:
        return self._models_ready

    @property
    def models_sent(self) -> bool:
        return self._models_sent

    @property
    def busy(self) -> bool:
        return self._state == PipelineState.RUNNING

    @property
    def context(self) -> ExecutionContext:
        return self._context

    @staticmethod
    def supported_backends() -> Iterable[str]:
        return SUPPORTED_BACKENDS

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _transition(self, new_state: PipelineState) -> None:
        if new_state != self._state:
            logger.debug("Pipeline state %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    def _emit(self, event: PipelineEvent) -> None:
        try:
            self.callbacks.dispatch(event)
        except Exception as exc:
            logger.error("Pipeline callback raised on %s: %s", type(event).__name__, exc)
        if self._on_event is not None:
            try:
                self._on_event(event)
            except Exception as exc:
                logger.error("Event listener raised on %s: %s", type(event).__name__, exc)


_UPSCALER: Optional[Upscaler] = None
_UPSCALER_LOCK = threading.Lock()


def get_upscaler() -> Upscaler:
    """Return a process-wide Upscaler instance."""

    global _UPSCALER
    if _UPSCALER is None:
        with _UPSCALER_LOCK:
            if _UPSCALER is None:
                _UPSCALER = Upscaler()
    return _UPSCALER


__all__ = ["PipelineState", "Upscaler", "get_upscaler"]
