"""Message protocol between the orchestrator and the execution context.

Requests travel to the worker as :class:`WorkerMessage`; results travel back
as :class:`PipelineEvent` instances on a per-request :class:`EventStream`.
Within one request the order is ``Status*``, an optional
``IntermediateResult``, an optional ``Initialize`` before any ``Tile``,
``Tile*`` and exactly one terminal ``Complete`` or ``Error``.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

from restorescale.config import get_config
from restorescale.datatypes import PixelBuffer
from restorescale.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()


@dataclass
class PipelineEvent:
    """Base class of every event delivered to the caller."""

    terminal = False


@dataclass
class StatusEvent(PipelineEvent):
    message: str


@dataclass
class InitializeEvent(PipelineEvent):
    width: int
    height: int


@dataclass
class TileEvent(PipelineEvent):
    tile: PixelBuffer
    x: int
    y: int


@dataclass
class IntermediateResultEvent(PipelineEvent):
    image: PixelBuffer


@dataclass
class CompleteEvent(PipelineEvent):
    elapsed_ms: float
    terminal = True


@dataclass
class ErrorEvent(PipelineEvent):
    detail: str
    terminal = True


@dataclass
class PipelineRequest:
    image: PixelBuffer
    backend: str
    use_face_restore: bool = False
    use_super_res: bool = True


@dataclass
class WorkerMessage:
    """One unit of work posted to the execution context.

    ``model_blobs`` is only populated on the first request after a model
    load; ownership of the bytes passes to the worker.
    """

    request: PipelineRequest
    reply: "EventStream"
    model_blobs: Optional[Dict[str, bytes]] = None
    model_roles: Dict[str, str] = field(default_factory=dict)


EventListener = Callable[[PipelineEvent], None]

_CLOSED = object()


class EventStream:
    """Ordered, thread-safe channel of events for a single request.

    The worker thread publishes with :meth:`publish`; the caller iterates.
    Iteration ends after the terminal event, or when the stream is closed
    because the execution context was terminated.
    """

    def __init__(self, listener: Optional[EventListener] = None) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._listener = listener
        self._done = threading.Event()
        self._terminal: Optional[PipelineEvent] = None
        self._history: List[PipelineEvent] = []
        self.rejected = False
        self._lock = threading.Lock()

    # -- producer side --------------------------------------------------
    def publish(self, event: PipelineEvent) -> None:
        with self._lock:
            if self._done.is_set():
                logger.warning(
                    "Dropping %s published after stream end", type(event).__name__
                )
                return
            self._history.append(event)
            if event.terminal:
                self._terminal = event
        # The listener runs before the consumer can observe the event, so
        # orchestrator state is settled by the time a terminal event is read.
        if self._listener is not None:
            try:
                self._listener(event)
            except Exception as exc:
                logger.error("Event listener raised on %s: %s", type(event).__name__, exc)
        if event.terminal:
            self._done.set()
        self._queue.put(event)

    def close(self) -> None:
        """End the stream without a terminal event."""
        with self._lock:
            if self._done.is_set():
                return
            self._done.set()
        self._queue.put(_CLOSED)

    @classmethod
    def failed(
        cls, detail: str, listener: Optional[EventListener] = None
    ) -> "EventStream":
        """A stream that already holds a single ``ErrorEvent``."""
        stream = cls(listener)
        stream.rejected = True
        stream.publish(ErrorEvent(detail))
        return stream

    # -- consumer side --------------------------------------------------
    def __iter__(self) -> Iterator[PipelineEvent]:
        return self.iter_events()

    def iter_events(self, timeout: Optional[float] = None) -> Iterator[PipelineEvent]:
        wait = config.EVENT_STREAM_TIMEOUT if timeout is None else timeout
        while True:
            try:
                item = self._queue.get(timeout=wait)
            except queue.Empty:
                raise TimeoutError(f"No pipeline event within {wait:.1f}s")
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]
            if item.terminal:  # type: ignore[attr-defined]
                return

    def collect(self, timeout: Optional[float] = None) -> List[PipelineEvent]:
        return list(self.iter_events(timeout))

    def wait(self, timeout: Optional[float] = None) -> Optional[PipelineEvent]:
        """Block until the stream ends; return its terminal event, if any."""
        wait = config.EVENT_STREAM_TIMEOUT if timeout is None else timeout
        if not self._done.wait(wait):
            raise TimeoutError(f"Pipeline did not finish within {wait:.1f}s")
        return self._terminal

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def terminal_event(self) -> Optional[PipelineEvent]:
        return self._terminal

    @property
    def history(self) -> List[PipelineEvent]:
        with self._lock:
            return list(self._history)


@dataclass
class PipelineCallbacks:
    """Optional per-event hooks, invoked on the thread that emits the event."""

    on_status: Optional[Callable[[str], None]] = None
    on_initialize: Optional[Callable[[int, int], None]] = None
    on_tile: Optional[Callable[[PixelBuffer, int, int], None]] = None
    on_intermediate_result: Optional[Callable[[PixelBuffer], None]] = None
    on_complete: Optional[Callable[[float], None]] = None
    on_error: Optional[Callable[[str], None]] = None

    def dispatch(self, event: PipelineEvent) -> None:
        if isinstance(event, StatusEvent):
            if self.on_status:
                self.on_status(event.message)
        elif isinstance(event, InitializeEvent):
            if self.on_initialize:
                self.on_initialize(event.width, event.height)
        elif isinstance(event, TileEvent):
            if self.on_tile:
                self.on_tile(event.tile, event.x, event.y)
        elif isinstance(event, IntermediateResultEvent):
            if self.on_intermediate_result:
                self.on_intermediate_result(event.image)
        elif isinstance(event, CompleteEvent):
            if self.on_complete:
                self.on_complete(event.elapsed_ms)
        elif isinstance(event, ErrorEvent):
            if self.on_error:
                self.on_error(event.detail)
        else:
            logger.warning("Unknown pipeline event: %r", event)


__all__ = [
    "PipelineEvent",
    "StatusEvent",
    "InitializeEvent",
    "TileEvent",
    "IntermediateResultEvent",
    "CompleteEvent",
    "ErrorEvent",
    "PipelineRequest",
    "WorkerMessage",
    "EventStream",
    "EventListener",
    "PipelineCallbacks",
]
