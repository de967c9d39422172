# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Event stream returned by ``Pipeline.submit``.

The stream is lazy: its worker thread starts on the first ``next()``. Events
cross from the worker to the consumer through a queue, so the consumer sees
them in generation order. The stream ends after its terminal event and
cannot be restarted.
"""

import logging
import queue
import threading
import uuid
from typing import TYPE_CHECKING, Any, Callable

from tokenpipe.exceptions import BackendFatalError, FatalBackendError, ToolResultError
from tokenpipe.pipeline.types import Failed, GenerationRequest, SessionState, StreamEvent

if TYPE_CHECKING:
    from tokenpipe.pipeline.session import GenerationSession

logger = logging.getLogger(__name__)


class EventStream:
    """Finite, cancellable iterator over the events of one generation."""

    def __init__(
        self,
        request: GenerationRequest,
        runner: Callable[["EventStream"], None],
        session_id: str | None = None,
        on_start: Callable[["EventStream"], None] | None = None,
        on_finish: Callable[["EventStream"], None] | None = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.request = request
        self.session: "GenerationSession | None" = None

        self._runner = runner
        self._on_start = on_start
        self._on_finish = on_finish
        self._queue: queue.Queue[StreamEvent] = queue.Queue()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._produced_terminal = threading.Event()
        self._consumed_terminal = False

    # --- Producer side ---

    def emit(self, event: StreamEvent) -> None:
        """Queues an event. Anything after the terminal event is dropped."""
        if self._produced_terminal.is_set():
            logger.debug("Stream %s: dropping %s after terminal event", self.session_id, event.kind)
            return
        self._queue.put(event)
        if event.terminal:
            self._produced_terminal.set()

    def _work(self) -> None:
        try:
            self._runner(self)
        except Exception as e:
            logger.exception("Stream %s: worker failed", self.session_id)
            self.emit(Failed(BackendFatalError(FatalBackendError("Unexpected error", f"{type(e).__name__}: {e}"))))
        finally:
            if self._on_finish is not None:
                self._on_finish(self)

    def _start(self) -> None:
        with self._lock:
            if self._thread is not None or self._consumed_terminal:
                return
            if self._on_start is not None:
                self._on_start(self)
            self._thread = threading.Thread(
                target=self._work, name=f"tokenpipe-session-{self.session_id[:8]}", daemon=True
            )
            self._thread.start()

    # --- Consumer side ---

    @property
    def started(self) -> bool:
        return self._thread is not None

    @property
    def finished(self) -> bool:
        return self._consumed_terminal

    @property
    def state(self) -> SessionState:
        if self.session is not None:
            return self.session.state
        return SessionState.INITIALIZING

    def __iter__(self) -> "EventStream":
        return self

    def __next__(self) -> StreamEvent:
        if self._consumed_terminal:
            raise StopIteration
        self._start()
        event = self._queue.get()
        if event.terminal:
            self._consumed_terminal = True
        return event

    def submit_tool_result(self, call_id: str, result: Any = None, error: str | None = None) -> None:
        """
        Resumes a session paused on a tool call.

        Raises:
            ToolResultError: Unknown call id, or the session is not paused.
        """
        if self.session is None:
            raise ToolResultError(
                f"Session {self.session_id} is not waiting for a tool result",
                "Generation has not started yet.",
            )
        self.session.submit_tool_result(call_id, result=result, error=error)

    def cancel(self, reason: str | None = None) -> None:
        """Requests cancellation; observed by the session at its next step boundary."""
        self.request.cancel.cancel(reason)

    def close(self, timeout: float | None = None) -> None:
        """Cancels and waits until the session has released its resources."""
        self.cancel()
        with self._lock:
            never_started = self._thread is None
            if never_started:
                # Nothing was allocated; keep a later next() from starting the worker
                self._consumed_terminal = True
        if never_started:
            if self._on_finish is not None:
                self._on_finish(self)
            return
        self._thread.join(timeout)

    def __enter__(self) -> "EventStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"EventStream(session_id={self.session_id!r}, state={self.state.value})"
