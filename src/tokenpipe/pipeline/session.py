# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Generation session: the per-request token loop.

    INITIALIZING -> GENERATING -> {TOOL_PAUSED <-> GENERATING}
                 -> {COMPLETED | CANCELLED | FAILED}

A session owns its scratch state (KV cache or equivalent) and borrows the
model handle. It runs on the stream's worker thread and hands every event
to an ``emit`` callback in generation order. After each step the stop
conditions are checked in this order: cancellation, completed tool call,
max tokens, stop sequence.
"""

import logging
import threading
import time
import uuid
from typing import Any, Callable, Sequence

import numpy as np

from tokenpipe.backends.base import Tokenizer
from tokenpipe.exceptions import (
    BackendFatalError,
    BackendRuntimeError,
    FatalBackendError,
    LoadError,
    SessionCancelledError,
    SessionTimeoutError,
    TokenizationError,
    TokenpipeError,
    ToolResultError,
    TransientBackendError,
)
from tokenpipe.models.handle import ModelHandle
from tokenpipe.pipeline.interceptor import ParsedToolCall, ToolCallInterceptor
from tokenpipe.pipeline.sampling import Sampler
from tokenpipe.pipeline.types import (
    Cancelled,
    Completed,
    Failed,
    FinishReason,
    GenerationRequest,
    SessionState,
    StreamEvent,
    Token,
    ToolCallRecord,
    ToolCallRequested,
    ToolCallStatus,
    Usage,
)

logger = logging.getLogger(__name__)


class IncrementalDecoder:
    """Turns generated token ids into text deltas.

    Tokenizers merge bytes across tokens (multi-byte characters, leading
    spaces), so each delta is the difference between decoding a short window
    with and without the newest tokens. Text ending in U+FFFD is an incomplete
    character and is held back until the next token completes it.
    """

    def __init__(self, tokenizer: Tokenizer):
        self._tokenizer = tokenizer
        self._ids: list[int] = []
        self._prefix_offset = 0
        self._read_offset = 0

    def push(self, token: int) -> str:
        self._ids.append(token)
        prefix_text = self._tokenizer.decode(self._ids[self._prefix_offset : self._read_offset])
        new_text = self._tokenizer.decode(self._ids[self._prefix_offset :])
        if len(new_text) > len(prefix_text) and not new_text.endswith("\ufffd"):
            self._prefix_offset = self._read_offset
            self._read_offset = len(self._ids)
            return new_text[len(prefix_text) :]
        return ""

    def flush(self) -> str:
        if self._read_offset == len(self._ids):
            return ""
        prefix_text = self._tokenizer.decode(self._ids[self._prefix_offset : self._read_offset])
        new_text = self._tokenizer.decode(self._ids[self._prefix_offset :])
        self._prefix_offset = self._read_offset = len(self._ids)
        return new_text[len(prefix_text) :]


class StopSequenceFilter:
    """Cuts the output at the first stop sequence.

    A tail that could be the beginning of a stop sequence is held back until
    it either completes the sequence or diverges from it.
    """

    def __init__(self, stop: Sequence[str]):
        self.stop = [s for s in stop if s]
        self._buffer = ""
        self.matched: str | None = None

    def feed(self, text: str) -> tuple[str, bool]:
        if not self.stop:
            return text, False
        if self.matched is not None:
            return "", True

        self._buffer += text
        earliest = None
        for seq in self.stop:
            idx = self._buffer.find(seq)
            if idx != -1 and (earliest is None or idx < earliest[0]):
                earliest = (idx, seq)
        if earliest is not None:
            idx, self.matched = earliest
            released, self._buffer = self._buffer[:idx], ""
            return released, True

        keep = max(_prefix_overlap(self._buffer, seq) for seq in self.stop)
        cut = len(self._buffer) - keep
        released, self._buffer = self._buffer[:cut], self._buffer[cut:]
        return released, False

    def drain(self, text: str = "") -> str:
        """Releases everything held back plus ``text`` without matching."""
        released, self._buffer = self._buffer + text, ""
        return released


def _prefix_overlap(text: str, seq: str) -> int:
    for size in range(min(len(text), len(seq) - 1), 0, -1):
        if text.endswith(seq[:size]):
            return size
    return 0


_TERMINAL_STATES = {
    Completed: SessionState.COMPLETED,
    Cancelled: SessionState.CANCELLED,
    Failed: SessionState.FAILED,
}


class GenerationSession:
    """Runs one GenerationRequest against a loaded model."""

    def __init__(
        self,
        handle: ModelHandle,
        request: GenerationRequest,
        emit: Callable[[StreamEvent], None],
        session_id: str | None = None,
        tool_timeout: float | None = None,
        tool_buffer_limit: int = 8192,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.handle = handle
        self.request = request
        self.state = SessionState.INITIALIZING
        self.tool_calls: list[ToolCallRecord] = []
        self.prompt_tokens = 0
        self.completion_tokens = 0

        self._emit = emit
        self._tool_timeout = request.tool_timeout if request.tool_timeout is not None else tool_timeout
        self._scratch: Any = None
        self._acquired = False
        self._pending: ToolCallRecord | None = None
        self._cond = threading.Condition()

        self._sampler = Sampler(request.sampling)
        self._decoder = IncrementalDecoder(handle.tokenizer)
        self._interceptor = ToolCallInterceptor(request.tools, buffer_limit=tool_buffer_limit)
        self._stop_filter = StopSequenceFilter(request.sampling.stop)

        request.cancel.add_callback(self._wake)

    @property
    def usage(self) -> Usage:
        return Usage(prompt_tokens=self.prompt_tokens, completion_tokens=self.completion_tokens)

    # --- Caller API ---

    def submit_tool_result(self, call_id: str, result: Any = None, error: str | None = None) -> None:
        """
        Resumes a paused session.

        Raises:
            ToolResultError: The session is not paused or waits for another call.
        """
        with self._cond:
            pending = self._pending
            if self.state != SessionState.TOOL_PAUSED or pending is None:
                raise ToolResultError(
                    f"Session {self.session_id} is not waiting for a tool result",
                    f"Current state: {self.state.value}",
                )
            if pending.call_id != call_id:
                raise ToolResultError(
                    f"Unknown tool call id: {call_id}",
                    f"Session {self.session_id} is waiting for {pending.call_id}",
                )
            pending.resolve(result=result, error=error)
            self._pending = None
            self._cond.notify_all()

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    # --- Worker ---

    def run(self) -> None:
        """Runs the session to a terminal state. Emits exactly one terminal event."""
        logger.debug("Session %s started on %r", self.session_id, self.handle)
        try:
            event = self._generate()
        except SessionCancelledError as e:
            event = Cancelled(e.message)
        except TokenpipeError as e:
            event = Failed(e)
        except Exception as e:
            logger.exception("Session %s crashed", self.session_id)
            event = Failed(BackendFatalError(FatalBackendError("Unexpected error", f"{type(e).__name__}: {e}")))
        self._terminate(event)

    def _generate(self) -> StreamEvent:
        request = self.request
        sampling = request.sampling
        cancel = request.cancel

        cancel.raise_if_cancelled()
        try:
            self.handle.acquire()
        except RuntimeError as e:
            raise LoadError(f"Model {self.handle.model_id} is no longer loaded", str(e)) from e
        self._acquired = True

        prompt_ids = self._tokenize(request.prompt, add_special=True)
        self.prompt_tokens = len(prompt_ids)
        if sampling.max_tokens == 0:
            return Completed(FinishReason.LENGTH, self.usage)

        backend = self.handle.backend
        self._scratch = backend.new_state(self.handle)
        logits = self._advance(backend.prefill, prompt_ids)
        self.state = SessionState.GENERATING
        eos = self.handle.tokenizer.eos_token_ids

        while True:
            cancel.raise_if_cancelled()
            if self.completion_tokens >= sampling.max_tokens:
                self._emit_text(self._drain()[0], None)
                return Completed(FinishReason.LENGTH, self.usage)

            token, logprob = self._sampler.sample(logits)
            if token in eos:
                text, hit = self._drain()
                self._emit_text(text, None)
                return Completed(FinishReason.STOP_SEQUENCE if hit else FinishReason.STOP, self.usage)

            logits = self._advance(backend.step, token)
            self.completion_tokens += 1

            intercepted = self._interceptor.feed(self._decoder.push(token))
            call = intercepted.call
            if call is not None:
                # A tool call on the same step as a stop sequence wins
                text, stop_hit = self._stop_filter.drain(intercepted.text), False
            else:
                text, stop_hit = self._stop_filter.feed(intercepted.text)

            finish = None
            if call is None and not cancel.cancelled:
                if self.completion_tokens >= sampling.max_tokens:
                    if not stop_hit:
                        text += self._drain()[0]
                    finish = FinishReason.LENGTH
                elif stop_hit:
                    finish = FinishReason.STOP_SEQUENCE

            self._emit_text(text, logprob)

            cancel.raise_if_cancelled()
            if call is not None:
                logits = self._call_tool(call, logits)
                continue
            if finish is not None:
                return Completed(finish, self.usage)

    def _tokenize(self, text: str, add_special: bool) -> list[int]:
        try:
            ids = self.handle.tokenizer.encode(text, add_special=add_special)
        except Exception as e:
            raise TokenizationError("Could not tokenize input", f"{type(e).__name__}: {e}") from e
        if not ids and add_special:
            raise TokenizationError("Prompt produced no tokens")
        return list(ids)

    def _advance(self, method: Callable, arg: Any) -> np.ndarray:
        """Runs one backend call; a transient failure is retried once with the same input."""
        try:
            out = method(self.handle, self._scratch, arg)
        except TransientBackendError as e:
            logger.warning("Session %s: transient backend error, retrying once: %s", self.session_id, e.message)
            try:
                out = method(self.handle, self._scratch, arg)
            except BackendRuntimeError as again:
                raise BackendFatalError(again) from again
        except FatalBackendError as e:
            raise BackendFatalError(e) from e
        self._scratch = out.state
        return out.logits

    def _drain(self) -> tuple[str, bool]:
        """Flushes decoder, interceptor and stop filter at the end of generation."""
        text = self._interceptor.feed(self._decoder.flush()).text + self._interceptor.finish()
        released, hit = self._stop_filter.feed(text)
        if not hit:
            released += self._stop_filter.drain()
        return released, hit

    def _emit_text(self, text: str, logprob: float | None) -> None:
        if text:
            self._emit(Token(text=text, logprob=logprob))

    def _call_tool(self, call: ParsedToolCall, logits: np.ndarray) -> np.ndarray:
        """Pauses until the caller resolves the call, then prefills the rendered result.

        Returns the logits to sample from next.

        Raises:
            SessionCancelledError: Cancelled while paused.
            SessionTimeoutError: No result arrived within the tool timeout.
        """
        record = ToolCallRecord(
            call_id=f"call_{uuid.uuid4().hex[:24]}", name=call.name, arguments=call.arguments
        )
        with self._cond:
            self.tool_calls.append(record)
            self._pending = record
            self.state = SessionState.TOOL_PAUSED
        logger.debug("Session %s paused for tool %s (%s)", self.session_id, call.name, record.call_id)
        self._emit(ToolCallRequested(call_id=record.call_id, name=record.name, arguments=record.arguments))

        cancel = self.request.cancel
        timeout = self._tool_timeout
        deadline = time.monotonic() + timeout if timeout else None
        with self._cond:
            while record.state == ToolCallStatus.PENDING and not cancel.cancelled:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    self._pending = None
                    raise SessionTimeoutError(record.call_id, timeout)
                self._cond.wait(remaining)
            self._pending = None
            cancel.raise_if_cancelled()
            self.state = SessionState.GENERATING

        rendered = self.request.render_tool_result(record)
        ids = self._tokenize(rendered, add_special=False)
        if not ids:
            return logits
        self.prompt_tokens += len(ids)
        return self._advance(self.handle.backend.prefill, ids)

    def _terminate(self, event: StreamEvent) -> None:
        """Releases scratch state and the handle reference, then emits the terminal event."""
        try:
            if self._scratch is not None:
                self.handle.backend.release_state(self._scratch)
        except Exception:
            logger.exception("Session %s: failed to release scratch state", self.session_id)
        finally:
            self._scratch = None
            if self._acquired:
                self._acquired = False
                self.handle.release()

        with self._cond:
            self._pending = None
            self.state = _TERMINAL_STATES[type(event)]
        logger.debug("Session %s finished: %s (%s)", self.session_id, event.kind, event.reason)
        self._emit(event)
