# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Pipeline orchestrator.

Turns a GenerationRequest into an EventStream: on the stream's worker
thread it loads (or reuses) the model handle, creates a GenerationSession
and runs it. Live streams are tracked by session id so a transport can route
tool results and cancellations to them.
"""

import logging
import threading
from typing import Any, Callable

from tokenpipe.backends.base import DevicePreference
from tokenpipe.config import config
from tokenpipe.exceptions import ConfigurationError, LoadError, ModelNotFoundError
from tokenpipe.models.cache import ModelCache, get_model_cache
from tokenpipe.pipeline.session import GenerationSession
from tokenpipe.pipeline.stream import EventStream
from tokenpipe.pipeline.types import (
    Cancelled,
    Completed,
    Failed,
    GenerationRequest,
    GenerationResult,
    Token,
    ToolCallRecord,
    ToolCallRequested,
)

logger = logging.getLogger(__name__)

ToolCallback = Callable[[ToolCallRequested], Any]


class Pipeline:
    """Entry point for generation requests."""

    def __init__(self, cache: ModelCache | None = None, default_model: str | None = None):
        self.cache = cache or get_model_cache()
        self.default_model = default_model
        self._streams: dict[str, EventStream] = {}
        self._lock = threading.Lock()

    def submit(self, request: GenerationRequest) -> EventStream:
        """
        Returns the request's event stream. Nothing runs until it is iterated.

        The stream is tracked from its first iteration until it finishes, so a
        stream that is dropped without being iterated leaves nothing behind.
        """
        return EventStream(request, self._run, on_start=self._track, on_finish=self._forget)

    def get_stream(self, session_id: str) -> EventStream | None:
        with self._lock:
            return self._streams.get(session_id)

    def active_streams(self) -> list[EventStream]:
        with self._lock:
            return list(self._streams.values())

    def _track(self, stream: EventStream) -> None:
        with self._lock:
            self._streams[stream.session_id] = stream

    def _forget(self, stream: EventStream) -> None:
        with self._lock:
            self._streams.pop(stream.session_id, None)

    def _run(self, stream: EventStream) -> None:
        request = stream.request
        if request.cancel.cancelled:
            stream.emit(Cancelled(request.cancel.reason))
            return

        model_id = request.model_id or self.default_model
        if not model_id:
            stream.emit(Failed(ModelNotFoundError("(no model given)")))
            return

        options = request.options
        try:
            handle = self.cache.get_or_load(
                model_id,
                quantization=options.quantization,
                memory_limit=options.memory_limit,
                # AUTO defers to the configured device
                device_preference=(
                    None if options.device_preference == DevicePreference.AUTO else options.device_preference
                ),
            )
        except (LoadError, ConfigurationError) as e:
            logger.warning("Could not load %s: %s", model_id, e.message)
            stream.emit(Failed(e))
            return

        session = GenerationSession(
            handle,
            request,
            emit=stream.emit,
            session_id=stream.session_id,
            tool_timeout=config.tool_timeout,
            tool_buffer_limit=config.tool_buffer_limit,
        )
        stream.session = session
        session.run()

    def generate(
        self,
        request: GenerationRequest,
        tool_callback: ToolCallback | None = None,
    ) -> GenerationResult:
        """
        Runs a request to completion and aggregates its events.

        Args:
            request: The generation request
            tool_callback: Called with each ToolCallRequested; its return value
                is submitted as the tool result and an exception as the error.
                Without a callback every tool call is answered with an error.
        """
        text: list[str] = []
        logprobs: list[float] = []
        records: list[ToolCallRecord] = []
        result = GenerationResult(text="", finish_reason="failed")

        with self.submit(request) as stream:
            for event in stream:
                if isinstance(event, Token):
                    text.append(event.text)
                    if event.logprob is not None:
                        logprobs.append(event.logprob)
                elif isinstance(event, ToolCallRequested):
                    record = ToolCallRecord(event.call_id, event.name, event.arguments)
                    records.append(record)
                    if tool_callback is None:
                        record.resolve(error=f"No handler for tool {event.name}")
                    else:
                        try:
                            record.resolve(result=tool_callback(event))
                        except Exception as e:
                            logger.warning("Tool %s raised: %s", event.name, e)
                            record.resolve(error=f"{type(e).__name__}: {e}")
                    stream.submit_tool_result(record.call_id, result=record.result, error=record.error)
                elif isinstance(event, Completed):
                    result.finish_reason = event.reason
                    result.usage = event.usage
                elif isinstance(event, Cancelled):
                    result.finish_reason = "cancelled"
                elif isinstance(event, Failed):
                    result.finish_reason = "failed"
                    result.error = event.error

        result.text = "".join(text)
        result.tool_calls = records
        result.logprobs = logprobs
        return result
