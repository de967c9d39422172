# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Requests, stream events and records exchanged with the pipeline."""

import json
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from tokenpipe.backends.base import BackendOptions
from tokenpipe.exceptions import SessionCancelledError, TokenpipeError


@dataclass(frozen=True)
class SamplingParams:
    temperature: float = 0.7  # 0 = greedy
    top_p: float = 1.0
    top_k: int = 0  # 0 = disabled
    max_tokens: int = 2048
    stop: tuple[str, ...] = ()
    seed: int | None = None
    logprobs: bool = False

    def __post_init__(self):
        if self.temperature < 0:
            raise ValueError("temperature must be >= 0")
        if not 0 < self.top_p <= 1:
            raise ValueError("top_p must be in (0, 1]")
        if self.top_k < 0:
            raise ValueError("top_k must be >= 0")
        if self.max_tokens < 0:
            raise ValueError("max_tokens must be >= 0")
        # Lists are accepted for convenience; the request stays hashable
        object.__setattr__(self, "stop", tuple(s for s in self.stop if s))


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)  # JSON schema object

    @property
    def required(self) -> tuple[str, ...]:
        return tuple(self.parameters.get("required", ()))

    @classmethod
    def from_openai(cls, spec: dict[str, Any]) -> "ToolDefinition":
        """Accepts ``{"type": "function", "function": {...}}`` or the bare function object."""
        fn = spec.get("function", spec) if spec.get("type", "function") == "function" else None
        if not isinstance(fn, dict) or not fn.get("name"):
            raise ValueError(f"Not a function tool definition: {spec!r}")
        return cls(
            name=fn["name"],
            description=fn.get("description", ""),
            parameters=fn.get("parameters") or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class CancellationToken:
    """Cooperative cancellation signal shared by a caller and a session."""

    def __init__(self):
        self._event = threading.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()
        self.reason: str = "Cancelled by caller"

    def cancel(self, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            if reason:
                self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Runs ``callback`` on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SessionCancelledError(self.reason)


def default_tool_result_template(record: "ToolCallRecord") -> str:
    """Renders a resolved tool call as the text prefilled before generation resumes."""
    if record.error is not None:
        body = json.dumps({"error": record.error}, ensure_ascii=False)
    elif isinstance(record.result, str):
        body = record.result
    else:
        body = json.dumps(record.result, ensure_ascii=False)
    return f"<tool_response>\n{body}\n</tool_response>\n"


@dataclass(frozen=True)
class GenerationRequest:
    """A rendered prompt plus everything needed to run it. Immutable once submitted."""

    prompt: str
    model_id: str = ""
    sampling: SamplingParams = field(default_factory=SamplingParams)
    tools: tuple[ToolDefinition, ...] = ()
    cancel: CancellationToken = field(default_factory=CancellationToken, compare=False)
    options: BackendOptions = field(default_factory=BackendOptions)
    tool_timeout: float | None = None  # seconds, None = config default
    render_tool_result: Callable[["ToolCallRecord"], str] = field(
        default=default_tool_result_template, compare=False
    )

    def __post_init__(self):
        object.__setattr__(self, "tools", tuple(self.tools))


class SessionState(Enum):
    INITIALIZING = "initializing"
    GENERATING = "generating"
    TOOL_PAUSED = "tool_paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED)


class FinishReason(Enum):
    STOP = "stop"  # end-of-sequence token
    LENGTH = "length"
    STOP_SEQUENCE = "stop_sequence"


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


# --- Stream events ---


@dataclass(frozen=True)
class Token:
    text: str
    logprob: float | None = None

    kind = "token"
    terminal = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "text": self.text, "logprob": self.logprob}


@dataclass(frozen=True)
class ToolCallRequested:
    call_id: str
    name: str
    arguments: dict[str, Any]

    kind = "tool_call"
    terminal = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "call_id": self.call_id,
            "name": self.name,
            "arguments": self.arguments,
        }


@dataclass(frozen=True)
class Completed:
    finish_reason: FinishReason
    usage: Usage = field(default_factory=Usage)

    kind = "completed"
    terminal = True

    @property
    def reason(self) -> str:
        return self.finish_reason.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "reason": self.reason,
            "usage": {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
            },
        }


@dataclass(frozen=True)
class Failed:
    error: TokenpipeError

    terminal = True

    @property
    def kind(self) -> str:
        return self.error.kind

    @property
    def reason(self) -> str:
        return str(self.error)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "failed", "kind": self.kind, "reason": self.reason}


@dataclass(frozen=True)
class Cancelled:
    reason: str = "Cancelled by caller"

    kind = "cancelled"
    terminal = True

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "reason": self.reason}


StreamEvent = Token | ToolCallRequested | Completed | Failed | Cancelled


class ToolCallStatus(Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


@dataclass
class ToolCallRecord:
    call_id: str
    name: str
    arguments: dict[str, Any]
    result: Any = None
    error: str | None = None
    state: ToolCallStatus = ToolCallStatus.PENDING

    def resolve(self, result: Any = None, error: str | None = None) -> None:
        self.result = result
        self.error = error
        self.state = ToolCallStatus.RESOLVED


@dataclass
class GenerationResult:
    """A drained stream."""

    text: str
    finish_reason: str  # completed reason, "cancelled" or "failed"
    usage: Usage = field(default_factory=Usage)
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    error: TokenpipeError | None = None
    logprobs: list[float] = field(default_factory=list)
