# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Custom exception hierarchy for tokenpipe.

Every error carries a short message, optional details and a machine-checkable
``kind`` so transports can tell failures apart without parsing strings:

- LoadError: unsupported, resource_exhausted, not_found
- BackendRuntimeError: transient, fatal
- SessionError: tokenization, tool_protocol_violation, cancelled, timeout, fatal
"""


class TokenpipeError(Exception):
    """Base exception for all tokenpipe errors."""

    kind = "error"

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n{self.details}"
        return self.message


# --- Load errors ---


class LoadError(TokenpipeError):
    """A model could not be loaded. Never retried automatically."""

    kind = "load"


class UnsupportedModelError(LoadError):
    """The model format, architecture or quantization is not supported by the backend."""

    kind = "unsupported"

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Unsupported model: {model_id}", reason)
        self.model_id = model_id


class ResourceExhaustedError(LoadError):
    """Not enough memory for the model."""

    kind = "resource_exhausted"

    def __init__(self, required_bytes: int, available_bytes: int):
        required_gb = required_bytes / (1024**3)
        available_gb = available_bytes / (1024**3)
        super().__init__(
            "Insufficient memory",
            f"The model requires ~{required_gb:.1f}GB but only {available_gb:.1f}GB are available. "
            "Try a smaller model or a more aggressive quantization (4bit, Q4_K_M).",
        )
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes


class ModelNotFoundError(LoadError):
    """The requested model is not in the local registry nor a local path."""

    kind = "not_found"

    def __init__(self, model_id: str):
        super().__init__(
            f"Model not found: {model_id}",
            "Use 'tokenpipe list' to see registered models or 'tokenpipe register' to add one.",
        )
        self.model_id = model_id


class MissingDependencyError(UnsupportedModelError):
    """An optional backend dependency is not installed."""

    def __init__(self, backend_name: str, install_cmd: str):
        TokenpipeError.__init__(
            self,
            f"Missing dependency for the {backend_name} backend",
            f"Install it with:\n  {install_cmd}",
        )
        self.model_id = ""
        self.backend_name = backend_name
        self.install_cmd = install_cmd


# --- Backend runtime errors ---


class BackendRuntimeError(TokenpipeError):
    """A backend step failed."""

    kind = "runtime"


class TransientBackendError(BackendRuntimeError):
    """The step may succeed if retried. Session state is unchanged."""

    kind = "transient"


class FatalBackendError(BackendRuntimeError):
    """The session cannot continue."""

    kind = "fatal"


# --- Session errors ---


class SessionError(TokenpipeError):
    """Error attached to a session's terminal state."""

    kind = "session"


class TokenizationError(SessionError):
    """The prompt could not be tokenized."""

    kind = "tokenization"


class ToolProtocolViolation(SessionError):
    """A tool-call payload passed marker detection but failed validation.

    Never fatal: the interceptor releases the offending text as ordinary output.
    """

    kind = "tool_protocol_violation"


class SessionCancelledError(SessionError):
    """The caller cancelled the session."""

    kind = "cancelled"

    def __init__(self, message: str = "Cancelled by caller"):
        super().__init__(message)


class SessionTimeoutError(SessionError):
    """The caller did not supply a tool result in time."""

    kind = "timeout"

    def __init__(self, call_id: str, timeout: float):
        super().__init__(
            f"Timed out waiting for tool result {call_id}",
            f"No result was supplied within {timeout:g}s.",
        )
        self.call_id = call_id
        self.timeout = timeout


class BackendFatalError(SessionError):
    """A backend error ended the session (fatal, or transient twice in a row)."""

    kind = "fatal"

    def __init__(self, cause: BackendRuntimeError):
        super().__init__(f"Backend failure: {cause.message}", cause.details)
        self.cause = cause


class ToolResultError(TokenpipeError):
    """A tool result was supplied for an unknown call or a session that is not paused."""

    kind = "tool_result"


# --- Configuration errors ---


class ConfigurationError(TokenpipeError):
    """Configuration error."""

    kind = "configuration"


class InvalidConfigError(ConfigurationError):
    """Invalid configuration value."""

    def __init__(self, key: str, value: str, valid_values: list[str] | None = None):
        details = f"Invalid value for '{key}': {value}"
        if valid_values:
            details += f"\nValid values: {', '.join(valid_values)}"
        super().__init__("Configuration error", details)
        self.key = key
        self.value = value
