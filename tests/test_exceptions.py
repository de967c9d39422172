# SPDX-License-Identifier: HRUL-1.0
"""Tests for the exception hierarchy."""

import pytest


class TestTokenpipeError:
    """Tests for the base exception."""

    def test_basic_message(self):
        from tokenpipe.exceptions import TokenpipeError

        error = TokenpipeError("Something failed")

        assert str(error) == "Something failed"
        assert error.details is None
        assert error.kind == "error"

    def test_message_with_details(self):
        from tokenpipe.exceptions import TokenpipeError

        error = TokenpipeError("Something failed", "More context")

        assert str(error) == "Something failed\nMore context"


class TestLoadErrors:
    """Errors raised while loading a model."""

    def test_unsupported(self):
        from tokenpipe.exceptions import LoadError, UnsupportedModelError

        error = UnsupportedModelError("my-model", "mamba is not supported")

        assert isinstance(error, LoadError)
        assert error.kind == "unsupported"
        assert "my-model" in str(error)
        assert "mamba" in str(error)

    def test_resource_exhausted(self):
        from tokenpipe.exceptions import ResourceExhaustedError

        error = ResourceExhaustedError(16 * 1024**3, 8 * 1024**3)

        assert error.kind == "resource_exhausted"
        assert "16.0GB" in str(error)
        assert "8.0GB" in str(error)

    def test_not_found(self):
        from tokenpipe.exceptions import ModelNotFoundError

        error = ModelNotFoundError("ghost")

        assert error.kind == "not_found"
        assert error.model_id == "ghost"
        assert "tokenpipe list" in str(error)

    def test_missing_dependency_is_unsupported(self):
        """A missing backend library surfaces as an unsupported load."""
        from tokenpipe.exceptions import MissingDependencyError

        error = MissingDependencyError("mlx", "pip install tokenpipe[mlx]")

        assert error.kind == "unsupported"
        assert error.backend_name == "mlx"
        assert "pip install tokenpipe[mlx]" in str(error)


class TestRuntimeErrors:
    """Errors raised by backend steps and sessions."""

    @pytest.mark.parametrize(
        "name,kind",
        [
            ("TransientBackendError", "transient"),
            ("FatalBackendError", "fatal"),
            ("TokenizationError", "tokenization"),
            ("ToolProtocolViolation", "tool_protocol_violation"),
            ("ToolResultError", "tool_result"),
        ],
    )
    def test_kinds(self, name, kind):
        import tokenpipe.exceptions as exc

        assert getattr(exc, name)("x").kind == kind

    def test_backend_fatal_wraps_cause(self):
        from tokenpipe.exceptions import BackendFatalError, TransientBackendError

        cause = TransientBackendError("CUDA out of memory", "step 12")
        error = BackendFatalError(cause)

        assert error.kind == "fatal"
        assert error.cause is cause
        assert "CUDA out of memory" in str(error)
        assert "step 12" in str(error)

    def test_timeout(self):
        from tokenpipe.exceptions import SessionTimeoutError

        error = SessionTimeoutError("call_abc", 1.5)

        assert error.kind == "timeout"
        assert error.call_id == "call_abc"
        assert "1.5s" in str(error)

    def test_cancelled_default_message(self):
        from tokenpipe.exceptions import SessionCancelledError

        assert str(SessionCancelledError()) == "Cancelled by caller"

    def test_cancellation_token_raises_with_reason(self):
        from tokenpipe.exceptions import SessionCancelledError, SessionError
        from tokenpipe.pipeline.types import CancellationToken

        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("user left")

        with pytest.raises(SessionCancelledError) as exc:
            token.raise_if_cancelled()

        assert isinstance(exc.value, SessionError)
        assert exc.value.kind == "cancelled"
        assert str(exc.value) == "user left"


class TestConfigErrors:
    def test_invalid_config_lists_valid_values(self):
        from tokenpipe.exceptions import ConfigurationError, InvalidConfigError

        error = InvalidConfigError("device", "tpu", ["auto", "cpu", "gpu"])

        assert isinstance(error, ConfigurationError)
        assert error.kind == "configuration"
        assert "auto, cpu, gpu" in str(error)
