# SPDX-License-Identifier: HRUL-1.0
"""Tests for the api/middleware module."""

from unittest.mock import patch

from fastapi import FastAPI, Response
from fastapi.testclient import TestClient


def _app():
    from tokenpipe.api.middleware import SESSION_HEADER, RequestLogger

    app = FastAPI()
    app.add_middleware(RequestLogger)

    @app.get("/test")
    def get_endpoint():
        return {"status": "ok"}

    @app.post("/echo")
    def post_endpoint(body: dict):
        return {"n": len(body)}

    @app.post("/session")
    def session_endpoint(response: Response):
        response.headers[SESSION_HEADER] = "abc123"
        return {}

    return app


class TestRequestLogger:
    """Tests for RequestLogger middleware."""

    def test_logs_request_metadata(self):
        """Method, path, status and duration are logged."""
        client = TestClient(_app())

        with patch("tokenpipe.api.middleware.logger") as mock_logger:
            response = client.get("/test")

        assert response.status_code == 200
        mock_logger.info.assert_called_once()
        fmt, *args = mock_logger.info.call_args[0]
        assert fmt == "method=%s path=%s status=%d duration=%.3fs session=%s"
        assert args[:3] == ["GET", "/test", 200]
        assert args[3] >= 0
        assert args[4] == "-"

    def test_logs_session_id(self):
        client = TestClient(_app())

        with patch("tokenpipe.api.middleware.logger") as mock_logger:
            client.post("/session")

        assert mock_logger.info.call_args[0][5] == "abc123"

    def test_body_never_logged(self):
        """Prompts in request bodies stay out of the logs."""
        client = TestClient(_app())

        with patch("tokenpipe.api.middleware.logger") as mock_logger:
            client.post("/echo", json={"prompt": "my secret prompt"})

        logged = " ".join(str(a) for a in mock_logger.info.call_args[0])
        assert "secret" not in logged
        assert "POST" in logged

    def test_error_status_logged(self):
        client = TestClient(_app())

        with patch("tokenpipe.api.middleware.logger") as mock_logger:
            response = client.get("/missing")

        assert response.status_code == 404
        assert mock_logger.info.call_args[0][3] == 404
