# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Request logging middleware.

PRIVACY: prompts, generated text and tool results pass through this server.
Only request metadata is logged: method, path, status, duration and the
generation session id, so a session's requests can be correlated.
"""

import logging
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("tokenpipe.api")

SESSION_HEADER = "X-Session-Id"


class RequestLogger(BaseHTTPMiddleware):
    """
    Privacy-safe logging middleware.

    Never logs:
    - Request bodies (prompts, tool results)
    - Response bodies (model outputs)
    - Authorization or identifying headers

    For streaming responses the duration covers the time to the response
    headers, not the whole stream.
    """

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        logger.info(
            "method=%s path=%s status=%d duration=%.3fs session=%s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed,
            response.headers.get(SESSION_HEADER, "-"),
        )
        return response
