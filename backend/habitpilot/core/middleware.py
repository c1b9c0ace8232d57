"""Request context middleware for the HTTP surface."""
from __future__ import annotations

import logging
import time
from typing import Callable
from uuid import uuid4

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from habitpilot.core.context import request_id_ctx_var

logger = logging.getLogger(__name__)

MAX_REQUEST_ID_LENGTH = 64


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Bind a request id for logs and traces and log one access line per request.

    Incoming ``X-Request-Id`` values are reused when they fit, so a chat turn
    can be followed from the channel webhook down to the job it enqueued.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:  # type: ignore[override]
        incoming = (request.headers.get("X-Request-Id") or "").strip()
        request_id = incoming if 0 < len(incoming) <= MAX_REQUEST_ID_LENGTH else uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx_var.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            logger.info(
                "%s %s -> %s (%.1f ms)",
                request.method,
                request.url.path,
                response.status_code,
                (time.perf_counter() - started) * 1000,
            )
        finally:
            request_id_ctx_var.reset(token)

        response.headers["X-Request-Id"] = request_id
        return response
