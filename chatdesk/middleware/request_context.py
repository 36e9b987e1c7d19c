"""Request context middleware for logging correlation."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from chatdesk.logging import reset_request_id, reset_user_id, set_request_id, set_user_id

logger = logging.getLogger("chatdesk.http")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request ID (and the caller's user ID, when known) to each inbound request."""

    async def dispatch(  # type: ignore[override]
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request_token = set_request_id(request_id)
        user_token = set_user_id(request.headers.get("x-user-id"))
        request.state.request_id = request_id
        start = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start) * 1000
            request.state.request_duration_ms = duration_ms
            logger.info(
                "Request handled",
                extra={
                    "event": "http_request",
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 1),
                },
            )
        finally:
            reset_user_id(user_token)
            reset_request_id(request_token)
        response.headers.setdefault("x-request-id", request_id)
        return response
