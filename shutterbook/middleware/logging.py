"""
Shutterbook Notifications — Access Log
========================================

One line per request on the `shutterbook.access` logger, at ERROR for 5xx,
WARNING for 4xx and INFO otherwise. /health is not logged.

A notification stream is logged once its headers go out, with the stream
session id the route stored in `request.state.stream_session_id`. That id
also appears on the session's own open and close lines, which is where the
connection's lifetime and forwarded count are found.
"""

import logging
import time
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("shutterbook.access")

SKIPPED_PATHS = frozenset({"/health"})


def level_for_status(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in SKIPPED_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        rid = getattr(request.state, "request_id", "")
        stream_id: Optional[str] = getattr(request.state, "stream_session_id", None)
        client_ip = request.client.host if request.client else "unknown"

        logger.log(
            level_for_status(response.status_code),
            "%s %s %d %.1fms%s [%s] from %s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            f" (stream {stream_id} opened)" if stream_id else "",
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": round(elapsed_ms, 2),
                "client_ip": client_ip,
                "stream_session_id": stream_id,
            },
        )
        return response
