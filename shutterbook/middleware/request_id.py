"""
Shutterbook Notifications — Request ID Middleware
===================================================

Every response carries X-Request-ID, and so does every error body
(`request_id`). A booking-service call that forwards its own id keeps it;
ids that are too long or carry anything outside [A-Za-z0-9._:-] are
replaced, since they end up verbatim in log lines.
"""

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"

# Read by the exception handlers and access log of the current request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


def accepted_request_id(header_value: str) -> str:
    """The caller's id when it is safe to log, otherwise a fresh one."""
    candidate = header_value.strip()
    if _VALID_REQUEST_ID.match(candidate):
        return candidate
    return new_request_id()


class RequestIDMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = accepted_request_id(request.headers.get(REQUEST_ID_HEADER, ""))
        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
