"""
CodeQuest API — Request ID Middleware
=======================================

What:  Assigns a unique ID to each incoming request and adds it to the response.
Why:   Ties the access log line, the error log record and the client's
       X-Request-ID header together for one request.
How:   Creates a short UUID (or accepts the client's), stores it in a
       ContextVar and request.state, returns it in the X-Request-ID header.
When:  Outermost middleware (runs before the ingress pipeline).
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client-supplied IDs longer than this are replaced (log injection / bloat)
MAX_REQUEST_ID_LENGTH = 64


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Behavior:
        1. Use the client's X-Request-ID header if present and sane
        2. Otherwise generate an 8-character UUID prefix
        3. Store in ContextVar for loggers and in request.state for handlers
        4. Echo in the response headers
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get("X-Request-ID", "")
        if not rid or len(rid) > MAX_REQUEST_ID_LENGTH or not rid.isprintable():
            rid = str(uuid.uuid4())[:8]

        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        return response
