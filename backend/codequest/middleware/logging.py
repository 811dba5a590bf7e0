"""
CodeQuest API — Request Logging Middleware
============================================

What:  One access log line per HTTP request.
Why:   Operators need method, path, status and latency for every request,
       including the ones the ingress pipeline rejects.
How:   Two formats, picked from the runtime mode:

    dev       (ENVIRONMENT=development) — short and readable
        POST /api/quests 201 12.345 ms - 87

    combined  (everything else) — Apache combined log format, for log shippers
        203.0.113.7 - - [19/Oct/2026:10:00:00 +0000] "POST /api/quests HTTP/1.1" 201 87 "-" "curl/8.4.0"

Log level follows the status class: 5xx → ERROR, 4xx → WARNING, else INFO.

What we log vs what we DON'T log (privacy):
    ✅ Log: method, path, status, duration, IP, user-agent, referrer, request ID
    ❌ Don't log: request body, query string values, auth headers
"""

import logging
import time
from datetime import datetime, timezone

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from codequest.middleware.request_id import request_id_var

logger = logging.getLogger("codequest.access")

LOG_FORMATS = ("dev", "combined")


def format_dev(request: Request, response: Response, duration_ms: float) -> str:
    length = response.headers.get("content-length", "-")
    return (
        f"{request.method} {request.url.path} {response.status_code} "
        f"{duration_ms:.3f} ms - {length}"
    )


def format_combined(request: Request, response: Response, duration_ms: float) -> str:
    client_ip = request.client.host if request.client else "-"
    timestamp = datetime.now(timezone.utc).strftime("%d/%b/%Y:%H:%M:%S %z")
    version = request.scope.get("http_version", "1.1")
    length = response.headers.get("content-length", "-")
    referrer = request.headers.get("referer", "-")
    user_agent = request.headers.get("user-agent", "-")
    return (
        f'{client_ip} - - [{timestamp}] "{request.method} {request.url.path} HTTP/{version}" '
        f'{response.status_code} {length} "{referrer}" "{user_agent}"'
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one line per request after the response is produced.

    Duration covers everything inside this middleware: the ingress stages,
    the route handler and error normalization.
    """

    def __init__(self, app, log_format: str = "combined"):
        super().__init__(app)
        if log_format not in LOG_FORMATS:
            raise ValueError(f"Unknown log format '{log_format}'. Must be one of: {LOG_FORMATS}")
        self._format = format_dev if log_format == "dev" else format_combined

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            self._format(request, response, duration_ms),
            extra={
                "request_id": request_id_var.get(""),
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return response
