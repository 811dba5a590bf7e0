"""
CodeQuest API — Ingress Pipeline Driver
=========================================

What:  Runs every request through the ordered ingress stages, then hands it to
       the router, and routes any failure to the Error Normalizer.
Why:   Express-style "call next()" chains hide control flow. Here each stage
       returns an explicit result and one loop decides what happens next,
       so the short-circuit behaviour can be tested without an HTTP server.
How:   A stage is an async callable `(RequestContext) -> StageResult`:

           Continue        → run the next stage
           Respond(resp)   → stop, send this response (e.g. CORS preflight)
           Fail(error)     → stop, Error Normalizer builds the response

       An exception raised by a stage is treated exactly like Fail(exception).

Stage Order (built in main.create_app):
    ┌────────────┐ ┌──────────┐ ┌────────┐ ┌──────────┐ ┌────────────┐ ┌──────────┐
    │ Connection │→│ Security │→│ Origin │→│ Request  │→│ Rate Gate  │→│ Router   │
    │ Gate       │ │ Headers  │ │ Policy │ │ Normalizr│ │ (/api only)│ │ Dispatch │
    └────────────┘ └──────────┘ └────────┘ └──────────┘ └────────────┘ └──────────┘
           │             │           │           │             │             │
           └─────────────┴───────────┴─── on failure ──────────┴─────────────┘
                                            ▼
                                    Error Normalizer
"""

import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Mapping,
    Optional,
    Sequence,
    Union,
)

from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from codequest.errors import ErrorNormalizer
from codequest.middleware.request_id import request_id_var

logger = logging.getLogger(__name__)

# Every business route is mounted under this prefix
API_PREFIX = "/api"


# ══════════════════════════════════════════════════════════════════════════
# Stage Results
# ══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Continue:
    """Stage completed; run the next one."""


@dataclass(frozen=True)
class Respond:
    """Stage produced the final response itself."""

    response: Response


@dataclass(frozen=True)
class Fail:
    """Stage rejected the request."""

    error: BaseException


CONTINUE = Continue()

StageResult = Union[Continue, Respond, Fail]


# ══════════════════════════════════════════════════════════════════════════
# Request Context
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class RequestContext:
    """
    Per-request state passed to every stage.

    Attributes:
        stream_body:       Yields the raw body chunk by chunk (consumed by the
                           Request Normalizer, which enforces the size limit
                           while reading)
        body_read:         True once stream_body was read to the end; raw_body
                           then holds every byte
        body:              Parsed body; None until decoded or when not decodable
        response_headers:  Headers stages want on the final response (security,
                           CORS, rate-limit); applied by the driver and by the
                           Error Normalizer
        route_matched:     Set by the router exception handler. False means no
                           route matched the path; None means unknown
    """

    method: str
    path: str
    headers: Mapping[str, str]
    client_host: str
    stream_body: Callable[[], AsyncIterator[bytes]]
    request_id: str = ""
    raw_body: bytes = b""
    body_read: bool = False
    body: Any = None
    response_headers: Dict[str, str] = field(default_factory=dict)
    route_matched: Optional[bool] = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        return cls(
            method=request.method,
            path=request.url.path,
            headers=request.headers,
            client_host=request.client.host if request.client else "unknown",
            stream_body=request.stream,
            request_id=request_id_var.get(""),
        )

    @classmethod
    def build(
        cls,
        method: str = "GET",
        path: str = "/api",
        headers: Optional[Mapping[str, str]] = None,
        body: bytes = b"",
        client_host: str = "127.0.0.1",
        chunks: Optional[Iterable[bytes]] = None,
    ) -> "RequestContext":
        """
        Context without a live request, for driving stages directly.

        The body is streamed as one chunk unless `chunks` is given.
        """
        parts = [body] if chunks is None else chunks

        async def stream_body() -> AsyncIterator[bytes]:
            for part in parts:
                yield part

        return cls(
            method=method,
            path=path,
            headers=Headers(headers=dict(headers or {})),
            client_host=client_host,
            stream_body=stream_body,
        )

    @property
    def is_api(self) -> bool:
        return self.path == API_PREFIX or self.path.startswith(API_PREFIX + "/")


Stage = Callable[[RequestContext], Awaitable[StageResult]]
Dispatch = Callable[[RequestContext], Awaitable[Response]]


def apply_headers(response: Response, headers: Mapping[str, str]) -> Response:
    """
    Add stage headers without overriding ones the handler set itself.
    Vary is merged instead of replaced.
    """
    for name, value in headers.items():
        if name.lower() == "vary":
            existing = response.headers.get("vary", "")
            if value.lower() not in existing.lower():
                response.headers.add_vary_header(value)
        elif name not in response.headers:
            response.headers[name] = value
    return response


# ══════════════════════════════════════════════════════════════════════════
# Driver
# ══════════════════════════════════════════════════════════════════════════

class Pipeline:
    """
    Ordered ingress stages plus the terminal Error Normalizer.

    Exactly one response is produced per request: a stage's Respond, the
    dispatched handler's response, or the Error Normalizer's response.
    """

    def __init__(self, stages: Sequence[Stage], error_normalizer: ErrorNormalizer):
        self.stages = tuple(stages)
        self.error_normalizer = error_normalizer

    async def run(self, context: RequestContext, dispatch: Dispatch) -> Response:
        for stage in self.stages:
            try:
                result = await stage(context)
            except Exception as exc:
                result = Fail(exc)

            if isinstance(result, Respond):
                logger.debug("%s %s answered by stage %r", context.method, context.path, stage)
                return apply_headers(result.response, context.response_headers)
            if isinstance(result, Fail):
                return self.error_normalizer.handle(result.error, context)

        try:
            response = await dispatch(context)
        except Exception as exc:
            return self.error_normalizer.handle(exc, context)
        return apply_headers(response, context.response_headers)


class IngressMiddleware(BaseHTTPMiddleware):
    """
    Starlette adapter: wraps the HTTP request in a RequestContext, runs the
    pipeline, and forwards to the router as the dispatch step.

    The parsed body is published on request.state so handlers can read it
    through the `parsed_body` dependency. A body the Request Normalizer
    streamed is also cached on the request, so handlers that read
    `await request.body()` see the same bytes.
    """

    def __init__(self, app, pipeline: Pipeline):
        super().__init__(app)
        self.pipeline = pipeline

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        context = RequestContext.from_request(request)

        async def forward(ctx: RequestContext) -> Response:
            request.state.ingress = ctx
            request.state.body = ctx.body
            request.state.raw_body = ctx.raw_body
            if ctx.body_read:
                # Same cache Request.body() fills; the stream itself is spent
                request._body = ctx.raw_body
            return await call_next(request)

        return await self.pipeline.run(context, forward)
