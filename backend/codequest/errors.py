"""
CodeQuest API — Error Normalizer
==================================

What:  Converts any failure raised by an ingress stage or a route handler into
       one uniform JSON error response plus one server-side log record.
Why:   Clients get the same body shape for every error; internals (stack
       traces, driver messages, client addresses) never leak outside
       development mode.
How:   normalize() maps the exception to a NormalizedError; handle() logs it
       and builds the JSONResponse, including the headers the stages already
       accumulated (security, CORS, rate-limit) so the error response is final.
Who:   Called by Pipeline.run for stage/dispatch failures and by the FastAPI
       exception handlers for HTTPException and RequestValidationError.

Mapping:
    ValidationError / RequestValidationError → 400 validation_error
    UnauthorizedError                        → 401 unauthorized
    ForbiddenError / OriginNotAllowedError   → 403 forbidden
    NotFoundError / unmatched route          → 404 not_found
    wrong method on a route                  → 405 method_not_allowed
    PayloadTooLargeError                     → 413 payload_too_large
    RateLimitExceededError                   → 429 rate_limit_exceeded
    ServiceUnavailableError                  → 503 service_unavailable
    anything else                            → 500 internal_server_error

Response body:
    {"error": "<kind>", "message": "<safe message>", "details": {...}}   # details optional
"""

import logging
import traceback
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from codequest.exceptions import CodeQuestError, ErrorKind
from codequest.middleware.request_id import request_id_var
from codequest.schemas.responses import ErrorResponse

if TYPE_CHECKING:
    from codequest.pipeline import RequestContext

logger = logging.getLogger(__name__)

GENERIC_INTERNAL_MESSAGE = "Internal server error"

_KIND_BY_STATUS = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    405: ErrorKind.METHOD_NOT_ALLOWED,
    413: ErrorKind.PAYLOAD_TOO_LARGE,
    429: ErrorKind.RATE_LIMITED,
    503: ErrorKind.SERVICE_UNAVAILABLE,
}


@dataclass(frozen=True)
class NormalizedError:
    """The only error object ever serialized to a client."""

    status_code: int
    message: str
    kind: ErrorKind
    details: Optional[Dict[str, Any]] = None
    headers: Mapping[str, str] = field(default_factory=dict)

    def to_body(self) -> Dict[str, Any]:
        return ErrorResponse(
            error=self.kind.value,
            message=self.message,
            details=self.details,
        ).model_dump(exclude_none=True)


def _stack(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


class ErrorNormalizer:
    """
    Terminal stage of the ingress pipeline.

    expose_details: True in development; adds the exception type and stack
    trace to 5xx responses and uses the raw exception text as the message
    for unexpected errors.
    """

    def __init__(self, expose_details: bool = False):
        self.expose_details = expose_details

    def normalize(
        self, error: BaseException, context: Optional["RequestContext"] = None
    ) -> NormalizedError:
        if isinstance(error, CodeQuestError):
            normalized = NormalizedError(
                status_code=error.status_code,
                message=error.message,
                kind=error.kind,
                details=error.public_details,
                headers=error.headers,
            )
        elif isinstance(error, RequestValidationError):
            normalized = NormalizedError(
                status_code=400,
                message="Request validation failed",
                kind=ErrorKind.VALIDATION,
                details={"errors": jsonable_encoder(error.errors())},
            )
        elif isinstance(error, StarletteHTTPException):
            normalized = self._from_http_exception(error, context)
        else:
            normalized = NormalizedError(
                status_code=500,
                message=GENERIC_INTERNAL_MESSAGE,
                kind=ErrorKind.INTERNAL,
            )

        if self.expose_details and normalized.status_code >= 500:
            details = dict(normalized.details or {})
            details["exception"] = type(error).__name__
            details["stack"] = _stack(error)
            message = normalized.message
            if normalized.kind is ErrorKind.INTERNAL and str(error):
                message = str(error)
            normalized = NormalizedError(
                status_code=normalized.status_code,
                message=message,
                kind=normalized.kind,
                details=details,
                headers=normalized.headers,
            )
        return normalized

    def _from_http_exception(
        self, error: StarletteHTTPException, context: Optional["RequestContext"]
    ) -> NormalizedError:
        status = error.status_code
        fallback = ErrorKind.INTERNAL if status >= 500 else ErrorKind.HTTP_ERROR
        kind = _KIND_BY_STATUS.get(status, fallback)

        # Only the router exception handler knows whether a route matched
        if status == 404 and context is not None and context.route_matched is False:
            return NormalizedError(
                status_code=404,
                message=f"Route {context.method} {context.path} not found",
                kind=kind,
                details={"method": context.method, "path": context.path},
            )

        if status >= 500:
            message = GENERIC_INTERNAL_MESSAGE
        elif isinstance(error.detail, str) and error.detail:
            message = error.detail
        else:
            message = HTTPStatus(status).phrase
        return NormalizedError(
            status_code=status,
            message=message,
            kind=kind,
            headers=dict(error.headers or {}),
        )

    def handle(
        self, error: BaseException, context: Optional["RequestContext"] = None
    ) -> JSONResponse:
        """
        Log the failure and build the client response.

        Exactly one log record per call: ERROR with traceback for 5xx,
        WARNING with context for 4xx.
        """
        normalized = self.normalize(error, context)

        rid = (context.request_id if context else "") or request_id_var.get("")
        method = context.method if context else "-"
        path = context.path if context else "-"
        log_context = getattr(error, "context", None) or {}

        if normalized.status_code >= 500:
            logger.error(
                "[%s] %s %s failed with %d: %s",
                rid,
                method,
                path,
                normalized.status_code,
                error,
                exc_info=(type(error), error, error.__traceback__),
            )
        else:
            logger.warning(
                "[%s] %s %s rejected with %d (%s): %s | Context: %s",
                rid,
                method,
                path,
                normalized.status_code,
                normalized.kind.value,
                normalized.message,
                log_context,
            )

        headers: Dict[str, str] = {}
        if context is not None:
            headers.update(context.response_headers)
        headers.update(normalized.headers)

        return JSONResponse(
            status_code=normalized.status_code,
            content=normalized.to_body(),
            headers=headers,
        )


def register_exception_handlers(app: FastAPI, normalizer: ErrorNormalizer) -> None:
    """
    Route the errors FastAPI/Starlette catch internally through the normalizer.

    HTTPException (unmatched route, wrong method) and request validation are
    handled inside the router, so they never reach the pipeline's except
    clause. Everything else raised by a handler propagates to Pipeline.run.
    """

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        context = getattr(request.state, "ingress", None)
        if context is not None:
            # FastAPI records the matched route in the scope; unmatched paths have none
            context.route_matched = "route" in request.scope
        return normalizer.handle(exc, context)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return normalizer.handle(exc, getattr(request.state, "ingress", None))
