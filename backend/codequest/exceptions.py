"""
CodeQuest API — Custom Exception Hierarchy
============================================

What:  Application-specific exceptions raised by ingress stages and handlers.
Why:   Each exception carries its ErrorKind and HTTP status so the Error
       Normalizer can build a uniform response without per-route try/except.
How:   Class attributes fix kind and status; instances carry a client-safe
       message and a context dict that is logged but only partly exposed
       (public_details, see ErrorNormalizer).
Who:   Raised by ingress stages and route handlers; caught by the
       Error Normalizer (codequest.errors).

Exception Hierarchy:
    CodeQuestError (base)                  → 500
    ├── ValidationError                    → 400 Bad Request
    ├── UnauthorizedError                  → 401 Unauthorized
    ├── ForbiddenError                     → 403 Forbidden
    │   └── OriginNotAllowedError          → 403 (enforced origin allowlist)
    ├── NotFoundError                      → 404 Not Found
    ├── PayloadTooLargeError               → 413 Payload Too Large
    ├── RateLimitExceededError             → 429 Too Many Requests
    └── ServiceUnavailableError            → 503 Service Unavailable
        └── ConnectionFailureError         → 503 (backing store unreachable)
"""

import enum
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    """Client-facing error category; serialized as the `error` field."""

    VALIDATION = "validation_error"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    RATE_LIMITED = "rate_limit_exceeded"
    SERVICE_UNAVAILABLE = "service_unavailable"
    HTTP_ERROR = "http_error"
    INTERNAL = "internal_server_error"


class CodeQuestError(Exception):
    """
    Base exception for all CodeQuest application errors.

    Attributes:
        message:  Shown to the client as-is
        context:  Logged server-side; never serialized unless public_details says so
    """

    kind = ErrorKind.INTERNAL
    status_code = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    @property
    def public_details(self) -> Optional[Dict[str, Any]]:
        """Context fields safe to expose in every environment (none by default)."""
        return None

    @property
    def headers(self) -> Dict[str, str]:
        """Extra response headers this error needs (e.g. Retry-After)."""
        return {}


class ValidationError(CodeQuestError):
    """
    Raised when client input cannot be decoded or fails validation.

    When:    Malformed JSON, non-UTF-8 body, or a handler rejecting its input.
    HTTP:    400 Bad Request
    """

    kind = ErrorKind.VALIDATION
    status_code = 400

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field

    @property
    def public_details(self) -> Optional[Dict[str, Any]]:
        # Validation context describes the client's own input; safe to echo
        return self.context or None


class UnauthorizedError(CodeQuestError):
    """Missing or invalid credentials. Raised by route handlers."""

    kind = ErrorKind.UNAUTHORIZED
    status_code = 401

    def __init__(
        self,
        message: str = "Authentication required",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ForbiddenError(CodeQuestError):
    """Authenticated but not permitted. Raised by route handlers."""

    kind = ErrorKind.FORBIDDEN
    status_code = 403

    def __init__(
        self,
        message: str = "You do not have permission to perform this action",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class OriginNotAllowedError(ForbiddenError):
    """
    Raised by the Origin Policy when the allowlist is enforced and the
    request's Origin does not match it.
    """

    def __init__(self, origin: str):
        super().__init__(
            message="Origin not allowed",
            context={"origin": origin},
        )
        self.origin = origin


class NotFoundError(CodeQuestError):
    """
    Raised when a requested resource or route does not exist.

    HTTP:    404 Not Found
    """

    kind = ErrorKind.NOT_FOUND
    status_code = 404

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class PayloadTooLargeError(CodeQuestError):
    """
    Raised by the Request Normalizer when a body exceeds MAX_BODY_SIZE
    (or a form body exceeds the parameter limit).

    HTTP:    413 Payload Too Large
    """

    kind = ErrorKind.PAYLOAD_TOO_LARGE
    status_code = 413

    def __init__(
        self,
        limit: int,
        size: Optional[int] = None,
        message: Optional[str] = None,
    ):
        ctx: Dict[str, Any] = {"limit": limit}
        if size is not None:
            ctx["size"] = size
        super().__init__(
            message=message or f"Request body exceeds the {limit} byte limit",
            context=ctx,
        )
        self.limit = limit
        self.size = size

    @property
    def public_details(self) -> Optional[Dict[str, Any]]:
        return {"limit": self.limit}


class RateLimitExceededError(CodeQuestError):
    """
    Raised when a client exceeds the per-identity request rate limit.

    When:    After rate_limit_requests (default: 100) in rate_limit_window.
    HTTP:    429 Too Many Requests

    Response includes:
        - retry_after: Seconds until the rate limit window resets
        - Retry-After header for HTTP-compliant clients
    """

    kind = ErrorKind.RATE_LIMITED
    status_code = 429

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Too many requests. Please wait {retry_after} seconds before retrying."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after

    @property
    def public_details(self) -> Optional[Dict[str, Any]]:
        return {"retry_after": self.retry_after}

    @property
    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class ServiceUnavailableError(CodeQuestError):
    """
    Raised when a dependency the request needs is not available.

    HTTP:    503 Service Unavailable
    """

    kind = ErrorKind.SERVICE_UNAVAILABLE
    status_code = 503

    def __init__(
        self,
        message: str = "Service is temporarily unavailable. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ConnectionFailureError(ServiceUnavailableError):
    """
    Raised by the Connection Gate when the backing store cannot be reached.

    The original exception is kept as __cause__ and in context for logs;
    clients only ever see the generic message.
    """

    def __init__(self, cause: Optional[BaseException] = None):
        ctx: Dict[str, Any] = {}
        if cause is not None:
            ctx["cause"] = f"{type(cause).__name__}: {cause}"
        super().__init__(
            message="Database is temporarily unavailable. Please try again later.",
            context=ctx,
        )
