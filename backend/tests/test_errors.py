"""
CodeQuest API — Error Normalizer Tests
========================================

What:  Tests for mapping failures to the uniform error response.
Why:   Every failure path ends here; a wrong mapping or a leaked stack trace
       is visible to every client.

What we test:
    ✅ Each error kind maps to its status and `error` field
    ✅ Unmatched routes told apart from handler 404s, wrong methods and other
       HTTPExceptions
    ✅ Unexpected errors: generic message in production, stack in development
    ✅ Response carries stage headers plus error headers (Retry-After)
    ✅ Exactly one log record per handled error
"""

import json
import logging

import pytest
from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from codequest.errors import GENERIC_INTERNAL_MESSAGE, ErrorNormalizer
from codequest.exceptions import (
    ConnectionFailureError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    OriginNotAllowedError,
    PayloadTooLargeError,
    RateLimitExceededError,
    ServiceUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from codequest.pipeline import RequestContext


def raised(error: Exception) -> Exception:
    """Return `error` with a real traceback attached."""
    try:
        raise error
    except Exception as exc:
        return exc


class TestKindMapping:
    """Tests for status code and kind per error type."""

    @pytest.mark.parametrize(
        "error, status, kind",
        [
            (ValidationError("bad input"), 400, ErrorKind.VALIDATION),
            (UnauthorizedError(), 401, ErrorKind.UNAUTHORIZED),
            (ForbiddenError(), 403, ErrorKind.FORBIDDEN),
            (OriginNotAllowedError("https://evil.example.com"), 403, ErrorKind.FORBIDDEN),
            (NotFoundError("quest", "q-1"), 404, ErrorKind.NOT_FOUND),
            (PayloadTooLargeError(limit=10), 413, ErrorKind.PAYLOAD_TOO_LARGE),
            (RateLimitExceededError(retry_after=30), 429, ErrorKind.RATE_LIMITED),
            (ServiceUnavailableError(), 503, ErrorKind.SERVICE_UNAVAILABLE),
            (ConnectionFailureError(OSError("refused")), 503, ErrorKind.SERVICE_UNAVAILABLE),
            (RuntimeError("boom"), 500, ErrorKind.INTERNAL),
        ],
    )
    def test_mapping(self, error, status, kind):
        normalized = ErrorNormalizer().normalize(error)
        assert normalized.status_code == status
        assert normalized.kind is kind

    def test_not_found_message(self):
        normalized = ErrorNormalizer().normalize(NotFoundError("quest", "q-1"))
        assert normalized.message == "quest with ID 'q-1' was not found"
        assert normalized.details is None

    def test_validation_context_is_exposed(self):
        error = ValidationError("Malformed JSON", field="body", context={"line": 1, "column": 3})
        normalized = ErrorNormalizer().normalize(error)
        assert normalized.details == {"line": 1, "column": 3, "field": "body"}

    def test_rate_limit_details_and_header(self):
        normalized = ErrorNormalizer().normalize(RateLimitExceededError(retry_after=42))
        assert normalized.details == {"retry_after": 42}
        assert normalized.headers == {"Retry-After": "42"}

    def test_connection_failure_hides_cause(self):
        error = ConnectionFailureError(OSError("password authentication failed"))
        body = ErrorNormalizer().normalize(error).to_body()
        assert "password" not in json.dumps(body)

    def test_request_validation_error(self):
        error = RequestValidationError(
            [{"loc": ("path", "level"), "msg": "Input should be a valid integer", "type": "int_parsing"}]
        )
        normalized = ErrorNormalizer().normalize(error)

        assert normalized.status_code == 400
        assert normalized.kind is ErrorKind.VALIDATION
        assert normalized.details["errors"][0]["loc"] == ["path", "level"]


class TestHttpExceptions:
    """Tests for HTTPException raised inside the router."""

    def test_unmatched_route_names_method_and_path(self):
        context = RequestContext.build(method="POST", path="/api/missing-route")
        context.route_matched = False
        normalized = ErrorNormalizer().normalize(StarletteHTTPException(404), context)

        assert normalized.status_code == 404
        assert normalized.kind is ErrorKind.NOT_FOUND
        assert normalized.message == "Route POST /api/missing-route not found"
        assert normalized.details == {"method": "POST", "path": "/api/missing-route"}

    def test_handler_404_keeps_its_detail(self):
        context = RequestContext.build(path="/api/quests/q-9")
        context.route_matched = True
        normalized = ErrorNormalizer().normalize(HTTPException(404, detail="Quest is archived"), context)
        assert normalized.message == "Quest is archived"

    def test_bare_404_from_matched_route_is_not_a_missing_route(self):
        context = RequestContext.build(method="GET", path="/api/relics/r-1")
        context.route_matched = True
        normalized = ErrorNormalizer().normalize(HTTPException(404), context)

        assert normalized.kind is ErrorKind.NOT_FOUND
        assert normalized.message == "Not Found"
        assert normalized.details is None

    def test_bare_404_with_unknown_route_state_keeps_phrase(self):
        context = RequestContext.build(path="/api/relics/r-1")
        normalized = ErrorNormalizer().normalize(StarletteHTTPException(404), context)
        assert normalized.message == "Not Found"

    def test_method_not_allowed(self):
        error = StarletteHTTPException(405, headers={"Allow": "GET"})
        normalized = ErrorNormalizer().normalize(error)

        assert normalized.kind is ErrorKind.METHOD_NOT_ALLOWED
        assert normalized.headers == {"Allow": "GET"}

    def test_unlisted_client_status(self):
        normalized = ErrorNormalizer().normalize(StarletteHTTPException(418))
        assert normalized.status_code == 418
        assert normalized.kind is ErrorKind.HTTP_ERROR

    def test_server_status_uses_generic_message(self):
        normalized = ErrorNormalizer().normalize(HTTPException(502, detail="upstream at 10.0.0.5 down"))
        assert normalized.kind is ErrorKind.INTERNAL
        assert normalized.message == GENERIC_INTERNAL_MESSAGE


class TestDetailExposure:
    """Tests for development versus production output."""

    def test_production_hides_unexpected_error(self):
        error = raised(RuntimeError("kaboom: secret"))
        body = ErrorNormalizer(expose_details=False).normalize(error).to_body()

        assert body == {"error": "internal_server_error", "message": GENERIC_INTERNAL_MESSAGE}

    def test_development_exposes_message_and_stack(self):
        error = raised(RuntimeError("kaboom"))
        normalized = ErrorNormalizer(expose_details=True).normalize(error)

        assert normalized.message == "kaboom"
        assert normalized.details["exception"] == "RuntimeError"
        assert "RuntimeError: kaboom" in normalized.details["stack"]

    def test_development_keeps_safe_message_for_known_5xx(self):
        error = raised(ConnectionFailureError(OSError("refused")))
        normalized = ErrorNormalizer(expose_details=True).normalize(error)

        assert normalized.message.startswith("Database is temporarily unavailable")
        assert "stack" in normalized.details

    def test_development_adds_nothing_to_client_errors(self):
        normalized = ErrorNormalizer(expose_details=True).normalize(raised(UnauthorizedError()))
        assert normalized.details is None


class TestHandle:
    """Tests for the final JSON response and logging."""

    def test_response_body_and_status(self):
        response = ErrorNormalizer().handle(NotFoundError("quest", "q-1"))

        assert response.status_code == 404
        assert json.loads(response.body) == {
            "error": "not_found",
            "message": "quest with ID 'q-1' was not found",
        }

    def test_stage_headers_and_error_headers_are_merged(self):
        context = RequestContext.build(path="/api/quests")
        context.response_headers.update({"X-Frame-Options": "SAMEORIGIN", "RateLimit-Remaining": "0"})

        response = ErrorNormalizer().handle(RateLimitExceededError(retry_after=12), context)

        assert response.status_code == 429
        assert response.headers["retry-after"] == "12"
        assert response.headers["x-frame-options"] == "SAMEORIGIN"
        assert response.headers["ratelimit-remaining"] == "0"

    def test_server_error_logged_once_with_traceback(self, caplog):
        context = RequestContext.build(path="/api/boom")
        with caplog.at_level(logging.WARNING, logger="codequest.errors"):
            ErrorNormalizer().handle(raised(RuntimeError("kaboom")), context)

        records = [r for r in caplog.records if r.name == "codequest.errors"]
        assert len(records) == 1
        assert records[0].levelno == logging.ERROR
        assert records[0].exc_info is not None
        assert "kaboom" in records[0].getMessage()

    def test_client_error_logged_once_as_warning(self, caplog):
        context = RequestContext.build(path="/api/private")
        with caplog.at_level(logging.WARNING, logger="codequest.errors"):
            ErrorNormalizer().handle(UnauthorizedError(), context)

        records = [r for r in caplog.records if r.name == "codequest.errors"]
        assert len(records) == 1
        assert records[0].levelno == logging.WARNING
        assert records[0].exc_info is None
