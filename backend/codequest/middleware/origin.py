"""
CodeQuest API — Origin Policy (CORS)
======================================

What:  Decides whether a request's Origin may receive a cross-origin response,
       emits the CORS response headers, and answers preflight requests.
Why:   Starlette's CORSMiddleware can only allow or silently drop an origin.
       The API needs a third mode: allow everything but log mismatches, so a
       misconfigured FRONTEND_URL shows up in logs instead of breaking the app.
How:   The allowlist is built once from FRONTEND_URL (as-is, without and with
       a trailing slash) plus the local dev origin, each normalized by
       stripping one trailing slash. A request origin is normalized the same
       way and compared for exact equality.

Modes (ENFORCE_ORIGIN_ALLOWLIST):
    false (default) — mismatches are logged, request proceeds, origin echoed
    true            — mismatches fail with 403 OriginNotAllowedError

Requests without an Origin header (curl, mobile apps, server-to-server) are
always allowed and get no CORS headers.
"""

import logging
from typing import Iterable, Optional, Tuple

from starlette.responses import Response

from codequest.config import Settings
from codequest.exceptions import OriginNotAllowedError
from codequest.pipeline import CONTINUE, Fail, RequestContext, Respond, StageResult

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS")
ALLOWED_HEADERS = ("Content-Type", "Authorization", "X-Requested-With")


def normalize_origin(origin: str) -> str:
    """Strip exactly one trailing slash."""
    return origin[:-1] if origin.endswith("/") else origin


class OriginPolicy:
    """
    Stage: origin allowlist check, CORS headers and preflight short-circuit.

    The allowlist is an immutable ordered tuple of normalized origins.
    """

    def __init__(self, origins: Iterable[str], enforce: bool = False):
        # dict.fromkeys keeps first-seen order while dropping duplicates
        self.allowlist: Tuple[str, ...] = tuple(
            dict.fromkeys(normalize_origin(origin) for origin in origins)
        )
        self.enforce = enforce

    @classmethod
    def from_settings(cls, settings: Settings) -> "OriginPolicy":
        return cls(settings.allowed_origin_seeds, enforce=settings.enforce_origin_allowlist)

    def is_origin_allowed(self, origin: Optional[str]) -> bool:
        if not origin:
            return True
        return normalize_origin(origin) in self.allowlist

    async def __call__(self, context: RequestContext) -> StageResult:
        origin = context.headers.get("origin")

        if origin:
            if not self.is_origin_allowed(origin):
                if self.enforce:
                    return Fail(OriginNotAllowedError(origin))
                logger.warning("CORS origin not in allowlist (allowed anyway): %s", origin)
            context.response_headers.update(
                {
                    "Access-Control-Allow-Origin": origin,
                    "Access-Control-Allow-Credentials": "true",
                    "Vary": "Origin",
                }
            )

        if context.method == "OPTIONS" and "access-control-request-method" in context.headers:
            return Respond(
                Response(
                    status_code=204,
                    headers={
                        "Access-Control-Allow-Methods": ", ".join(ALLOWED_METHODS),
                        "Access-Control-Allow-Headers": ", ".join(ALLOWED_HEADERS),
                    },
                )
            )
        return CONTINUE
