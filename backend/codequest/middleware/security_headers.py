"""
CodeQuest API — Security Headers Stage
========================================

What:  Adds hardening response headers to every response, errors included.
Why:   Browsers enforce these; without them a JSON API can still be framed,
       MIME-sniffed or leak referrers.
How:   Stage queues the headers on the RequestContext; the pipeline driver and
       the Error Normalizer attach them to whatever response is produced.

Defaults match helmet's so the frontend sees the same policy as before.
"""

from typing import Dict, Mapping, Optional

from codequest.pipeline import CONTINUE, RequestContext, StageResult

DEFAULT_CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'self'",
        "base-uri 'self'",
        "font-src 'self' https: data:",
        "form-action 'self'",
        "frame-ancestors 'self'",
        "img-src 'self' data:",
        "object-src 'none'",
        "script-src 'self'",
        "script-src-attr 'none'",
        "style-src 'self' https: 'unsafe-inline'",
        "upgrade-insecure-requests",
    ]
)

DEFAULT_SECURITY_HEADERS: Dict[str, str] = {
    "Content-Security-Policy": DEFAULT_CONTENT_SECURITY_POLICY,
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


class SecurityHeaders:
    """Stage: queue the security headers. Never fails."""

    def __init__(self, headers: Optional[Mapping[str, str]] = None):
        self.headers = dict(DEFAULT_SECURITY_HEADERS if headers is None else headers)

    async def __call__(self, context: RequestContext) -> StageResult:
        context.response_headers.update(self.headers)
        return CONTINUE
