# Middleware package init
"""
CodeQuest API — Middleware Package
====================================

Two kinds of cross-cutting code live here:

Starlette middleware (wrap the whole request):
    request_id.py        X-Request-ID generation and ContextVar
    logging.py           access log, dev or combined format

Ingress pipeline stages (run by codequest.pipeline.Pipeline, in this order):
    ConnectionManager    codequest.connection
    security_headers.py  hardening headers
    origin.py            origin allowlist, CORS headers, preflight
    body.py              body size limit and decoding
    rate_limit.py        per-client fixed window on /api paths

Request → [Request ID] → [Access Log] → [Pipeline stages] → Route Handler
"""
