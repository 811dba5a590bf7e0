"""
CodeQuest API — Application Package
=====================================

The request-ingress pipeline of the CodeQuest RPG API: every request passes
through the same ordered checks before reaching a business route handler,
and every error leaves through the same normalizer.

    ┌─────────────────────────────────────┐
    │      Ambient middleware             │  ← request ID, access log
    ├─────────────────────────────────────┤
    │      Ingress pipeline (stages)      │  ← connection, headers, CORS,
    │                                     │    body, rate limit
    ├─────────────────────────────────────┤
    │      Router dispatch (/api)         │  ← business handlers (external)
    ├─────────────────────────────────────┤
    │      Error normalizer               │  ← uniform JSON errors
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
