# Routes package init
"""
CodeQuest API — Router Dispatch
=================================

What:  The single extension point business handlers plug into.
Why:   The ingress pipeline does not know any business route; it only
       guarantees every handler is reached under /api after all checks pass.
How:   Handlers are registered on FastAPI APIRouters (or one at a time with
       register_handler) and mounted under API_PREFIX by create_app().

Route Inventory (built in):
    - health.py:  GET /api/health   (service health check)

Any error a handler raises propagates to the Error Normalizer.
"""

from typing import Callable, Iterable

from fastapi import APIRouter, FastAPI

from codequest.pipeline import API_PREFIX
from codequest.routes import health

BUILTIN_ROUTERS = (health.router,)


def mount_routers(app: FastAPI, routers: Iterable[APIRouter]) -> None:
    """Mount the built-in routers and the given business routers under /api."""
    for router in (*BUILTIN_ROUTERS, *routers):
        app.include_router(router, prefix=API_PREFIX)


def register_handler(
    app: FastAPI,
    method: str,
    path: str,
    handler: Callable,
    **route_kwargs,
) -> None:
    """
    Register one handler for method+path under /api.

    Example:
        register_handler(app, "GET", "/quests/{quest_id}", get_quest)
        → GET /api/quests/{quest_id}
    """
    if not path.startswith("/"):
        path = "/" + path
    app.add_api_route(API_PREFIX + path, handler, methods=[method.upper()], **route_kwargs)
