"""
CodeQuest API — Health Check Route
====================================

What:  GET /api/health for load balancers and uptime monitors.
How:   Reports the Connection Gate state instead of probing the database
       again: a request that reaches this handler has already passed the
       gate, so a second round-trip would only add latency.
"""

import time

from fastapi import APIRouter, Request

from codequest import __version__
from codequest.schemas.responses import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(request: Request) -> HealthResponse:
    state = request.app.state
    connected = state.connection_manager.established

    return HealthResponse(
        status="healthy" if connected else "degraded",
        version=__version__,
        environment=state.settings.environment,
        database="connected" if connected else "disconnected",
        uptime_seconds=round(time.monotonic() - state.started_at, 2),
    )
