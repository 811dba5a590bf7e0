"""
CodeQuest API — FastAPI Application Factory
=============================================

What:  Creates and configures the FastAPI application: logging, the ingress
       pipeline, exception handlers and route mounting.
Why:   All composition happens in one place; every collaborator (settings,
       connection manager, database, business routers) can be injected, so
       tests build fully wired apps without environment variables or a DB.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   uvicorn (codequest.main:app) or a serverless ASGI host.

Application Architecture:
    ┌───────────────────────────────────────────────────────────────┐
    │                          FastAPI App                          │
    │                                                               │
    │  Middleware (outermost first):                                │
    │  ┌──────────┐ ┌────────────┐ ┌──────────────────────────────┐ │
    │  │ Req ID   │→│ Access Log │→│ IngressMiddleware (Pipeline) │ │
    │  └──────────┘ └────────────┘ └──────────────────────────────┘ │
    │                                                               │
    │  Pipeline stages:                                             │
    │  Connection Gate → Security Headers → Origin Policy →         │
    │  Request Normalizer → Rate Gate → Router Dispatch             │
    │                                                               │
    │  Terminal: Error Normalizer (any failure → uniform JSON)      │
    │                                                               │
    │  Routes: /api/health + injected business routers under /api   │
    └───────────────────────────────────────────────────────────────┘

Lifecycle:
    Startup (long-lived mode):
    1. Initialize logging
    2. Establish the backing-store connection (abort startup on failure)
    3. Log the startup banner

    Startup (serverless mode):
    1. Initialize logging; the first request establishes the connection

    Shutdown:
    1. Dispose the connection manager (closes the pool)
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Iterable, Optional

from fastapi import APIRouter, FastAPI

from codequest import __version__
from codequest.config import Settings
from codequest.config import settings as default_settings
from codequest.connection import ConnectionManager
from codequest.database import Database
from codequest.errors import ErrorNormalizer, register_exception_handlers
from codequest.exceptions import ConnectionFailureError
from codequest.middleware.body import RequestNormalizer
from codequest.middleware.logging import RequestLoggingMiddleware
from codequest.middleware.origin import OriginPolicy
from codequest.middleware.rate_limit import RateGate
from codequest.middleware.request_id import RequestIDMiddleware
from codequest.middleware.security_headers import SecurityHeaders
from codequest.pipeline import IngressMiddleware, Pipeline
from codequest.routes import mount_routers

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Output: stdout (captured by the container / serverless platform)
    """
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings: Settings = app.state.settings
    connection_manager: ConnectionManager = app.state.connection_manager

    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging(settings.log_level)

    if not settings.serverless:
        try:
            await connection_manager.ensure_connected()
        except ConnectionFailureError as exc:
            logger.critical("Failed to start server: %s", exc.context.get("cause", exc))
            raise

    logger.info("=" * 60)
    logger.info("CodeQuest API v%s", __version__)
    logger.info("Environment: %s", settings.environment)
    logger.info("Port:        %d", settings.port)
    logger.info("Frontend:    %s", settings.frontend_url)
    if not settings.enforce_origin_allowlist:
        logger.info("Origin allowlist is log-only (ENFORCE_ORIGIN_ALLOWLIST=false)")
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("CodeQuest API shutting down...")
    await connection_manager.dispose()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def build_pipeline(
    settings: Settings,
    connection_manager: ConnectionManager,
    error_normalizer: ErrorNormalizer,
    rate_gate: Optional[RateGate] = None,
) -> Pipeline:
    """The ingress stages, in order."""
    return Pipeline(
        stages=[
            connection_manager,
            SecurityHeaders(),
            OriginPolicy.from_settings(settings),
            RequestNormalizer(settings.max_body_size),
            rate_gate or RateGate.from_settings(settings),
        ],
        error_normalizer=error_normalizer,
    )


def create_app(
    settings: Optional[Settings] = None,
    connection_manager: Optional[ConnectionManager] = None,
    database: Optional[Database] = None,
    routers: Iterable[APIRouter] = (),
    rate_gate: Optional[RateGate] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings:            defaults to the environment-loaded settings
        connection_manager:  defaults to one wrapping `database`
        database:            defaults to Database.from_settings(settings)
        routers:             business routers, mounted under /api
        rate_gate:           defaults to RateGate.from_settings(settings)
    """
    settings = settings or default_settings
    database = database or Database.from_settings(settings)
    connection_manager = connection_manager or ConnectionManager(
        connect=database.connect,
        disconnect=database.dispose,
    )
    error_normalizer = ErrorNormalizer(expose_details=settings.is_development)
    pipeline = build_pipeline(settings, connection_manager, error_normalizer, rate_gate)

    # No interactive docs: the Content-Security-Policy header blocks the Swagger UI CDN assets
    app = FastAPI(
        title="CodeQuest API",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.database = database
    app.state.connection_manager = connection_manager
    app.state.error_normalizer = error_normalizer
    app.state.pipeline = pipeline
    app.state.started_at = time.monotonic()

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added = outermost: RequestID → Access Log → Ingress pipeline
    app.add_middleware(IngressMiddleware, pipeline=pipeline)
    app.add_middleware(
        RequestLoggingMiddleware,
        log_format="dev" if settings.is_development else "combined",
    )
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app, error_normalizer)
    mount_routers(app, routers)

    return app


# uvicorn expects `codequest.main:app` to be importable
app = create_app()
