"""
CodeQuest API — Pydantic Response Schemas
===========================================

What:  Pydantic models for the response bodies the ingress layer itself emits.
Why:   One definition of the error envelope shared by every failure path, and
       a typed health payload.
Who:   ErrorResponse is built by the Error Normalizer; HealthResponse by
       GET /api/health.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    What:  Uniform error body for every non-2xx response the API produces.

    Example:
        {
            "error": "rate_limit_exceeded",
            "message": "Too many requests. Please wait 42 seconds before retrying.",
            "details": {"retry_after": 42}
        }
    """
    error: str = Field(description="Machine-readable error kind")
    message: str = Field(description="Human-readable, safe-to-display description")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional context (stack trace only in development)",
    )


class HealthResponse(BaseModel):
    """Service health check response."""
    status: str = Field(description="Overall status: healthy, degraded")
    version: str = Field(description="API version")
    environment: str = Field(description="Runtime mode, e.g. development or production")
    database: str = Field(description="Backing store connection: connected, disconnected")
    uptime_seconds: float = Field(description="Seconds since the app instance was created")
