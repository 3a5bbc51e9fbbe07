"""Shared Pydantic response models used across services."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response, including which backends are wired."""

    status: str = "healthy"
    service: str
    version: str
    environment: str
    realization_mode: str | None = None
    session_backend: str | None = None


class ErrorResponse(BaseModel):
    """Error body for HTTP-level failures (rate limiting, unhandled errors).

    ``retryable`` mirrors the flag carried by orchestrator error payloads so
    agent loops can treat both the same way.
    """

    error: str
    detail: str | None = None
    status_code: int = 500
    retryable: bool = False
