"""FastAPI application for the agentic checkout orchestrator.

Exposes REST endpoints for:
- Catalog browsing
- Agent tool discovery and execution (rate limited per user)
- Session state inspection, SSE progress streaming and deletion
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from agentic_checkout.config import Settings
from agentic_checkout.orchestrator import CheckoutOrchestrator
from agentic_checkout.ratelimit import SlidingWindowRateLimiter
from agentic_checkout.tools import CheckoutToolHandler, list_tools
from common import ErrorResponse, HealthResponse

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ToolExecuteRequest(BaseModel):
    """Tool execution request from the agent loop."""

    session_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    orchestrator: CheckoutOrchestrator | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings()
    orchestrator = orchestrator or CheckoutOrchestrator.from_settings(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        await orchestrator.close()
        logger.info("orchestrator_closed")

    app = FastAPI(
        title="Agentic Checkout",
        description=(
            "Orchestrates agent-driven purchases: cart ledger, wallet mandates, "
            "credential realization and settlement with a payment processor."
        ),
        version=settings.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    handler = CheckoutToolHandler(orchestrator)

    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.rate_limiter = limiter

    async def _owned_state(session_id: str, user_id: str | None) -> dict[str, Any]:
        if not user_id:
            raise HTTPException(status_code=401, detail="X-User-Id header is required")
        state = await orchestrator.sessions.get(session_id)
        # Same response for missing and foreign sessions
        if state is None or state.user_id != user_id:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return state.public_view()

    # -------------------------------------------------------------------
    # Health and catalog
    # -------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            service=settings.service_name,
            version=settings.service_version,
            environment=settings.environment,
            realization_mode=settings.realization_mode,
            session_backend=settings.session_backend,
        )

    @app.get("/api/v1/products", tags=["catalog"])
    async def list_products() -> dict[str, Any]:
        """List the merchant catalog."""
        products = orchestrator.catalog.list_all()
        return {
            "products": [p.model_dump(mode="json") for p in products],
            "total": len(products),
        }

    # -------------------------------------------------------------------
    # Agent tools
    # -------------------------------------------------------------------

    @app.post("/api/v1/agent/tools", tags=["agent"])
    async def agent_list_tools() -> dict[str, Any]:
        """List the tools available to the agent loop."""
        tools = list_tools(settings.realization_mode)
        return {"tools": tools, "total": len(tools)}

    @app.post("/api/v1/agent/tools/{tool_name}/execute", tags=["agent"])
    async def agent_execute_tool(tool_name: str, req: ToolExecuteRequest) -> Any:
        """Execute a tool for one conversation."""
        limit = limiter.hit(req.user_id)
        if not limit.allowed:
            retry_after = max(1, int(limit.retry_after + 0.999))
            return JSONResponse(
                status_code=429,
                headers={"Retry-After": str(retry_after)},
                content=ErrorResponse(
                    error="RATE_LIMITED",
                    detail="Too many requests. Please wait before trying again.",
                    status_code=429,
                    retryable=True,
                ).model_dump(),
            )

        result = await handler.execute(tool_name, req.arguments, req.session_id, req.user_id)
        return result.model_dump(mode="json")

    # -------------------------------------------------------------------
    # Session state
    # -------------------------------------------------------------------

    @app.get("/api/v1/agent/state/{session_id}", tags=["state"])
    async def get_session_state(
        session_id: str,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        """Current protocol state of a conversation."""
        return await _owned_state(session_id, x_user_id)

    @app.get("/api/v1/agent/state/{session_id}/stream", tags=["state"])
    async def stream_session_state(
        session_id: str,
        x_user_id: str | None = Header(default=None),
    ) -> EventSourceResponse:
        """SSE stream of checkout progress events."""
        await _owned_state(session_id, x_user_id)

        async def event_generator():  # type: ignore[no-untyped-def]
            async for event in orchestrator.events.subscribe(session_id):
                yield {
                    "event": event.event_type,
                    "data": json.dumps(event.model_dump(mode="json"), default=str),
                }

        return EventSourceResponse(event_generator())

    @app.delete("/api/v1/agent/state/{session_id}", tags=["state"])
    async def delete_session_state(
        session_id: str,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        """End a conversation; clears its state and payment reference."""
        await _owned_state(session_id, x_user_id)
        return await orchestrator.end_session(session_id)

    # -------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_exception", error_type=type(exc).__name__, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                detail="An unexpected error occurred",
                status_code=500,
            ).model_dump(),
        )

    return app
