"""Entry point for the agentic checkout service.

Builds the main FastAPI application, mounts the hosted checkout API,
configures logging, and starts the uvicorn server.
"""

from __future__ import annotations

import structlog
import uvicorn
from fastapi import FastAPI

from agentic_checkout.api import create_app
from agentic_checkout.config import Settings, get_settings
from agentic_checkout.hosted_checkout import HostedCheckoutApp
from agentic_checkout.orchestrator import CheckoutOrchestrator
from common import setup_logging

logger = structlog.get_logger(__name__)

HOSTED_CHECKOUT_PATH = "/api/checkout"


def build_app(
    settings: Settings | None = None,
    orchestrator: CheckoutOrchestrator | None = None,
) -> FastAPI:
    """Construct the application with the hosted checkout API mounted.

    The hosted checkout shares the orchestrator's ledger, token service and
    settlement stage, so carts frozen by the agent are the ones paid on the
    page.
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)

    orchestrator = orchestrator or CheckoutOrchestrator.from_settings(settings)
    app = create_app(settings, orchestrator)

    hosted = HostedCheckoutApp(orchestrator.ledger, orchestrator.tokens, orchestrator.settlement)
    app.mount(HOSTED_CHECKOUT_PATH, hosted.app, name="hosted-checkout")

    if not settings.session_secret:
        logger.warning("session_secret_missing", impact="hosted checkout tokens cannot be minted")

    logger.info(
        "application_ready",
        service=settings.service_name,
        version=settings.service_version,
        realization_mode=settings.realization_mode,
        session_backend=settings.session_backend,
        hosted_checkout=HOSTED_CHECKOUT_PATH,
    )
    return app


def main() -> None:
    """Launch the agentic checkout server."""
    settings = get_settings()
    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
