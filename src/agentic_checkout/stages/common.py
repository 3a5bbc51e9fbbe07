"""Shared plumbing for the protocol stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from agentic_checkout.classifier import ClassifiedError, classify
from agentic_checkout.state.sessions import SessionStore
from agentic_checkout.streaming import EVENT_ERROR, CheckoutEventStream
from common.logging import redact_email

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StageContext:
    """Who is driving the stage: one conversation of one end user."""

    session_id: str
    user_id: str

    def log_fields(self) -> dict[str, str]:
        return {"session_id": self.session_id, "user": redact_email(self.user_id)}


async def report_failure(
    sessions: SessionStore,
    events: CheckoutEventStream | None,
    ctx: StageContext,
    operation: str,
    exc: BaseException,
    **failed_fields: Any,
) -> dict[str, Any]:
    """Classify ``exc``, record it when non-retryable and build the error payload.

    ``failed_fields`` are merged into the session together with the error
    message, but only on non-retryable paths.
    """
    classified: ClassifiedError = classify(exc)
    logger.warning(
        "stage_failed",
        operation=operation,
        kind=classified.kind.value,
        retryable=classified.retryable,
        **ctx.log_fields(),
    )
    if classified.record_in_session:
        await sessions.update(ctx.session_id, error=classified.message, **failed_fields)
    if events is not None:
        await events.emit(
            ctx.session_id,
            EVENT_ERROR,
            data={"operation": operation, **classified.to_dict()},
            message=classified.message,
        )
    return classified.to_dict()
