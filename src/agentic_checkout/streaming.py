"""SSE event bus for checkout progress.

Stages publish protocol milestones here; the ``/stream`` endpoint consumes
them via ``async for`` iteration.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import structlog

from agentic_checkout.models import CheckoutEvent, utcnow

logger = structlog.get_logger(__name__)

EVENT_SESSION_STARTED = "session_started"
EVENT_CART_UPDATED = "cart_updated"
EVENT_CHECKED_OUT = "checked_out"
EVENT_MANDATE_APPROVED = "mandate_approved"
EVENT_CREDENTIALS_REALIZED = "credentials_realized"
EVENT_CVV_REQUIRED = "cvv_required"
EVENT_PAYMENT_SUCCEEDED = "payment_succeeded"
EVENT_PAYMENT_FAILED = "payment_failed"
EVENT_SESSION_ENDED = "session_ended"
EVENT_ERROR = "error"

# Subscribers stop iterating after one of these
TERMINAL_EVENTS = frozenset({EVENT_PAYMENT_SUCCEEDED, EVENT_PAYMENT_FAILED, EVENT_SESSION_ENDED})


class CheckoutEventStream:
    """In-memory pub/sub of :class:`CheckoutEvent` per session.

    Every subscriber gets its own bounded queue; late joiners are replayed
    the session's recent history first.
    """

    def __init__(self, max_queue_size: int = 256, max_history: int = 100) -> None:
        self._queues: dict[str, list[asyncio.Queue[CheckoutEvent | None]]] = {}
        self._history: dict[str, list[CheckoutEvent]] = {}
        self._max_queue_size = max_queue_size
        self._max_history = max_history

    async def emit(
        self,
        session_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        message: str = "",
    ) -> CheckoutEvent:
        """Push an event to all subscribers of *session_id*."""
        event = CheckoutEvent(
            event_type=event_type,
            session_id=session_id,
            data=data or {},
            message=message,
            timestamp=utcnow(),
        )

        history = self._history.setdefault(session_id, [])
        history.append(event)
        del history[: -self._max_history]

        queues = self._queues.get(session_id, [])
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("event_queue_full", session_id=session_id, event_type=event_type)

        logger.debug(
            "event_emitted",
            session_id=session_id,
            event_type=event_type,
            subscribers=len(queues),
        )
        return event

    async def subscribe(self, session_id: str) -> AsyncIterator[CheckoutEvent]:
        """Yield events for *session_id* until a terminal event or :meth:`close`."""
        queue: asyncio.Queue[CheckoutEvent | None] = asyncio.Queue(maxsize=self._max_queue_size)
        self._queues.setdefault(session_id, []).append(queue)

        try:
            for past_event in self._history.get(session_id, []):
                yield past_event
                if past_event.event_type in TERMINAL_EVENTS:
                    return

            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
                if event.event_type in TERMINAL_EVENTS:
                    break
        finally:
            session_queues = self._queues.get(session_id, [])
            if queue in session_queues:
                session_queues.remove(queue)

    def close(self, session_id: str) -> None:
        """Signal all subscribers of *session_id* to stop iterating."""
        for queue in self._queues.get(session_id, []):
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.warning("event_queue_full", session_id=session_id, event_type="close")
        self._queues.pop(session_id, None)

    def get_history(self, session_id: str) -> list[CheckoutEvent]:
        return list(self._history.get(session_id, []))

    def clear(self, session_id: str) -> None:
        """Drop all state associated with a session."""
        self.close(session_id)
        self._history.pop(session_id, None)
