"""Session state store.

Tracks orchestration progress per conversation so stages can be gated and
dashboards can follow along.  Two TTL policies apply, both stored with the
record:

* completed sessions expire ``completed_ttl_seconds`` after completion;
* abandoned sessions expire ``abandoned_ttl_seconds`` after creation.

A session whose payment reached a terminal status is not resumable: the
next :meth:`SessionStore.get_or_create` for the same id starts over.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from agentic_checkout.models import SessionState
from agentic_checkout.state.backends import Clock, Record, StateBackend
from agentic_checkout.state.vault import CredentialVault

logger = structlog.get_logger(__name__)


class SessionStore:
    """Keyed, TTL-bound store of :class:`SessionState` records."""

    def __init__(
        self,
        backend: StateBackend,
        vault: CredentialVault,
        completed_ttl_seconds: float = 30 * 60,
        abandoned_ttl_seconds: float = 60 * 60,
        clock: Clock = time.time,
    ) -> None:
        self._backend = backend
        self._vault = vault
        self._completed_ttl = completed_ttl_seconds
        self._abandoned_ttl = abandoned_ttl_seconds
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def expiry_of(self, state: SessionState) -> float:
        """Absolute expiry (epoch seconds) implied by a record's timestamps."""
        if state.completed_at is not None:
            return state.completed_at.timestamp() + self._completed_ttl
        return state.created_at.timestamp() + self._abandoned_ttl

    def _fresh(self, session_id: str, user_id: str) -> SessionState:
        now = self._now()
        return SessionState(session_id=session_id, user_id=user_id, created_at=now, updated_at=now)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, session_id: str) -> SessionState | None:
        raw = await self._backend.get(session_id)
        return SessionState.model_validate(raw) if raw else None

    async def list_sessions(self) -> list[SessionState]:
        sessions: list[SessionState] = []
        for key in await self._backend.keys():
            state = await self.get(key)
            if state is not None:
                sessions.append(state)
        return sessions

    async def size(self) -> int:
        return len(await self._backend.keys())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def get_or_create(self, session_id: str, user_id: str) -> SessionState:
        """Return the live session, creating (or resetting) it when needed.

        A session whose payment status is terminal is replaced by a fresh
        record with the same id, and its vault entry is cleared.
        """
        reset_from: str | None = None

        def _fn(current: Record | None) -> tuple[Record, float]:
            nonlocal reset_from
            if current is not None:
                state = SessionState.model_validate(current)
                if not state.is_terminal:
                    return current, self.expiry_of(state)
                reset_from = state.payment_status.value if state.payment_status else None
            fresh = self._fresh(session_id, user_id)
            return fresh.model_dump(mode="json"), self.expiry_of(fresh)

        record = await self._backend.mutate(session_id, _fn)
        if reset_from is not None:
            await self._vault.clear(session_id)
            logger.info("terminal_session_reset", session_id=session_id, status=reset_from)
        return SessionState.model_validate(record)

    async def update(self, session_id: str, **fields: Any) -> SessionState | None:
        """Merge ``fields`` into a session.

        The first time the payment status becomes terminal, ``completed_at``
        is stamped, which switches the record to the shorter completed TTL.
        Returns ``None`` if the session does not exist.
        """
        unknown = set(fields) - set(SessionState.model_fields)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")

        completed = False

        def _fn(current: Record | None) -> tuple[Record, float] | None:
            nonlocal completed
            if current is None:
                return None
            now = self._now()
            state = SessionState.model_validate({**current, **fields, "updated_at": now})
            if state.is_terminal and state.completed_at is None:
                state.completed_at = now
                completed = True
            return state.model_dump(mode="json"), self.expiry_of(state)

        record = await self._backend.mutate(session_id, _fn)
        if record is None:
            logger.warning("session_update_missing", session_id=session_id)
            return None

        state = SessionState.model_validate(record)
        if completed:
            await self._vault.cap_expiry(session_id, self.expiry_of(state))
            logger.info(
                "session_completed",
                session_id=session_id,
                payment_status=state.payment_status.value if state.payment_status else None,
            )
        return state

    async def mutate(
        self,
        session_id: str,
        fn: Callable[[SessionState], SessionState],
    ) -> SessionState | None:
        """Atomically transform a session; ``fn`` may raise to abort."""

        def _fn(current: Record | None) -> tuple[Record, float] | None:
            if current is None:
                return None
            state = fn(SessionState.model_validate(current))
            state.updated_at = self._now()
            return state.model_dump(mode="json"), self.expiry_of(state)

        record = await self._backend.mutate(session_id, _fn)
        return SessionState.model_validate(record) if record else None

    async def delete(self, session_id: str) -> bool:
        deleted = await self._backend.delete(session_id)
        await self._vault.clear(session_id)
        if deleted:
            logger.info("session_deleted", session_id=session_id)
        return deleted
