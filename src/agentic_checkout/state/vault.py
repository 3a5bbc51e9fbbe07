"""Credential reference vault.

Holds, per session, only the processor-issued payment-method reference and
the time the underlying card was revealed.  Raw card data is never accepted.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone

import structlog

from agentic_checkout.models import VaultEntry
from agentic_checkout.state.backends import Clock, Record, StateBackend

logger = structlog.get_logger(__name__)

# Processor reference prefixes (payment methods and single-use tokens)
_REFERENCE_PREFIXES = ("pm_", "tok_")


class CredentialVault:
    """Session id -> opaque payment-method reference.

    Parameters
    ----------
    backend:
        Atomic key-value backend.
    max_ttl_seconds:
        Hard ceiling on how long an entry may live.
    """

    def __init__(
        self,
        backend: StateBackend,
        max_ttl_seconds: float = 60 * 60,
        clock: Clock = time.time,
    ) -> None:
        self._backend = backend
        self._max_ttl = max_ttl_seconds
        self._clock = clock

    async def store(
        self,
        session_id: str,
        reference: str,
        revealed_at: datetime | None = None,
        expires_at: float | None = None,
    ) -> VaultEntry:
        """Store (or silently overwrite) the reference for a session.

        ``expires_at`` (epoch seconds) lets the caller bind the entry to its
        session's lifetime; it is always capped at ``max_ttl_seconds``.
        """
        if not reference.startswith(_REFERENCE_PREFIXES):
            raise ValueError("Vault only accepts processor-issued payment references")

        now = self._clock()
        entry = VaultEntry(
            reference=reference,
            revealed_at=revealed_at or datetime.fromtimestamp(now, tz=timezone.utc),
        )
        ceiling = now + self._max_ttl
        expiry = min(expires_at, ceiling) if expires_at is not None else ceiling
        value = {**entry.model_dump(mode="json"), "expires_at": expiry}

        await self._backend.mutate(session_id, lambda _current: (value, expiry))
        logger.info("payment_reference_stored", session_id=session_id, reference=reference)
        return entry

    async def get(self, session_id: str) -> VaultEntry | None:
        raw = await self._backend.get(session_id)
        return VaultEntry.model_validate(raw) if raw else None

    async def clear(self, session_id: str) -> None:
        if await self._backend.delete(session_id):
            logger.info("payment_reference_cleared", session_id=session_id)

    async def cap_expiry(self, session_id: str, expires_at: float) -> None:
        """Shorten an existing entry's lifetime so it cannot outlive its session."""

        def _cap(current: Record | None) -> tuple[Record, float] | None:
            if current is None:
                return None
            capped = min(current.get("expires_at", expires_at), expires_at)
            return {**current, "expires_at": capped}, capped

        await self._backend.mutate(session_id, _cap)
