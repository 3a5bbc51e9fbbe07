"""Key-value backends for session state and the credential vault.

Every write goes through :meth:`mutate`, a single atomic read-modify-write
against one key.  Expiry is stored with the record itself, so a record that
has expired is invisible to readers and can never be removed out from under
an in-flight update by a separate sweeper.
"""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Protocol

import structlog
from redis import asyncio as aioredis
from redis.exceptions import WatchError

logger = structlog.get_logger(__name__)

Record = dict[str, Any]
# A mutation receives the current live value (or None) and returns the new
# value with its absolute expiry (epoch seconds), or None to delete the key.
Mutation = Callable[[Record | None], tuple[Record, float] | None]
Clock = Callable[[], float]


class StateBackend(Protocol):
    """Minimal atomic key-value interface."""

    async def get(self, key: str) -> Record | None: ...

    async def mutate(self, key: str, fn: Mutation) -> Record | None: ...

    async def delete(self, key: str) -> bool: ...

    async def keys(self) -> list[str]: ...


# ---------------------------------------------------------------------------
# In-memory backend (single instance)
# ---------------------------------------------------------------------------


class InMemoryBackend:
    """Process-local backend guarded by one lock.

    Values are stored as JSON strings so readers always get an independent
    copy and a write replaces the whole record at once.
    """

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> Record | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at <= now:
            del self._data[key]
            return None
        return json.loads(raw)

    def _purge_expired(self, now: float) -> int:
        expired = [k for k, (_, exp) in self._data.items() if exp <= now]
        for key in expired:
            del self._data[key]
        return len(expired)

    async def get(self, key: str) -> Record | None:
        with self._lock:
            return self._live(key, self._clock())

    async def mutate(self, key: str, fn: Mutation) -> Record | None:
        with self._lock:
            now = self._clock()
            evicted = self._purge_expired(now)
            if evicted:
                logger.debug("expired_records_purged", evicted=evicted, remaining=len(self._data))

            result = fn(self._live(key, now))
            if result is None:
                self._data.pop(key, None)
                return None
            value, expires_at = result
            self._data[key] = (json.dumps(value, default=str), expires_at)
            return json.loads(self._data[key][0])

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    async def keys(self) -> list[str]:
        with self._lock:
            now = self._clock()
            self._purge_expired(now)
            return list(self._data)


# ---------------------------------------------------------------------------
# Redis backend (multi-instance)
# ---------------------------------------------------------------------------


class RedisBackend:
    """Redis backend using WATCH/MULTI optimistic transactions.

    Records are stored as ``{"value": ..., "expires_at": ...}`` with a
    matching native ``PX`` expiry.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        namespace: str,
        clock: Clock = time.time,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, namespace: str) -> RedisBackend:
        return cls(aioredis.from_url(url, decode_responses=True), namespace)

    def _key(self, key: str) -> str:
        return f"checkout:{self._namespace}:{key}"

    def _decode(self, raw: str | None, now: float) -> Record | None:
        if raw is None:
            return None
        stored = json.loads(raw)
        if stored["expires_at"] <= now:
            return None
        return stored["value"]

    async def get(self, key: str) -> Record | None:
        raw = await self._client.get(self._key(key))
        return self._decode(raw, self._clock())

    async def mutate(self, key: str, fn: Mutation) -> Record | None:
        name = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(name)
                    now = self._clock()
                    current = self._decode(await pipe.get(name), now)
                    result = fn(current)
                    pipe.multi()
                    if result is None:
                        pipe.delete(name)
                        await pipe.execute()
                        return None
                    value, expires_at = result
                    ttl_ms = max(1, int((expires_at - now) * 1000))
                    pipe.set(
                        name,
                        json.dumps({"value": value, "expires_at": expires_at}, default=str),
                        px=ttl_ms,
                    )
                    await pipe.execute()
                    return value
                except WatchError:
                    logger.debug("redis_mutation_conflict", key=name)
                    continue

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(self._key(key)))

    async def keys(self) -> list[str]:
        prefix = self._key("")
        return [k[len(prefix):] async for k in self._client.scan_iter(match=f"{prefix}*")]

    async def close(self) -> None:
        await self._client.aclose()
