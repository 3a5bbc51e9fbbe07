"""Tests for the SSE event bus and the tool rate limiter."""

import asyncio

from agentic_checkout.ratelimit import SlidingWindowRateLimiter
from agentic_checkout.streaming import (
    EVENT_CART_UPDATED,
    EVENT_PAYMENT_SUCCEEDED,
    CheckoutEventStream,
)
from conftest import FakeClock


class TestCheckoutEventStream:
    async def test_late_subscriber_gets_history_until_terminal_event(self):
        stream = CheckoutEventStream()
        await stream.emit("s1", EVENT_CART_UPDATED, data={"total": "89.99"})
        await stream.emit("s1", EVENT_PAYMENT_SUCCEEDED)

        received = [event.event_type async for event in stream.subscribe("s1")]

        assert received == [EVENT_CART_UPDATED, EVENT_PAYMENT_SUCCEEDED]

    async def test_live_events_and_close(self):
        stream = CheckoutEventStream()
        received: list[str] = []

        async def consume() -> None:
            async for event in stream.subscribe("s1"):
                received.append(event.event_type)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await stream.emit("s1", EVENT_CART_UPDATED)
        await asyncio.sleep(0)
        stream.close("s1")
        await asyncio.wait_for(task, timeout=1)

        assert received == [EVENT_CART_UPDATED]

    async def test_history_is_bounded_and_per_session(self):
        stream = CheckoutEventStream(max_history=3)
        for n in range(5):
            await stream.emit("s1", EVENT_CART_UPDATED, data={"n": n})
        await stream.emit("s2", EVENT_CART_UPDATED)

        history = stream.get_history("s1")
        assert [e.data["n"] for e in history] == [2, 3, 4]
        assert len(stream.get_history("s2")) == 1

        stream.clear("s1")
        assert stream.get_history("s1") == []


class TestSlidingWindowRateLimiter:
    def test_limits_within_window(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)

        assert limiter.hit("u").allowed is True
        assert limiter.hit("u").remaining == 0
        blocked = limiter.hit("u")
        assert blocked.allowed is False
        assert blocked.retry_after == 60

        clock.advance(61)
        assert limiter.hit("u").allowed is True

    def test_keys_are_independent(self):
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
        assert limiter.hit("a").allowed is True
        assert limiter.hit("b").allowed is True
        assert limiter.hit("a").allowed is False

        limiter.reset("a")
        assert limiter.hit("a").allowed is True
