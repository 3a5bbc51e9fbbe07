"""Tests for the headless-browser checkout driver using fake Playwright objects."""

from __future__ import annotations

from typing import Any

import pytest
from playwright.async_api import Error as PlaywrightError

from agentic_checkout.browser import (
    SEL_CARD_CVC,
    SEL_CARD_EXPIRY,
    SEL_CARD_IFRAME,
    SEL_CARD_NUMBER,
    SEL_ERROR,
    SEL_SUBMIT,
    SEL_SUCCESS,
    BrowserCheckoutDriver,
)
from agentic_checkout.credentials import parse_reveal_payload
from agentic_checkout.handoff import CHECKOUT_TOKEN_COOKIE
from agentic_checkout.models import BillingDetails
from conftest import CARD_PAYLOAD


class FakeLocator:
    def __init__(self, page: FakePage, selector: str) -> None:
        self._page = page
        self.selector = selector

    @property
    def first(self) -> FakeLocator:
        return self

    def or_(self, other: FakeLocator) -> FakeLocator:
        return FakeLocator(self._page, f"{self.selector} | {other.selector}")

    async def fill(self, value: str) -> None:
        if self.selector in self._page.fail_on:
            raise PlaywrightError(f"fill failed for {self.selector} with value {value}")
        self._page.filled[self.selector] = value

    async def click(self) -> None:
        self._page.clicked.append(self.selector)
        if self.selector == SEL_SUBMIT:
            self._page.visible.add(self._page.outcome)

    async def is_visible(self) -> bool:
        return self.selector in self._page.visible

    async def text_content(self) -> str | None:
        return self._page.texts.get(self.selector)

    async def wait_for(self, state: str = "visible", timeout: float | None = None) -> None:
        if not self._page.visible & {SEL_SUCCESS, SEL_ERROR}:
            raise PlaywrightError("Timeout 30000ms exceeded.")


class FakeFrame:
    def __init__(self, page: FakePage, selector: str) -> None:
        self._page = page
        self._selector = selector

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self._page, f"{self._selector} >> {selector}")


class FakePage:
    def __init__(self) -> None:
        self.visible: set[str] = set()
        self.texts: dict[str, str] = {
            "text=Order ID:": "Order ID: order_123",
            "text=Amount:": "Amount: $89.99",
            "text=Stripe PI:": "Stripe PI: pi_123",
        }
        self.filled: dict[str, str] = {}
        self.clicked: list[str] = []
        self.fail_on: set[str] = set()
        self.outcome = SEL_SUCCESS
        self.visited: list[str] = []

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.visited.append(url)

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    def frame_locator(self, selector: str) -> FakeFrame:
        return FakeFrame(self, selector)


class FakeContext:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.cookies: list[dict[str, Any]] = []
        self.closed = False

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        self.cookies.extend(cookies)

    async def new_page(self) -> FakePage:
        return self.page

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, page: FakePage) -> None:
        self.context = FakeContext(page)
        self.closed = False

    def is_connected(self) -> bool:
        return True

    async def new_context(self) -> FakeContext:
        return self.context

    async def close(self) -> None:
        self.closed = True


BILLING = BillingDetails(
    name="Jane Doe",
    address="1 Market St",
    phone="+15550100",
    zip_code="94105",
    city="San Francisco",
    state="CA",
)


@pytest.fixture
def page() -> FakePage:
    return FakePage()


@pytest.fixture
def browser(page: FakePage) -> FakeBrowser:
    return FakeBrowser(page)


@pytest.fixture
def driver(browser: FakeBrowser) -> BrowserCheckoutDriver:
    return BrowserCheckoutDriver("https://shop.example.com", browser=browser)  # type: ignore[arg-type]


def _card_field(selector: str) -> str:
    return f"{SEL_CARD_IFRAME} >> {selector}"


class TestBrowserCheckoutDriver:
    async def test_successful_checkout(self, driver, browser, page):
        card = parse_reveal_payload(dict(CARD_PAYLOAD))

        result = await driver.run("checkout_1", "tok.en.sig", BILLING, card, email="jane@example.com")

        assert result.success is True
        assert result.order_id == "order_123"
        assert result.charge_id == "pi_123"
        assert result.amount == "$89.99"
        assert page.visited == ["https://shop.example.com/checkout/checkout_1"]
        assert page.filled['input[name="fullName"]'] == "Jane Doe"
        assert page.filled['input[name="email"]'] == "jane@example.com"
        assert page.filled[_card_field(SEL_CARD_NUMBER)] == "4242424242424242"
        assert page.filled[_card_field(SEL_CARD_EXPIRY)] == "1228"
        assert page.filled[_card_field(SEL_CARD_CVC)] == "123"
        assert page.clicked == [SEL_SUBMIT]
        assert browser.context.closed is True
        assert card.number == ""

    async def test_handoff_cookie_is_scoped_to_checkout_origin(self, driver, browser):
        card = parse_reveal_payload(dict(CARD_PAYLOAD))

        await driver.run("checkout_1", "tok.en.sig", BILLING, card)

        cookie = browser.context.cookies[0]
        assert cookie["name"] == CHECKOUT_TOKEN_COOKIE
        assert cookie["value"] == "tok.en.sig"
        assert cookie["domain"] == "shop.example.com"
        assert cookie["httpOnly"] is True
        assert cookie["secure"] is True
        assert cookie["sameSite"] == "Strict"

    async def test_error_marker_on_load_fails_navigation(self, driver, browser, page):
        page.visible.add(SEL_ERROR)
        page.texts[SEL_ERROR] = "Checkout session expired"
        card = parse_reveal_payload(dict(CARD_PAYLOAD))

        result = await driver.run("checkout_1", "tok.en.sig", BILLING, card)

        assert result.success is False
        assert result.failed_step == "navigate"
        assert "Checkout session expired" in result.error
        assert page.filled == {}
        assert browser.context.closed is True
        assert card.number == ""

    async def test_card_fill_failure_hides_field_values(self, driver, browser, page):
        page.fail_on.add(_card_field(SEL_CARD_NUMBER))
        card = parse_reveal_payload(dict(CARD_PAYLOAD))

        result = await driver.run("checkout_1", "tok.en.sig", BILLING, card)

        assert result.failed_step == "fill_card"
        assert "4242" not in result.error
        assert page.clicked == []
        assert browser.context.closed is True
        assert card.cvc == ""

    async def test_decline_reported_from_result_panel(self, driver, browser, page):
        page.outcome = SEL_ERROR
        page.texts[SEL_ERROR] = "Your card was declined."
        card = parse_reveal_payload(dict(CARD_PAYLOAD))

        result = await driver.run("checkout_1", "tok.en.sig", BILLING, card)

        assert result.success is False
        assert result.failed_step == "await_result"
        assert result.error == "Your card was declined."
        assert result.declined is True
        assert browser.context.closed is True

    async def test_result_timeout(self, driver, browser, page):
        page.outcome = "nothing"
        card = parse_reveal_payload(dict(CARD_PAYLOAD))

        result = await driver.run("checkout_1", "tok.en.sig", BILLING, card)

        assert result.success is False
        assert result.failed_step == "await_result"
        assert "Timeout" in result.error
        assert result.declined is False
        assert browser.context.closed is True

    async def test_close_shuts_injected_browser(self, driver, browser):
        await driver.close()
        assert browser.closed is True
