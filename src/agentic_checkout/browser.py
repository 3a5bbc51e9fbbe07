"""Headless-browser checkout driver.

Drives the hosted checkout page so that card data travels browser ->
processor iframe -> processor, never through this service's own HTTP
requests.  The flow is an explicit sequence of steps::

    navigate -> fill_billing -> fill_card -> submit -> await_result

Whatever step fails, the browser context is closed in a single ``finally``
and the failing step is reported in the result.
"""

from __future__ import annotations

import enum
from typing import Any
from urllib.parse import urlsplit

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from agentic_checkout.credentials import RevealedCard
from agentic_checkout.handoff import CHECKOUT_TOKEN_COOKIE
from agentic_checkout.models import BillingDetails, BrowserCheckoutResult

logger = structlog.get_logger(__name__)

# Hosted page selectors
SEL_ERROR = '[data-testid="checkout-error"]'
SEL_SUCCESS = '[data-testid="checkout-success"]'
SEL_SUBMIT = 'button[type="submit"]'
SEL_CARD_IFRAME = 'iframe[name^="__privateStripeFrame"]'
SEL_CARD_NUMBER = '[name="cardnumber"]'
SEL_CARD_EXPIRY = '[name="exp-date"]'
SEL_CARD_CVC = '[name="cvc"]'

_BILLING_FIELDS = (
    ("fullName", "name"),
    ("phone", "phone"),
    ("address", "address"),
    ("zip", "zip_code"),
    ("city", "city"),
    ("state", "state"),
)

# Label prefixes rendered on the success panel
_RESULT_LABELS = {
    "order_id": "Order ID:",
    "amount": "Amount:",
    "charge_id": "Stripe PI:",
}


class CheckoutStep(str, enum.Enum):
    NAVIGATE = "navigate"
    FILL_BILLING = "fill_billing"
    FILL_CARD = "fill_card"
    SUBMIT = "submit"
    AWAIT_RESULT = "await_result"


class CheckoutPageError(Exception):
    """The hosted page rendered its error marker."""


class BrowserCheckoutDriver:
    """Runs one checkout per fresh browser context.

    Parameters
    ----------
    base_url:
        Origin serving the hosted checkout page (``{base_url}/checkout/{id}``).
    headless:
        Launch Chromium headless.
    timeout_seconds:
        Navigation and result wait timeout.
    browser:
        Pre-launched browser; when omitted Chromium is launched lazily.
    """

    def __init__(
        self,
        base_url: str,
        headless: bool = True,
        timeout_seconds: float = 30.0,
        browser: Browser | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headless = headless
        self._timeout_ms = int(timeout_seconds * 1000)
        self._browser = browser
        self._playwright: Playwright | None = None

    async def _get_browser(self) -> Browser:
        if self._browser is None or not self._browser.is_connected():
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            logger.info("browser_launching", headless=self._headless)
            self._browser = await self._playwright.chromium.launch(headless=self._headless)
        return self._browser

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    def _token_cookie(self, handoff_token: str) -> dict[str, Any]:
        parts = urlsplit(self._base_url)
        return {
            "name": CHECKOUT_TOKEN_COOKIE,
            "value": handoff_token,
            "domain": parts.hostname or "localhost",
            "path": "/",
            "httpOnly": True,
            "secure": parts.scheme == "https",
            "sameSite": "Strict",
        }

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _navigate(self, page: Page, checkout_id: str) -> None:
        url = f"{self._base_url}/checkout/{checkout_id}"
        logger.info("browser_navigating", url=url)
        await page.goto(url, wait_until="networkidle", timeout=self._timeout_ms)
        error = page.locator(SEL_ERROR)
        if await error.is_visible():
            raise CheckoutPageError(
                f"Checkout page error: {(await error.text_content() or '').strip()}"
            )

    async def _fill_billing(self, page: Page, billing: BillingDetails, email: str | None) -> None:
        for field_name, attr in _BILLING_FIELDS:
            value = getattr(billing, attr)
            if value:
                await page.locator(f'input[name="{field_name}"]').fill(value)
        if email:
            await page.locator('input[name="email"]').fill(email)

    async def _fill_card(self, page: Page, card: RevealedCard) -> None:
        frame = page.frame_locator(SEL_CARD_IFRAME)
        await frame.locator(SEL_CARD_NUMBER).fill(card.number)
        await frame.locator(SEL_CARD_EXPIRY).fill(card.expiry_mmyy())
        await frame.locator(SEL_CARD_CVC).fill(card.cvc)

    async def _submit(self, page: Page) -> None:
        await page.locator(SEL_SUBMIT).click()

    async def _await_result(self, page: Page) -> BrowserCheckoutResult:
        success = page.locator(SEL_SUCCESS)
        error = page.locator(SEL_ERROR)
        await success.or_(error).first.wait_for(state="visible", timeout=self._timeout_ms)

        if await error.is_visible():
            text = (await error.text_content() or "").strip()
            return BrowserCheckoutResult(
                success=False,
                error=text or "Payment failed",
                failed_step=CheckoutStep.AWAIT_RESULT.value,
                declined=True,
            )

        values: dict[str, str | None] = {}
        for key, label in _RESULT_LABELS.items():
            text = await page.locator(f"text={label}").first.text_content()
            values[key] = text.replace(label, "").strip() if text else None
        return BrowserCheckoutResult(success=True, status="succeeded", **values)

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    async def run(
        self,
        checkout_id: str,
        handoff_token: str,
        billing: BillingDetails,
        card: RevealedCard,
        email: str | None = None,
    ) -> BrowserCheckoutResult:
        """Complete the hosted checkout for ``checkout_id``.

        Never raises for page or automation failures; the returned result
        names the step that failed.  ``card`` is wiped before returning.
        """
        step = CheckoutStep.NAVIGATE
        context: BrowserContext | None = None
        try:
            browser = await self._get_browser()
            context = await browser.new_context()
            await context.add_cookies([self._token_cookie(handoff_token)])
            page = await context.new_page()

            await self._navigate(page, checkout_id)
            step = CheckoutStep.FILL_BILLING
            await self._fill_billing(page, billing, email)
            step = CheckoutStep.FILL_CARD
            await self._fill_card(page, card)
            card.wipe()
            step = CheckoutStep.SUBMIT
            await self._submit(page)
            step = CheckoutStep.AWAIT_RESULT
            result = await self._await_result(page)
        except (PlaywrightError, CheckoutPageError) as exc:
            # Errors raised while typing card fields may echo their values
            message = (
                "Could not enter card details on the checkout page"
                if step is CheckoutStep.FILL_CARD
                else str(exc).splitlines()[0] if str(exc) else type(exc).__name__
            )
            logger.error("browser_checkout_failed", checkout_id=checkout_id, step=step.value)
            return BrowserCheckoutResult(success=False, error=message, failed_step=step.value)
        finally:
            card.wipe()
            if context is not None:
                await context.close()
                logger.debug("browser_context_closed", checkout_id=checkout_id)

        logger.info(
            "browser_checkout_finished",
            checkout_id=checkout_id,
            success=result.success,
        )
        return result
