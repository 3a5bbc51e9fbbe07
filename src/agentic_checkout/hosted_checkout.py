"""Hosted checkout API.

Backend of the checkout page driven by the browser-automation variant.  The
page loads the frozen cart, lets the processor iframe tokenize the card
client-side, and posts only the resulting ``pm_`` reference back here.

Both routes are gated by the ``checkout-token`` handoff cookie.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import Cookie, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError, field_validator

from agentic_checkout.cart import CartLedger
from agentic_checkout.classifier import classify
from agentic_checkout.errors import CheckoutError, ErrorKind, UpstreamError
from agentic_checkout.handoff import CHECKOUT_TOKEN_COOKIE, HandoffTokenService
from agentic_checkout.models import CartStatus
from agentic_checkout.stages.settlement import SettlementStage

logger = structlog.get_logger(__name__)

SESSION_EXPIRED = "CHECKOUT_SESSION_EXPIRED"

_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_STATE: 400,
    ErrorKind.STALE_PRODUCT: 400,
    ErrorKind.INSUFFICIENT_STOCK: 409,
    ErrorKind.PROCESSOR_DECLINED: 402,
    ErrorKind.CONFIGURATION_ERROR: 500,
    ErrorKind.RATE_LIMITED: 503,
    ErrorKind.TRANSIENT_UPSTREAM_ERROR: 503,
}


class PayRequest(BaseModel):
    """Body of the pay route; only a processor payment-method reference."""

    payment_method_id: str = Field(min_length=1)

    @field_validator("payment_method_id")
    @classmethod
    def _must_be_reference(cls, value: str) -> str:
        if not value.startswith("pm_"):
            raise ValueError("Must be a processor PaymentMethod ID (pm_...)")
        return value


class HostedCheckoutApp:
    """Cookie-gated checkout sub-application.

    Parameters
    ----------
    ledger:
        Cart ledger holding the frozen carts.
    tokens:
        Verifies the handoff cookie against the checkout id in the path.
    settlement:
        Performs the charge with catalog-derived totals.
    """

    def __init__(
        self,
        ledger: CartLedger,
        tokens: HandoffTokenService,
        settlement: SettlementStage,
    ) -> None:
        self.ledger = ledger
        self.tokens = tokens
        self.settlement = settlement
        self.app = self._build_app()

    def _authorized(self, token: str | None, checkout_id: str) -> bool:
        try:
            return self.tokens.verify(token or "", checkout_id)
        except CheckoutError:
            logger.error("checkout_token_verification_unavailable", checkout_id=checkout_id)
            return False

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="Hosted Checkout", docs_url=None, redoc_url=None)

        @app.get("/{checkout_id}")
        async def get_checkout(
            checkout_id: str,
            checkout_token: str | None = Cookie(default=None, alias=CHECKOUT_TOKEN_COOKIE),
        ) -> Any:
            if not self._authorized(checkout_token, checkout_id):
                return JSONResponse(status_code=401, content={"error": SESSION_EXPIRED})

            cart = self.ledger.get(checkout_id)
            if cart is None:
                return JSONResponse(status_code=404, content={"error": "Cart not found"})
            if cart.status is not CartStatus.CHECKED_OUT:
                return JSONResponse(
                    status_code=400,
                    content={
                        "error": f"Cart status is '{cart.status.value}'; it must be checked out first"
                    },
                )
            return cart.model_dump(mode="json", exclude={"user_id"})

        @app.post("/{checkout_id}/pay")
        async def pay_checkout(
            checkout_id: str,
            body: dict[str, Any],
            checkout_token: str | None = Cookie(default=None, alias=CHECKOUT_TOKEN_COOKIE),
        ) -> Any:
            if not self._authorized(checkout_token, checkout_id):
                return JSONResponse(status_code=401, content={"error": SESSION_EXPIRED})

            try:
                req = PayRequest.model_validate(body)
            except ValidationError as exc:
                message = ", ".join(err["msg"] for err in exc.errors())
                return JSONResponse(status_code=400, content={"error": message})

            cart = self.ledger.get(checkout_id)
            user_id = cart.user_id if cart else ""
            try:
                return await self.settlement.charge_checkout(
                    checkout_id, req.payment_method_id, user_id
                )
            except (CheckoutError, UpstreamError) as exc:
                classified = classify(exc)
                status = _STATUS_BY_KIND.get(classified.kind, 400 if isinstance(exc, CheckoutError) else 502)
                logger.warning(
                    "hosted_payment_failed",
                    checkout_id=checkout_id,
                    kind=classified.kind.value,
                    status=status,
                )
                return JSONResponse(status_code=status, content=classified.to_dict())

        return app
