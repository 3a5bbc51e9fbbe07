"""Payment processor adapter built on the Stripe SDK.

Tokenization uses the publishable key so raw card data only ever travels to
the client-credential endpoint.  Charges use the secret key and always carry
an idempotency key.  SDK exceptions never leave this module; they are
normalized into :class:`~agentic_checkout.errors.UpstreamError`.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import stripe
import structlog

from agentic_checkout.credentials import RevealedCard
from agentic_checkout.errors import UpstreamError, UpstreamFailure, UpstreamFailureKind
from agentic_checkout.models import Charge

logger = structlog.get_logger(__name__)


def _failure_from_stripe(exc: stripe.StripeError) -> UpstreamFailure:
    """Map an SDK exception onto the tagged upstream failure."""
    if isinstance(exc, stripe.APIConnectionError):
        return UpstreamFailure(
            service=PaymentProcessorClient.service,
            kind=UpstreamFailureKind.CONNECTION,
            message="processor is unreachable",
        )

    error_body = (exc.json_body or {}).get("error") or {}
    status = exc.http_status
    if status is None and isinstance(exc, stripe.CardError):
        status = 402
    return UpstreamFailure(
        service=PaymentProcessorClient.service,
        kind=UpstreamFailureKind.HTTP_STATUS,
        message=exc.user_message or "Payment processor error",
        status_code=status,
        code=exc.code or error_body.get("code"),
        decline_code=error_body.get("decline_code"),
    )


class PaymentProcessorClient:
    """Async wrapper around the synchronous Stripe resource API.

    Parameters
    ----------
    secret_key:
        Server-side key used for payment intents.
    publishable_key:
        Client-side key used for card tokenization.
    max_network_retries:
        Passed through to every request; ``0`` leaves retries to the caller.
    """

    service = "processor"

    def __init__(
        self,
        secret_key: str,
        publishable_key: str,
        max_network_retries: int = 0,
    ) -> None:
        self._secret_key = secret_key
        self._publishable_key = publishable_key
        self._max_network_retries = max_network_retries
        self._stripe = stripe

    async def close(self) -> None:
        return None

    async def _call(self, fn: Callable[..., Any], **params: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, **params)
        except stripe.StripeError as exc:
            failure = _failure_from_stripe(exc)
            logger.warning(
                "upstream_request_failed",
                service=self.service,
                kind=failure.kind.value,
                status_code=failure.status_code,
                code=failure.code,
            )
            raise UpstreamError(failure) from exc

    def _require(self, data: Any, *fields: str) -> None:
        missing = [f for f in fields if not data.get(f)]
        if missing:
            raise UpstreamError(
                UpstreamFailure(
                    service=self.service,
                    kind=UpstreamFailureKind.MALFORMED_RESPONSE,
                    message=f"{self.service} response missing {', '.join(missing)}",
                )
            )

    async def tokenize_card(self, card: RevealedCard) -> str:
        """Exchange raw card data for a single-use ``tok_`` token.

        The card is wiped once the request has been sent, whether or not it
        succeeded.
        """
        try:
            token = await self._call(
                self._stripe.Token.create,
                api_key=self._publishable_key,
                card={
                    "number": card.number,
                    "exp_month": card.exp_month,
                    "exp_year": card.exp_year,
                    "cvc": card.cvc,
                },
            )
        finally:
            card.wipe()
        self._require(token, "id")
        return str(token["id"])

    async def create_payment_method(self, token: str) -> str:
        """Turn a card token into a reusable ``pm_`` reference."""
        payment_method = await self._call(
            self._stripe.PaymentMethod.create,
            api_key=self._publishable_key,
            type="card",
            card={"token": token},
        )
        self._require(payment_method, "id")
        logger.info("payment_method_created", payment_method_id=payment_method["id"])
        return str(payment_method["id"])

    async def create_charge(
        self,
        reference: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> Charge:
        """Create and confirm a payment intent against ``reference``.

        Parameters
        ----------
        reference:
            Opaque ``pm_`` payment-method reference.
        amount_minor:
            Amount in minor units (cents).
        currency:
            ISO currency code.
        idempotency_key:
            Deterministic key; replays return the original charge.
        metadata:
            Free-form string metadata attached to the charge.
        """
        intent = await self._call(
            self._stripe.PaymentIntent.create,
            api_key=self._secret_key,
            idempotency_key=idempotency_key,
            max_network_retries=self._max_network_retries,
            amount=amount_minor,
            currency=currency.lower(),
            payment_method=reference,
            confirm=True,
            automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            metadata=metadata or {},
        )
        self._require(intent, "id", "status")
        charge = Charge(
            id=str(intent["id"]),
            status=str(intent["status"]),
            amount=int(intent.get("amount", amount_minor)),
            currency=str(intent.get("currency", currency.lower())),
        )
        logger.info(
            "charge_created",
            charge_id=charge.id,
            status=charge.status,
            amount=charge.amount,
            idempotency_key=idempotency_key,
        )
        return charge
