"""Settlement stage: charge the stored payment reference.

The total is recomputed from the catalog one last time, and every charge
carries the deterministic idempotency key ``pay_<checkout_id>`` so a caller
retry after a timeout cannot create a second charge.  Overlapping calls for
the same session are additionally fenced by an atomic ``settling`` claim.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

import structlog

from agentic_checkout.cart import CartLedger
from agentic_checkout.classifier import classify
from agentic_checkout.clients.processor import PaymentProcessorClient
from agentic_checkout.errors import (
    CheckoutError,
    CredentialsExpiredError,
    ErrorKind,
    InvalidStateError,
    NoPaymentMethodError,
    NotFoundError,
    ProcessorDeclinedError,
)
from agentic_checkout.models import (
    Cart,
    CartStatus,
    Charge,
    PaymentStatus,
    ProtocolStage,
    SessionState,
    to_minor_units,
)
from agentic_checkout.stages.common import StageContext, report_failure
from agentic_checkout.state.sessions import SessionStore
from agentic_checkout.state.vault import CredentialVault
from agentic_checkout.streaming import (
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    CheckoutEventStream,
)
from common.logging import redact_email

logger = structlog.get_logger(__name__)

# Processor statuses that mean the money moved (or will without user action)
_SETTLED_STATUSES = frozenset({"succeeded", "processing"})


def idempotency_key_for(checkout_id: str) -> str:
    return f"pay_{checkout_id}"


class SettlementStage:
    """Charges a checked-out cart with the session's vaulted reference.

    Parameters
    ----------
    credential_ttl_seconds:
        How long after the card reveal the stored reference may be charged.
    claim_seconds:
        After this long a ``settling`` claim is considered abandoned and
        may be taken over by a new attempt.
    """

    def __init__(
        self,
        ledger: CartLedger,
        sessions: SessionStore,
        vault: CredentialVault,
        processor: PaymentProcessorClient,
        events: CheckoutEventStream | None = None,
        credential_ttl_seconds: float = 55 * 60,
        claim_seconds: float = 2 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._sessions = sessions
        self._vault = vault
        self._processor = processor
        self._events = events
        self._credential_ttl = credential_ttl_seconds
        self._claim_seconds = claim_seconds
        self._clock = clock

    def _checked_out_cart(self, checkout_id: str, user_id: str) -> Cart:
        cart = self._ledger.get_owned(checkout_id, user_id)
        if cart.status is not CartStatus.CHECKED_OUT:
            raise InvalidStateError(
                f"Cart status is '{cart.status.value}', expected 'checked_out'",
                details={"checkout_id": checkout_id},
            )
        return cart

    async def _charge(
        self, cart: Cart, reference: str, amount: Decimal, user_id: str
    ) -> Charge:
        charge = await self._processor.create_charge(
            reference=reference,
            amount_minor=to_minor_units(amount),
            currency=cart.currency,
            idempotency_key=idempotency_key_for(cart.id),
            metadata={
                "checkout_id": cart.id,
                "cart_id": cart.id,
                "user_id": redact_email(user_id),
            },
        )
        if charge.status not in _SETTLED_STATUSES:
            raise ProcessorDeclinedError(
                f"Payment was not completed (status: {charge.status})",
                details={"charge_id": charge.id},
            )
        return charge

    def _mark_paid(self, checkout_id: str, charge: Charge) -> bool:
        """Mark the cart paid; ``False`` when stock no longer covers it."""
        try:
            self._ledger.mark_paid(checkout_id)
        except CheckoutError as exc:
            logger.error(
                "settlement_reconciliation_required",
                checkout_id=checkout_id,
                charge_id=charge.id,
                kind=exc.kind.value,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    async def _check_credentials(self, ctx: StageContext, state: SessionState) -> str:
        entry = await self._vault.get(ctx.session_id)
        revealed_at = entry.revealed_at if entry else state.credentials_revealed_at

        if revealed_at is not None:
            elapsed = self._clock() - revealed_at.timestamp()
            if elapsed > self._credential_ttl:
                await self._vault.clear(ctx.session_id)
                await self._sessions.update(
                    ctx.session_id,
                    credentials_revealed=False,
                    credentials_revealed_at=None,
                )
                logger.warning(
                    "credential_ttl_exceeded",
                    elapsed_minutes=round(elapsed / 60),
                    **ctx.log_fields(),
                )
                raise CredentialsExpiredError(
                    "Credentials expired. Realize credentials again before retrying payment.",
                    remediation="Call the credential realization step again for the approved mandate.",
                )

        if entry is None:
            raise NoPaymentMethodError(
                "No payment method found. Realize credentials first."
            )
        return entry.reference

    async def _claim(self, ctx: StageContext, checkout_id: str) -> None:
        now = self._clock()

        def _take(state: SessionState) -> SessionState:
            if state.stage is ProtocolStage.SETTLING and state.settling_since is not None:
                if now - state.settling_since.timestamp() < self._claim_seconds:
                    raise InvalidStateError(
                        "A payment for this checkout is already in progress",
                        retryable=True,
                    )
            state.stage = ProtocolStage.SETTLING
            state.settling_since = datetime.fromtimestamp(now, tz=timezone.utc)
            state.checkout_id = checkout_id
            return state

        if await self._sessions.mutate(ctx.session_id, _take) is None:
            raise NotFoundError(f"Session {ctx.session_id} not found")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def settle(self, ctx: StageContext, checkout_id: str) -> dict[str, Any]:
        """Charge checkout ``checkout_id`` for the session in ``ctx``.

        Preconditions, in order: credentials still within their validity
        window, a vaulted reference, a ``checked_out`` cart.
        """
        try:
            state = await self._sessions.get(ctx.session_id)
            if state is None:
                raise NotFoundError(f"Session {ctx.session_id} not found")
            reference = await self._check_credentials(ctx, state)
            cart = self._checked_out_cart(checkout_id, ctx.user_id)
            amount = self._ledger.server_total(cart)
            await self._claim(ctx, checkout_id)
        except Exception as exc:
            return await report_failure(self._sessions, self._events, ctx, "execute_payment", exc)

        try:
            charge = await self._charge(cart, reference, amount, ctx.user_id)
        except Exception as exc:
            return await self._charge_failed(ctx, checkout_id, exc)

        reconciled = self._mark_paid(checkout_id, charge)
        await self._vault.clear(ctx.session_id)
        await self._sessions.update(
            ctx.session_id,
            order_id=cart.id,
            charge_id=charge.id,
            cart_status=CartStatus.PAID if reconciled else CartStatus.CHECKED_OUT,
            payment_status=PaymentStatus.SUCCEEDED,
            stage=ProtocolStage.COMPLETED,
            settling_since=None,
            error=None if reconciled else "Payment captured; order requires stock reconciliation",
        )
        logger.info(
            "payment_succeeded",
            charge_id=charge.id,
            amount=str(amount),
            checkout_id=checkout_id,
            **ctx.log_fields(),
        )
        if self._events is not None:
            await self._events.emit(
                ctx.session_id,
                EVENT_PAYMENT_SUCCEEDED,
                data={"order_id": cart.id, "charge_id": charge.id, "amount": str(amount)},
                message=f"Payment of {amount} {cart.currency} succeeded",
            )

        result: dict[str, Any] = {
            "order_id": cart.id,
            "charge_id": charge.id,
            "amount": str(amount),
            "amount_minor": charge.amount,
            "currency": cart.currency,
            "status": charge.status,
        }
        if not reconciled:
            result["reconciliation_required"] = True
        return result

    async def _charge_failed(
        self, ctx: StageContext, checkout_id: str, exc: BaseException
    ) -> dict[str, Any]:
        classified = classify(exc)
        if classified.kind is ErrorKind.PROCESSOR_DECLINED:
            await self._sessions.update(
                ctx.session_id,
                payment_status=PaymentStatus.FAILED,
                stage=ProtocolStage.FAILED,
                settling_since=None,
                error=classified.message,
            )
            logger.warning("payment_declined", checkout_id=checkout_id, **ctx.log_fields())
            if self._events is not None:
                await self._events.emit(
                    ctx.session_id,
                    EVENT_PAYMENT_FAILED,
                    data={"checkout_id": checkout_id, "error": classified.message},
                    message=classified.message,
                )
            return classified.to_dict()

        # Release the claim so the caller can retry the same checkout.
        await self._sessions.update(
            ctx.session_id,
            stage=ProtocolStage.CREDENTIALS_REALIZED,
            settling_since=None,
        )
        return await report_failure(self._sessions, self._events, ctx, "execute_payment", exc)

    async def charge_checkout(
        self, checkout_id: str, reference: str, user_id: str
    ) -> dict[str, Any]:
        """Charge a checkout from the hosted page, outside any agent session.

        Raises :class:`CheckoutError` or ``UpstreamError``; the HTTP route
        maps them to responses.
        """
        cart = self._checked_out_cart(checkout_id, user_id)
        amount = self._ledger.server_total(cart)
        charge = await self._charge(cart, reference, amount, user_id)
        reconciled = self._mark_paid(checkout_id, charge)
        logger.info(
            "hosted_payment_succeeded",
            charge_id=charge.id,
            amount=str(amount),
            checkout_id=checkout_id,
        )
        result: dict[str, Any] = {
            "order_id": cart.id,
            "charge_id": charge.id,
            "amount": str(amount),
            "currency": cart.currency,
            "status": charge.status,
        }
        if not reconciled:
            result["reconciliation_required"] = True
        return result
