"""Authorization stage: request a wallet mandate for a frozen cart."""

from __future__ import annotations

from typing import Any

import structlog

from agentic_checkout.cart import CartLedger
from agentic_checkout.clients.wallet import WalletClient
from agentic_checkout.errors import InvalidStateError
from agentic_checkout.models import CartStatus, MandateStatus, ProtocolStage
from agentic_checkout.stages.common import StageContext, report_failure
from agentic_checkout.state.sessions import SessionStore
from agentic_checkout.streaming import EVENT_MANDATE_APPROVED, CheckoutEventStream

logger = structlog.get_logger(__name__)


class AuthorizationStage:
    """Creates a spending mandate for exactly the catalog-derived total."""

    def __init__(
        self,
        ledger: CartLedger,
        sessions: SessionStore,
        wallet: WalletClient,
        events: CheckoutEventStream | None = None,
        merchant_name: str = "ByteShop",
    ) -> None:
        self._ledger = ledger
        self._sessions = sessions
        self._wallet = wallet
        self._events = events
        self._merchant_name = merchant_name

    async def create_mandate(self, ctx: StageContext, checkout_id: str) -> dict[str, Any]:
        """Request wallet approval for checkout ``checkout_id``.

        The amount is recomputed from the catalog, never taken from the
        caller.  Non-retryable failures mark the mandate as failed; retryable
        ones leave the session untouched.
        """
        try:
            cart = self._ledger.get_owned(checkout_id, ctx.user_id)
            if cart.status is not CartStatus.CHECKED_OUT:
                raise InvalidStateError(
                    f"Cart status is '{cart.status.value}', expected 'checked_out'",
                    details={"checkout_id": checkout_id},
                )
            amount = self._ledger.server_total(cart)
            mandate = await self._wallet.create_mandate(
                user_id=ctx.user_id,
                amount=amount,
                currency=cart.currency,
                merchant=self._merchant_name,
                summary=cart.summary(),
            )
        except Exception as exc:
            return await report_failure(
                self._sessions,
                self._events,
                ctx,
                "create_mandate",
                exc,
                mandate_status=MandateStatus.FAILED,
            )

        await self._sessions.update(
            ctx.session_id,
            mandate_id=mandate.mandate_id,
            mandate_status=MandateStatus.APPROVED,
            stage=ProtocolStage.MANDATE_APPROVED,
            error=None,
        )
        logger.info(
            "mandate_approved",
            mandate_id=mandate.mandate_id,
            amount=str(amount),
            **ctx.log_fields(),
        )
        if self._events is not None:
            await self._events.emit(
                ctx.session_id,
                EVENT_MANDATE_APPROVED,
                data={"mandate_id": mandate.mandate_id, "amount": str(amount)},
                message=f"Mandate approved for {amount} {cart.currency}",
            )
        return {
            "mandate_id": mandate.mandate_id,
            "status": MandateStatus.APPROVED.value,
            "request_id": mandate.request_id,
            "amount": str(amount),
            "currency": cart.currency,
        }
