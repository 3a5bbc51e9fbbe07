"""Credential realization stage.

Two variants, one wired per deployment (``Settings.realization_mode``):

``TokenizeRealizer``
    reveal -> tokenize with the processor's publishable key -> vault the
    resulting ``pm_`` reference.
``BrowserRealizer``
    reveal -> mint a handoff token -> let a headless browser type the card
    into the processor iframe of the hosted checkout page.

Both share the reveal steps and the CVV-expired handling: the vault is
cleared, the session parks in ``awaiting_cvv`` and the caller is told to
send the user to the wallet's refresh page, then retry this stage.
"""

from __future__ import annotations

import abc
import time
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from agentic_checkout.browser import BrowserCheckoutDriver, CheckoutStep
from agentic_checkout.cart import CartLedger
from agentic_checkout.classifier import ClassifiedError, classify
from agentic_checkout.clients.processor import PaymentProcessorClient
from agentic_checkout.clients.wallet import WalletClient
from agentic_checkout.credentials import RevealedCard
from agentic_checkout.errors import (
    ErrorKind,
    InvalidStateError,
    NotFoundError,
    ProcessorDeclinedError,
    TokenizationFailedError,
    TransientUpstreamError,
    UpstreamError,
    UpstreamFailureKind,
)
from agentic_checkout.handoff import HandoffTokenService
from agentic_checkout.models import (
    BrowserCheckoutResult,
    CartStatus,
    PaymentStatus,
    ProtocolStage,
    SessionState,
)
from agentic_checkout.stages.common import StageContext, report_failure
from agentic_checkout.state.sessions import SessionStore
from agentic_checkout.state.vault import CredentialVault
from agentic_checkout.streaming import (
    EVENT_CREDENTIALS_REALIZED,
    EVENT_CVV_REQUIRED,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    CheckoutEventStream,
)

logger = structlog.get_logger(__name__)


class CredentialRealizer(abc.ABC):
    """Shared reveal logic and failure handling for both variants."""

    mode = "base"

    def __init__(
        self,
        sessions: SessionStore,
        vault: CredentialVault,
        wallet: WalletClient,
        events: CheckoutEventStream | None = None,
        wallet_refresh_url: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions = sessions
        self._vault = vault
        self._wallet = wallet
        self._events = events
        self._wallet_refresh_url = wallet_refresh_url
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def _session(self, ctx: StageContext) -> SessionState:
        state = await self._sessions.get(ctx.session_id)
        if state is None:
            raise NotFoundError(f"Session {ctx.session_id} not found")
        return state

    def _mandate_id(self, state: SessionState, mandate_id: str | None) -> str:
        resolved = mandate_id or state.mandate_id
        if not resolved:
            raise InvalidStateError("No approved mandate. Create a mandate first.")
        return str(resolved)

    async def _reveal(self, ctx: StageContext, mandate_id: str) -> RevealedCard:
        """Steps 1 and 2: reveal token, then the card itself."""
        reveal_token = await self._wallet.request_reveal_token(ctx.user_id, mandate_id)
        await self._sessions.update(
            ctx.session_id,
            reveal_token_obtained=True,
            stage=ProtocolStage.REVEAL_TOKEN_OBTAINED,
        )
        logger.info("reveal_token_obtained", mandate_id=mandate_id, **ctx.log_fields())
        return await self._wallet.reveal_card(ctx.user_id, reveal_token)

    async def _cvv_expired(self, ctx: StageContext, classified: ClassifiedError) -> dict[str, Any]:
        await self._vault.clear(ctx.session_id)
        await self._sessions.update(
            ctx.session_id,
            credentials_revealed=False,
            credentials_revealed_at=None,
            stage=ProtocolStage.AWAITING_CVV,
        )
        logger.warning("cvv_expired", **ctx.log_fields())
        payload = classified.to_dict()
        if self._wallet_refresh_url:
            payload["refresh_url"] = self._wallet_refresh_url
            payload["remediation"] = (
                f"{classified.remediation} Wallet page: {self._wallet_refresh_url}"
            )
        if self._events is not None:
            await self._events.emit(
                ctx.session_id,
                EVENT_CVV_REQUIRED,
                data={"refresh_url": self._wallet_refresh_url},
                message="The user must re-enter their CVV",
            )
        return payload

    async def _failed(self, ctx: StageContext, exc: BaseException) -> dict[str, Any]:
        classified = classify(exc)
        if classified.kind is ErrorKind.CVV_EXPIRED:
            return await self._cvv_expired(ctx, classified)
        return await report_failure(
            self._sessions, self._events, ctx, "realize_credentials", exc
        )

    @abc.abstractmethod
    async def realize(self, ctx: StageContext, mandate_id: str | None = None) -> dict[str, Any]:
        """Run the variant for the session's approved mandate."""


class TokenizeRealizer(CredentialRealizer):
    """Server-side tokenization variant."""

    mode = "tokenize"

    def __init__(
        self,
        sessions: SessionStore,
        vault: CredentialVault,
        wallet: WalletClient,
        processor: PaymentProcessorClient,
        events: CheckoutEventStream | None = None,
        wallet_refresh_url: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(sessions, vault, wallet, events, wallet_refresh_url, clock)
        self._processor = processor

    async def _tokenize(self, card: RevealedCard) -> str:
        try:
            token = await self._processor.tokenize_card(card)
        except UpstreamError as exc:
            failure = exc.failure
            status = failure.status_code or 0
            if failure.kind is UpstreamFailureKind.HTTP_STATUS and 400 <= status < 500 and status not in (
                401,
                403,
                429,
            ):
                raise TokenizationFailedError(
                    "The processor could not tokenize the card",
                    details={"code": failure.code} if failure.code else None,
                ) from exc
            raise
        return await self._processor.create_payment_method(token)

    async def realize(self, ctx: StageContext, mandate_id: str | None = None) -> dict[str, Any]:
        """Reveal, tokenize and vault the card for the session's mandate."""
        try:
            state = await self._session(ctx)
            resolved = self._mandate_id(state, mandate_id)
            card = await self._reveal(ctx, resolved)
            revealed_at = self._now()
            last4 = card.last4
            reference = await self._tokenize(card)
            state = await self._session(ctx)
            await self._vault.store(
                ctx.session_id,
                reference,
                revealed_at=revealed_at,
                expires_at=self._sessions.expiry_of(state),
            )
        except Exception as exc:
            return await self._failed(ctx, exc)

        await self._sessions.update(
            ctx.session_id,
            credentials_revealed=True,
            credentials_revealed_at=revealed_at,
            stage=ProtocolStage.CREDENTIALS_REALIZED,
            error=None,
        )
        logger.info("credentials_realized", last4=last4, mode=self.mode, **ctx.log_fields())
        if self._events is not None:
            await self._events.emit(
                ctx.session_id,
                EVENT_CREDENTIALS_REALIZED,
                data={"last4": last4},
                message=f"Card ending in {last4} tokenized and ready for payment",
            )
        return {
            "success": True,
            "last4": last4,
            "message": "Card tokenized and secured. Ready for payment.",
        }


# Steps after which the hosted page may already have charged the card
_UNCONFIRMED_STEPS = frozenset({CheckoutStep.SUBMIT.value, CheckoutStep.AWAIT_RESULT.value})


class BrowserRealizer(CredentialRealizer):
    """Browser-automation variant; completes the purchase on the hosted page.

    When automation breaks after the pay button was pressed, the outcome is
    unknown.  The cart ledger is consulted first: if the hosted page already
    marked the checkout paid, the run counts as a success.  Otherwise the
    session stays in ``settling`` and the caller gets a retryable error;
    a retry is safe because the hosted charge carries the checkout's
    idempotency key.
    """

    mode = "browser"

    def __init__(
        self,
        sessions: SessionStore,
        vault: CredentialVault,
        wallet: WalletClient,
        tokens: HandoffTokenService,
        driver: BrowserCheckoutDriver,
        events: CheckoutEventStream | None = None,
        wallet_refresh_url: str = "",
        clock: Callable[[], float] = time.time,
        ledger: CartLedger | None = None,
    ) -> None:
        super().__init__(sessions, vault, wallet, events, wallet_refresh_url, clock)
        self._tokens = tokens
        self._driver = driver
        self._ledger = ledger

    def _checkout_paid(self, checkout_id: str) -> bool:
        if self._ledger is None:
            return False
        cart = self._ledger.get(checkout_id)
        return cart is not None and cart.status is CartStatus.PAID

    async def realize(self, ctx: StageContext, mandate_id: str | None = None) -> dict[str, Any]:
        """Reveal the card and complete checkout through the hosted page."""
        handed_off = False
        outcome_unknown = False
        try:
            state = await self._session(ctx)
            resolved = self._mandate_id(state, mandate_id)
            if not state.checkout_id:
                raise InvalidStateError("No checkout in progress. Check out the cart first.")
            checkout_id = state.checkout_id
            billing = await self._wallet.get_billing_details(ctx.user_id)
            token = self._tokens.mint(checkout_id)
            card = await self._reveal(ctx, resolved)
            revealed_at = self._now()
            last4 = card.last4
            await self._sessions.update(
                ctx.session_id,
                credentials_revealed=True,
                credentials_revealed_at=revealed_at,
                stage=ProtocolStage.SETTLING,
            )
            handed_off = True
            result = await self._driver.run(
                checkout_id,
                token,
                billing,
                card,
                email=ctx.user_id if "@" in ctx.user_id else None,
            )
            if not result.success:
                if result.declined:
                    raise ProcessorDeclinedError(result.error or "Payment failed")
                if result.failed_step in _UNCONFIRMED_STEPS:
                    if self._checkout_paid(checkout_id):
                        logger.warning(
                            "browser_checkout_confirmed_by_ledger",
                            checkout_id=checkout_id,
                            failed_step=result.failed_step,
                            **ctx.log_fields(),
                        )
                        result = BrowserCheckoutResult(
                            success=True, order_id=checkout_id, status="succeeded"
                        )
                    else:
                        outcome_unknown = True
                        raise TransientUpstreamError(
                            "The checkout page did not confirm the payment outcome. "
                            "Check the session state before retrying.",
                            details={"failed_step": result.failed_step, "outcome_unknown": True},
                        )
                else:
                    raise TransientUpstreamError(
                        f"Browser checkout failed during {result.failed_step}: {result.error}",
                        details={"failed_step": result.failed_step},
                    )
        except ProcessorDeclinedError as exc:
            await self._sessions.update(
                ctx.session_id,
                payment_status=PaymentStatus.FAILED,
                stage=ProtocolStage.FAILED,
                error=exc.message,
            )
            if self._events is not None:
                await self._events.emit(
                    ctx.session_id,
                    EVENT_PAYMENT_FAILED,
                    data={"error": exc.message},
                    message=exc.message,
                )
            return exc.to_dict()
        except Exception as exc:
            if handed_off and not outcome_unknown:
                await self._sessions.update(
                    ctx.session_id,
                    credentials_revealed=False,
                    credentials_revealed_at=None,
                    stage=ProtocolStage.MANDATE_APPROVED,
                )
            return await self._failed(ctx, exc)

        await self._sessions.update(
            ctx.session_id,
            order_id=result.order_id or checkout_id,
            charge_id=result.charge_id,
            cart_status=CartStatus.PAID,
            payment_status=PaymentStatus.SUCCEEDED,
            stage=ProtocolStage.COMPLETED,
            error=None,
        )
        logger.info("browser_checkout_completed", last4=last4, checkout_id=checkout_id, **ctx.log_fields())
        if self._events is not None:
            await self._events.emit(
                ctx.session_id,
                EVENT_PAYMENT_SUCCEEDED,
                data={"order_id": result.order_id, "charge_id": result.charge_id},
                message="Checkout completed on the hosted page",
            )
        return {
            "success": True,
            "last4": last4,
            "order_id": result.order_id or checkout_id,
            "charge_id": result.charge_id,
            "amount": result.amount,
            "status": result.status,
        }
