"""Checkout orchestrator.

Single entry point used by the agent tool surface.  Every operation returns
either a success payload or ``{"error", "message", "retryable", ...}``; no
exception crosses this boundary.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable

import httpx
import structlog
from playwright.async_api import Browser

from agentic_checkout.browser import BrowserCheckoutDriver
from agentic_checkout.cart import CartLedger
from agentic_checkout.catalog import ProductCatalog
from agentic_checkout.clients.processor import PaymentProcessorClient
from agentic_checkout.clients.wallet import WalletClient
from agentic_checkout.config import Settings
from agentic_checkout.errors import InvalidStateError, NotFoundError
from agentic_checkout.handoff import HandoffTokenService
from agentic_checkout.models import Cart, CartStatus, PaymentStatus, ProtocolStage
from agentic_checkout.stages.authorization import AuthorizationStage
from agentic_checkout.stages.common import StageContext, report_failure
from agentic_checkout.stages.realization import (
    BrowserRealizer,
    CredentialRealizer,
    TokenizeRealizer,
)
from agentic_checkout.stages.settlement import SettlementStage
from agentic_checkout.state.backends import InMemoryBackend, RedisBackend, StateBackend
from agentic_checkout.state.sessions import SessionStore
from agentic_checkout.state.vault import CredentialVault
from agentic_checkout.streaming import (
    EVENT_CART_UPDATED,
    EVENT_CHECKED_OUT,
    EVENT_SESSION_ENDED,
    EVENT_SESSION_STARTED,
    CheckoutEventStream,
)
from common.logging import redact_email

logger = structlog.get_logger(__name__)


def _cart_view(cart: Cart) -> dict[str, Any]:
    return {
        "cart_id": cart.id,
        "status": cart.status.value,
        "items": [item.model_dump(mode="json") for item in cart.items],
        "total": str(cart.total),
        "currency": cart.currency,
    }


class CheckoutOrchestrator:
    """Wires catalog, ledger, stores, clients and stages together."""

    def __init__(
        self,
        settings: Settings,
        catalog: ProductCatalog,
        ledger: CartLedger,
        sessions: SessionStore,
        vault: CredentialVault,
        tokens: HandoffTokenService,
        wallet: WalletClient,
        processor: PaymentProcessorClient,
        events: CheckoutEventStream,
        authorization: AuthorizationStage,
        realizer: CredentialRealizer,
        settlement: SettlementStage,
        backends: list[StateBackend] | None = None,
        driver: BrowserCheckoutDriver | None = None,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.ledger = ledger
        self.sessions = sessions
        self.vault = vault
        self.tokens = tokens
        self.wallet = wallet
        self.processor = processor
        self.events = events
        self.authorization = authorization
        self.realizer = realizer
        self.settlement = settlement
        self._backends = backends or []
        self._driver = driver

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        catalog: ProductCatalog | None = None,
        wallet_transport: httpx.AsyncBaseTransport | None = None,
        browser: Browser | None = None,
        clock: Callable[[], float] = time.time,
    ) -> CheckoutOrchestrator:
        """Build a fully wired orchestrator from configuration.

        Exactly one realization variant is wired, chosen by
        ``settings.realization_mode``.
        """
        catalog = catalog or ProductCatalog.from_json()
        ledger = CartLedger(catalog, currency=settings.currency)

        session_backend: StateBackend
        vault_backend: StateBackend
        if settings.session_backend == "redis":
            session_backend = RedisBackend.from_url(settings.redis_url, "sessions")
            vault_backend = RedisBackend.from_url(settings.redis_url, "vault")
        else:
            session_backend = InMemoryBackend(clock=clock)
            vault_backend = InMemoryBackend(clock=clock)

        vault = CredentialVault(
            vault_backend,
            max_ttl_seconds=settings.abandoned_session_ttl_seconds,
            clock=clock,
        )
        sessions = SessionStore(
            session_backend,
            vault,
            completed_ttl_seconds=settings.completed_session_ttl_seconds,
            abandoned_ttl_seconds=settings.abandoned_session_ttl_seconds,
            clock=clock,
        )
        tokens = HandoffTokenService(
            settings.session_secret,
            ttl_seconds=settings.handoff_token_ttl_seconds,
            clock=clock,
        )
        wallet = WalletClient(
            settings.wallet_api_url,
            settings.wallet_api_key,
            mode=settings.wallet_mode,
            timeout=settings.upstream_timeout,
            transport=wallet_transport,
        )
        processor = PaymentProcessorClient(
            settings.processor_secret_key,
            settings.processor_publishable_key,
        )
        events = CheckoutEventStream()

        authorization = AuthorizationStage(
            ledger, sessions, wallet, events, merchant_name=settings.merchant_name
        )
        settlement = SettlementStage(
            ledger,
            sessions,
            vault,
            processor,
            events,
            credential_ttl_seconds=settings.credential_ttl_seconds,
            claim_seconds=settings.settlement_claim_seconds,
            clock=clock,
        )

        driver: BrowserCheckoutDriver | None = None
        realizer: CredentialRealizer
        if settings.realization_mode == "browser":
            driver = BrowserCheckoutDriver(
                settings.checkout_base_url,
                headless=settings.browser_headless,
                timeout_seconds=settings.browser_timeout_seconds,
                browser=browser,
            )
            realizer = BrowserRealizer(
                sessions,
                vault,
                wallet,
                tokens,
                driver,
                events,
                wallet_refresh_url=settings.wallet_refresh_url,
                clock=clock,
                ledger=ledger,
            )
        else:
            realizer = TokenizeRealizer(
                sessions,
                vault,
                wallet,
                processor,
                events,
                wallet_refresh_url=settings.wallet_refresh_url,
                clock=clock,
            )

        logger.info(
            "orchestrator_configured",
            realization_mode=settings.realization_mode,
            session_backend=settings.session_backend,
        )
        return cls(
            settings=settings,
            catalog=catalog,
            ledger=ledger,
            sessions=sessions,
            vault=vault,
            tokens=tokens,
            wallet=wallet,
            processor=processor,
            events=events,
            authorization=authorization,
            realizer=realizer,
            settlement=settlement,
            backends=[session_backend, vault_backend],
            driver=driver,
        )

    async def close(self) -> None:
        await self.wallet.close()
        await self.processor.close()
        if self._driver is not None:
            await self._driver.close()
        for backend in self._backends:
            if isinstance(backend, RedisBackend):
                await backend.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _guard(
        self,
        ctx: StageContext,
        operation: str,
        fn: Callable[[], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        try:
            return await fn()
        except Exception as exc:
            return await report_failure(self.sessions, self.events, ctx, operation, exc)

    def _owned_cart(self, ctx: StageContext, cart_id: str) -> Cart:
        return self.ledger.get_owned(cart_id, ctx.user_id)

    async def _cart_changed(self, ctx: StageContext, cart: Cart, message: str) -> dict[str, Any]:
        await self.sessions.update(
            ctx.session_id,
            cart_id=cart.id,
            cart_status=cart.status,
            cart_total=cart.total,
            stage=ProtocolStage.CART_ACTIVE,
        )
        view = _cart_view(cart)
        await self.events.emit(ctx.session_id, EVENT_CART_UPDATED, data=view, message=message)
        return view

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def begin_session(self, session_id: str, user_id: str) -> dict[str, Any]:
        """Get or create the session, resetting it after a terminal payment."""
        ctx = StageContext(session_id=session_id, user_id=user_id)
        existing = await self.sessions.get(session_id)
        if existing is not None and existing.user_id and existing.user_id != user_id:
            # Reported without touching the other user's session
            logger.warning("session_owner_mismatch", **ctx.log_fields())
            return NotFoundError(f"Session {session_id} not found").to_dict()

        async def _begin() -> dict[str, Any]:
            if existing is not None and existing.is_terminal:
                self.events.clear(session_id)
            state = await self.sessions.get_or_create(session_id, user_id)
            if existing is None or existing.is_terminal:
                await self.events.emit(session_id, EVENT_SESSION_STARTED, message="Session started")
                logger.info("session_started", session_id=session_id, user=redact_email(user_id))
            return state.public_view()

        return await self._guard(ctx, "begin_session", _begin)

    async def end_session(self, session_id: str) -> dict[str, Any]:
        deleted = await self.sessions.delete(session_id)
        if deleted:
            await self.events.emit(session_id, EVENT_SESSION_ENDED, message="Session ended")
        self.events.clear(session_id)
        return {"session_id": session_id, "deleted": deleted}

    async def get_state(self, session_id: str) -> dict[str, Any]:
        state = await self.sessions.get(session_id)
        if state is None:
            return NotFoundError(f"Session {session_id} not found").to_dict()
        return state.public_view()

    async def get_payment_method_reference(self, session_id: str) -> dict[str, Any]:
        """Observability hook: only ever the opaque reference, never card data."""
        entry = await self.vault.get(session_id)
        return {"session_id": session_id, "reference": entry.reference if entry else None}

    # ------------------------------------------------------------------
    # Merchant operations
    # ------------------------------------------------------------------

    async def browse_products(self, ctx: StageContext) -> dict[str, Any]:
        async def _browse() -> dict[str, Any]:
            products = self.catalog.list_all()
            return {
                "products": [p.model_dump(mode="json") for p in products],
                "count": len(products),
            }

        return await self._guard(ctx, "browse_products", _browse)

    async def create_cart(self, ctx: StageContext) -> dict[str, Any]:
        async def _create() -> dict[str, Any]:
            cart = self.ledger.create(ctx.user_id)
            return await self._cart_changed(ctx, cart, "Cart created")

        return await self._guard(ctx, "create_cart", _create)

    async def add_to_cart(
        self, ctx: StageContext, cart_id: str, product_id: str, quantity: int = 1
    ) -> dict[str, Any]:
        async def _add() -> dict[str, Any]:
            self._owned_cart(ctx, cart_id)
            cart = self.ledger.add_item(cart_id, product_id, quantity)
            return await self._cart_changed(ctx, cart, f"Added {quantity}x {product_id}")

        return await self._guard(ctx, "add_to_cart", _add)

    async def remove_from_cart(
        self, ctx: StageContext, cart_id: str, product_id: str
    ) -> dict[str, Any]:
        async def _remove() -> dict[str, Any]:
            self._owned_cart(ctx, cart_id)
            cart = self.ledger.remove_item(cart_id, product_id)
            return await self._cart_changed(ctx, cart, f"Removed {product_id}")

        return await self._guard(ctx, "remove_from_cart", _remove)

    async def reduce_cart_item(
        self, ctx: StageContext, cart_id: str, product_id: str, amount: int = 1
    ) -> dict[str, Any]:
        async def _reduce() -> dict[str, Any]:
            self._owned_cart(ctx, cart_id)
            cart = self.ledger.reduce_item(cart_id, product_id, amount)
            return await self._cart_changed(ctx, cart, f"Reduced {product_id} by {amount}")

        return await self._guard(ctx, "reduce_cart_item", _reduce)

    async def checkout_cart(self, ctx: StageContext, cart_id: str) -> dict[str, Any]:
        """Freeze the cart; its id becomes the checkout id."""

        async def _checkout() -> dict[str, Any]:
            self._owned_cart(ctx, cart_id)
            cart = self.ledger.checkout(cart_id)
            await self.sessions.update(
                ctx.session_id,
                cart_id=cart.id,
                checkout_id=cart.id,
                cart_status=cart.status,
                cart_total=cart.total,
                stage=ProtocolStage.CHECKED_OUT,
            )
            view = {**_cart_view(cart), "checkout_id": cart.id}
            await self.events.emit(
                ctx.session_id,
                EVENT_CHECKED_OUT,
                data=view,
                message=f"Checked out for {cart.total} {cart.currency}",
            )
            return view

        return await self._guard(ctx, "checkout_cart", _checkout)

    # ------------------------------------------------------------------
    # Payment protocol
    # ------------------------------------------------------------------

    async def create_mandate(self, ctx: StageContext, checkout_id: str) -> dict[str, Any]:
        return await self.authorization.create_mandate(ctx, checkout_id)

    async def realize_credentials(
        self, ctx: StageContext, mandate_id: str | None = None
    ) -> dict[str, Any]:
        return await self.realizer.realize(ctx, mandate_id)

    async def execute_payment(self, ctx: StageContext, checkout_id: str) -> dict[str, Any]:
        if self.settings.realization_mode == "tokenize":
            return await self.settlement.settle(ctx, checkout_id)

        # The hosted page already charged the card during realization.
        async def _browser_result() -> dict[str, Any]:
            state = await self.sessions.get(ctx.session_id)
            if (
                state is not None
                and state.checkout_id == checkout_id
                and state.payment_status is PaymentStatus.SUCCEEDED
            ):
                return {
                    "order_id": state.order_id,
                    "charge_id": state.charge_id,
                    "status": PaymentStatus.SUCCEEDED.value,
                    "cart_status": CartStatus.PAID.value,
                }
            raise InvalidStateError(
                "Payment is completed by the hosted checkout during credential realization"
            )

        return await self._guard(ctx, "execute_payment", _browser_result)
