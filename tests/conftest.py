"""Shared test fixtures for the agentic checkout orchestrator."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import pytest

from agentic_checkout.cart import CartLedger
from agentic_checkout.catalog import ProductCatalog
from agentic_checkout.config import Settings
from agentic_checkout.credentials import RevealedCard, parse_reveal_payload
from agentic_checkout.handoff import HandoffTokenService
from agentic_checkout.models import BillingDetails, Charge, Mandate
from agentic_checkout.orchestrator import CheckoutOrchestrator
from agentic_checkout.stages.authorization import AuthorizationStage
from agentic_checkout.stages.common import StageContext
from agentic_checkout.stages.realization import TokenizeRealizer
from agentic_checkout.stages.settlement import SettlementStage
from agentic_checkout.state.backends import InMemoryBackend
from agentic_checkout.state.sessions import SessionStore
from agentic_checkout.state.vault import CredentialVault
from agentic_checkout.streaming import CheckoutEventStream

SESSION_ID = "sess_1"
USER_ID = "jane.doe@example.com"

CARD_PAYLOAD: dict[str, Any] = {
    "card_number": "4242424242424242",
    "card_expiry_date": "12/28",
    "card_cvv": "123",
    "card_holder": "Jane Doe",
    "last4_digits": "4242",
}


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_760_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallet:
    """Stands in for :class:`WalletClient`; ``errors`` maps method name -> exception."""

    def __init__(self) -> None:
        self.reveal_payload: dict[str, Any] = dict(CARD_PAYLOAD)
        self.errors: dict[str, BaseException] = {}
        self.mandates: list[dict[str, Any]] = []
        self.reveals = 0

    def _maybe_fail(self, name: str) -> None:
        if name in self.errors:
            raise self.errors[name]

    async def create_mandate(
        self, user_id: str, amount: Decimal, currency: str, merchant: str, summary: str
    ) -> Mandate:
        self._maybe_fail("create_mandate")
        self.mandates.append(
            {"user_id": user_id, "amount": amount, "currency": currency, "summary": summary}
        )
        return Mandate(mandate_id=f"mandate_{len(self.mandates)}", request_id="req_1")

    async def request_reveal_token(self, user_id: str, mandate_id: str) -> str:
        self._maybe_fail("request_reveal_token")
        return "rvl_secret"

    async def reveal_card(self, user_id: str, reveal_token: str) -> RevealedCard:
        self._maybe_fail("reveal_card")
        self.reveals += 1
        return parse_reveal_payload(self.reveal_payload)

    async def get_billing_details(self, user_id: str) -> BillingDetails:
        self._maybe_fail("get_billing_details")
        return BillingDetails(
            name="Jane Doe",
            address="1 Market St",
            phone="+15550100",
            zip_code="94105",
            city="San Francisco",
            state="CA",
        )

    async def close(self) -> None:
        return None


class FakeProcessor:
    """Stands in for :class:`PaymentProcessorClient` and records every charge."""

    def __init__(self) -> None:
        self.charges: list[dict[str, Any]] = []
        self.tokenized: list[str] = []
        self.charge_error: BaseException | None = None
        self.tokenize_error: BaseException | None = None
        self.charge_status = "succeeded"

    async def tokenize_card(self, card: RevealedCard) -> str:
        try:
            if self.tokenize_error is not None:
                raise self.tokenize_error
            self.tokenized.append(card.last4)
            return "tok_visa"
        finally:
            card.wipe()

    async def create_payment_method(self, token: str) -> str:
        return "pm_card_visa"

    async def create_charge(
        self,
        reference: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> Charge:
        # Yield so overlapping settlements interleave
        await asyncio.sleep(0)
        self.charges.append(
            {
                "reference": reference,
                "amount_minor": amount_minor,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "metadata": metadata or {},
            }
        )
        if self.charge_error is not None:
            raise self.charge_error
        return Charge(
            id=f"pi_{len(self.charges)}",
            status=self.charge_status,
            amount=amount_minor,
            currency=currency.lower(),
        )

    async def close(self) -> None:
        return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="testing",
        session_secret="test-secret",
        wallet_api_key="wallet-test-key",
        processor_secret_key="sk_test_123",
        processor_publishable_key="pk_test_123",
        wallet_refresh_url="http://localhost:3000/wallet",
    )


@pytest.fixture
def catalog() -> ProductCatalog:
    return ProductCatalog.from_json()


@pytest.fixture
def ledger(catalog: ProductCatalog) -> CartLedger:
    return CartLedger(catalog)


@pytest.fixture
def vault(clock: FakeClock) -> CredentialVault:
    return CredentialVault(InMemoryBackend(clock=clock), clock=clock)


@pytest.fixture
def sessions(vault: CredentialVault, clock: FakeClock) -> SessionStore:
    return SessionStore(InMemoryBackend(clock=clock), vault, clock=clock)


@pytest.fixture
def events() -> CheckoutEventStream:
    return CheckoutEventStream()


@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def ctx() -> StageContext:
    return StageContext(session_id=SESSION_ID, user_id=USER_ID)


@pytest.fixture
def orchestrator(
    settings: Settings,
    catalog: ProductCatalog,
    ledger: CartLedger,
    sessions: SessionStore,
    vault: CredentialVault,
    events: CheckoutEventStream,
    wallet: FakeWallet,
    processor: FakeProcessor,
    clock: FakeClock,
) -> CheckoutOrchestrator:
    """Orchestrator wired with the tokenize variant and fake upstreams."""
    tokens = HandoffTokenService(settings.session_secret, clock=clock)
    return CheckoutOrchestrator(
        settings=settings,
        catalog=catalog,
        ledger=ledger,
        sessions=sessions,
        vault=vault,
        tokens=tokens,
        wallet=wallet,  # type: ignore[arg-type]
        processor=processor,  # type: ignore[arg-type]
        events=events,
        authorization=AuthorizationStage(ledger, sessions, wallet, events),  # type: ignore[arg-type]
        realizer=TokenizeRealizer(
            sessions,
            vault,
            wallet,  # type: ignore[arg-type]
            processor,  # type: ignore[arg-type]
            events,
            wallet_refresh_url=settings.wallet_refresh_url,
            clock=clock,
        ),
        settlement=SettlementStage(
            ledger,
            sessions,
            vault,
            processor,  # type: ignore[arg-type]
            events,
            credential_ttl_seconds=settings.credential_ttl_seconds,
            clock=clock,
        ),
    )


async def checked_out_cart(
    orchestrator: CheckoutOrchestrator,
    ctx: StageContext,
    items: dict[str, int] | None = None,
) -> str:
    """Drive a session up to a frozen cart and return its checkout id."""
    await orchestrator.begin_session(ctx.session_id, ctx.user_id)
    cart = await orchestrator.create_cart(ctx)
    for product_id, quantity in (items or {"prod_001": 1}).items():
        await orchestrator.add_to_cart(ctx, cart["cart_id"], product_id, quantity)
    checkout = await orchestrator.checkout_cart(ctx, cart["cart_id"])
    return checkout["checkout_id"]
