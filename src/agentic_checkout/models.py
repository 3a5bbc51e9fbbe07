"""Pydantic models for the agentic checkout orchestrator.

Covers catalog products, carts, per-conversation session state, vault
entries, upstream responses, SSE events and tool definitions.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


MINOR_UNIT = Decimal("0.01")


def round_money(amount: Decimal) -> Decimal:
    """Round an amount to the currency minor unit."""
    return amount.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount to integer minor units (cents)."""
    return int(round_money(amount) * 100)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class Product(BaseModel):
    """A catalog product; the only trusted source of prices."""

    id: str
    name: str
    description: str = ""
    price: Decimal = Field(gt=0)
    currency: str = "USD"
    stock: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


class CartStatus(str, enum.Enum):
    """Lifecycle of a cart: active -> checked_out -> paid."""

    ACTIVE = "active"
    CHECKED_OUT = "checked_out"
    PAID = "paid"


class CartItem(BaseModel):
    """A line item with the unit price snapshot taken from the catalog."""

    product_id: str
    product_name: str
    quantity: int = Field(gt=0)
    unit_price: Decimal


class Cart(BaseModel):
    """A shopping cart.  ``id`` doubles as the checkout id once frozen."""

    id: str
    user_id: str
    items: list[CartItem] = Field(default_factory=list)
    status: CartStatus = CartStatus.ACTIVE
    total: Decimal = Decimal("0.00")
    currency: str = "USD"

    def summary(self) -> str:
        """Human-readable product summary used in mandate requests."""
        return ", ".join(
            f"{item.quantity}x {item.product_name}" if item.quantity > 1 else item.product_name
            for item in self.items
        )


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED})


class MandateStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    FAILED = "failed"


class ProtocolStage(str, enum.Enum):
    """Where a conversation is in the checkout protocol."""

    IDLE = "idle"
    CART_ACTIVE = "cart_active"
    CHECKED_OUT = "checked_out"
    MANDATE_APPROVED = "mandate_approved"
    REVEAL_TOKEN_OBTAINED = "reveal_token_obtained"
    AWAITING_CVV = "awaiting_cvv"
    CREDENTIALS_REALIZED = "credentials_realized"
    SETTLING = "settling"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionState(BaseModel):
    """Orchestration progress for one conversation.

    Only processor references ever appear here; raw card data never does.
    """

    session_id: str
    user_id: str | None = None

    # Merchant state
    cart_id: str | None = None
    cart_status: CartStatus | None = None
    cart_total: Decimal | None = None
    checkout_id: str | None = None

    # Wallet staged authorization
    mandate_id: str | None = None
    mandate_status: MandateStatus | None = None
    stage: ProtocolStage = ProtocolStage.IDLE
    reveal_token_obtained: bool = False
    credentials_revealed: bool = False
    credentials_revealed_at: datetime | None = None

    # Settlement
    order_id: str | None = None
    charge_id: str | None = None
    payment_status: PaymentStatus | None = None
    settling_since: datetime | None = None

    error: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.payment_status in TERMINAL_PAYMENT_STATUSES

    def public_view(self) -> dict[str, Any]:
        """Serializable view for dashboards and the agent."""
        return self.model_dump(mode="json", exclude={"settling_since"})


class VaultEntry(BaseModel):
    """Opaque processor reference plus the time the card was revealed."""

    reference: str
    revealed_at: datetime


# ---------------------------------------------------------------------------
# Upstream payloads
# ---------------------------------------------------------------------------


class Mandate(BaseModel):
    mandate_id: str
    request_id: str | None = None


class BillingDetails(BaseModel):
    """Billing metadata from the wallet; contains no card data."""

    name: str
    address: str
    phone: str = ""
    zip_code: str
    city: str | None = None
    state: str | None = None


class Charge(BaseModel):
    """A processor charge (payment intent)."""

    id: str
    status: str
    amount: int
    currency: str


class BrowserCheckoutResult(BaseModel):
    """Outcome reported by the hosted checkout page."""

    success: bool
    order_id: str | None = None
    charge_id: str | None = None
    amount: str | None = None
    status: str | None = None
    error: str | None = None
    failed_step: str | None = None
    # True only when the page rendered its own decline message
    declined: bool = False


# ---------------------------------------------------------------------------
# SSE events
# ---------------------------------------------------------------------------


class CheckoutEvent(BaseModel):
    """Server-Sent Event pushed as a session advances through the protocol."""

    event_type: str
    session_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


class ToolDefinition(BaseModel):
    """Tool definition with a JSON-Schema input description."""

    name: str
    description: str
    inputSchema: dict[str, Any]  # noqa: N815


class ToolResult(BaseModel):
    """Result of executing a tool on behalf of the agent loop."""

    tool_name: str
    success: bool
    result: Any = None
    error: str | None = None
    retryable: bool = False
