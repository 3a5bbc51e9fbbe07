"""Cart ledger.

Manages the cart lifecycle ``active -> checked_out -> paid``.  Prices and
totals are always recomputed from the catalog; nothing price-bearing is
accepted from the caller.
"""

from __future__ import annotations

import threading
import uuid
from decimal import Decimal

import structlog

from agentic_checkout.catalog import ProductCatalog
from agentic_checkout.errors import (
    CartNotActiveError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    StaleProductError,
)
from agentic_checkout.models import Cart, CartItem, CartStatus, round_money

logger = structlog.get_logger(__name__)


def _snapshot_total(items: list[CartItem]) -> Decimal:
    return round_money(sum((i.unit_price * i.quantity for i in items), Decimal("0")))


class CartLedger:
    """In-memory cart repository backed by a :class:`ProductCatalog`."""

    def __init__(self, catalog: ProductCatalog, currency: str = "USD") -> None:
        self._catalog = catalog
        self._currency = currency
        self._carts: dict[str, Cart] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, cart_id: str) -> Cart | None:
        with self._lock:
            cart = self._carts.get(cart_id)
            return cart.model_copy(deep=True) if cart else None

    def get_owned(self, cart_id: str, user_id: str) -> Cart:
        """Return ``cart_id`` if it belongs to ``user_id``.

        A cart owned by someone else is reported exactly like a missing one.
        """
        cart = self.get(cart_id)
        if cart is None or cart.user_id != user_id:
            raise NotFoundError(f"Cart {cart_id} not found")
        return cart

    def _require(self, cart_id: str) -> Cart:
        cart = self._carts.get(cart_id)
        if cart is None:
            raise NotFoundError(f"Cart {cart_id} not found")
        return cart

    def _require_active(self, cart_id: str) -> Cart:
        cart = self._require(cart_id)
        if cart.status != CartStatus.ACTIVE:
            raise CartNotActiveError(
                f"Cart is not active (status '{cart.status.value}')",
                details={"cart_id": cart_id, "status": cart.status.value},
            )
        return cart

    def server_total(self, cart: Cart) -> Decimal:
        """Recompute a cart's total strictly from current catalog prices.

        Raises
        ------
        StaleProductError
            A line item's product no longer exists.
        """
        total = Decimal("0")
        for item in cart.items:
            product = self._catalog.get(item.product_id)
            if product is None:
                raise StaleProductError(
                    f"Product {item.product_id} no longer exists",
                    details={"product_id": item.product_id},
                )
            total += product.price * item.quantity
        return round_money(total)

    # ------------------------------------------------------------------
    # Mutations while active
    # ------------------------------------------------------------------

    def create(self, user_id: str) -> Cart:
        cart = Cart(id=str(uuid.uuid4()), user_id=user_id, currency=self._currency)
        with self._lock:
            self._carts[cart.id] = cart
        logger.info("cart_created", cart_id=cart.id)
        return cart.model_copy(deep=True)

    def add_item(self, cart_id: str, product_id: str, quantity: int = 1) -> Cart:
        """Add ``quantity`` units of a product, merging with an existing line."""
        if quantity < 1:
            raise InvalidStateError("Quantity must be at least 1")

        with self._lock:
            cart = self._require_active(cart_id)
            product = self._catalog.get(product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")

            existing = next((i for i in cart.items if i.product_id == product_id), None)
            wanted = quantity + (existing.quantity if existing else 0)
            if product.stock < wanted:
                raise InsufficientStockError(
                    f"Insufficient stock for {product.name}",
                    details={"product_id": product_id, "available": product.stock},
                )

            if existing:
                existing.quantity = wanted
                existing.unit_price = product.price
            else:
                cart.items.append(
                    CartItem(
                        product_id=product.id,
                        product_name=product.name,
                        quantity=quantity,
                        unit_price=product.price,
                    )
                )
            cart.total = _snapshot_total(cart.items)
            return cart.model_copy(deep=True)

    def reduce_item(self, cart_id: str, product_id: str, amount: int = 1) -> Cart:
        """Reduce a line's quantity, removing the line when it reaches zero."""
        if amount < 1:
            raise InvalidStateError("Amount must be at least 1")

        with self._lock:
            cart = self._require_active(cart_id)
            idx = next(
                (n for n, i in enumerate(cart.items) if i.product_id == product_id), None
            )
            if idx is None:
                raise NotFoundError(f"Product {product_id} not in cart")

            remaining = cart.items[idx].quantity - amount
            if remaining <= 0:
                del cart.items[idx]
            else:
                cart.items[idx].quantity = remaining
            cart.total = _snapshot_total(cart.items)
            return cart.model_copy(deep=True)

    def remove_item(self, cart_id: str, product_id: str) -> Cart:
        with self._lock:
            cart = self._require_active(cart_id)
            before = len(cart.items)
            cart.items = [i for i in cart.items if i.product_id != product_id]
            if len(cart.items) == before:
                raise NotFoundError(f"Product {product_id} not in cart")
            cart.total = _snapshot_total(cart.items)
            return cart.model_copy(deep=True)

    def clear(self, cart_id: str) -> Cart:
        with self._lock:
            cart = self._require_active(cart_id)
            cart.items = []
            cart.total = Decimal("0.00")
            return cart.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    def checkout(self, cart_id: str) -> Cart:
        """Freeze the cart, refreshing every unit price from the catalog."""
        with self._lock:
            cart = self._require(cart_id)
            if cart.status != CartStatus.ACTIVE:
                raise InvalidStateError(
                    f"Cart is already {cart.status.value}",
                    details={"cart_id": cart_id, "status": cart.status.value},
                )
            if not cart.items:
                raise InvalidStateError("Cart is empty", details={"cart_id": cart_id})

            refreshed: list[CartItem] = []
            for item in cart.items:
                product = self._catalog.get(item.product_id)
                if product is None:
                    raise StaleProductError(
                        f"Product {item.product_id} no longer exists",
                        details={"product_id": item.product_id},
                    )
                if product.stock < item.quantity:
                    raise InsufficientStockError(
                        f"Insufficient stock for {product.name}",
                        details={"product_id": product.id, "available": product.stock},
                    )
                refreshed.append(item.model_copy(update={"unit_price": product.price}))

            cart.items = refreshed
            cart.total = _snapshot_total(refreshed)
            cart.status = CartStatus.CHECKED_OUT

        logger.info("cart_checked_out", cart_id=cart_id, total=str(cart.total))
        return cart.model_copy(deep=True)

    def mark_paid(self, cart_id: str) -> Cart:
        """Mark a checked-out cart paid and decrement stock.

        This is the only place stock is decremented.  If any line's stock
        has fallen below the required quantity, nothing changes and the cart
        stays ``checked_out`` for manual reconciliation.
        """
        with self._lock:
            cart = self._require(cart_id)
            if cart.status != CartStatus.CHECKED_OUT:
                raise InvalidStateError(
                    f"Cart must be checked_out first (status '{cart.status.value}')",
                    details={"cart_id": cart_id, "status": cart.status.value},
                )

            requirements: dict[str, int] = {}
            for item in cart.items:
                requirements[item.product_id] = requirements.get(item.product_id, 0) + item.quantity
            self._catalog.decrement_stock(requirements)

            cart.status = CartStatus.PAID

        logger.info("cart_paid", cart_id=cart_id)
        return cart.model_copy(deep=True)
