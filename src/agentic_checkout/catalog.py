"""Product catalog.

Read-only source of truth for product existence, price and stock.  The only
mutation outside of maintenance is the stock decrement performed when a cart
is paid.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import structlog

from agentic_checkout.errors import InsufficientStockError, NotFoundError
from agentic_checkout.models import Product

logger = structlog.get_logger(__name__)

_DEFAULT_CATALOG = Path(__file__).parent / "data" / "products.json"


class ProductCatalog:
    """In-memory product catalog.

    Parameters
    ----------
    products:
        Initial products.  Use :meth:`from_json` to load the bundled seed.
    """

    def __init__(self, products: list[Product] | None = None) -> None:
        self._products: dict[str, Product] = {p.id: p for p in products or []}
        self._lock = threading.Lock()

    @classmethod
    def from_json(cls, path: Path | None = None) -> ProductCatalog:
        """Load a catalog from a JSON file (defaults to the bundled seed)."""
        catalog_path = path or _DEFAULT_CATALOG
        if not catalog_path.exists():
            raise FileNotFoundError(f"Catalog file not found: {catalog_path}")

        with open(catalog_path) as f:
            raw: list[dict[str, Any]] = json.load(f)

        products = [Product.model_validate(p) for p in raw]
        logger.info("catalog_loaded", path=str(catalog_path), products=len(products))
        return cls(products)

    def list_all(self) -> list[Product]:
        with self._lock:
            return [p.model_copy() for p in self._products.values()]

    def get(self, product_id: str) -> Product | None:
        with self._lock:
            product = self._products.get(product_id)
            return product.model_copy() if product else None

    def upsert(self, product: Product) -> None:
        with self._lock:
            self._products[product.id] = product.model_copy()

    def remove(self, product_id: str) -> bool:
        with self._lock:
            return self._products.pop(product_id, None) is not None

    def decrement_stock(self, requirements: dict[str, int]) -> None:
        """Decrement stock for several products as one atomic step.

        Either every product is decremented or none is.

        Raises
        ------
        NotFoundError
            A product no longer exists.
        InsufficientStockError
            A product has less stock than required.
        """
        with self._lock:
            for product_id, quantity in requirements.items():
                product = self._products.get(product_id)
                if product is None:
                    raise NotFoundError(f"Product {product_id} not found")
                if product.stock < quantity:
                    raise InsufficientStockError(
                        f"Insufficient stock for {product.name}",
                        details={
                            "product_id": product_id,
                            "available": product.stock,
                            "required": quantity,
                        },
                    )

            for product_id, quantity in requirements.items():
                product = self._products[product_id]
                self._products[product_id] = product.model_copy(
                    update={"stock": product.stock - quantity}
                )

        logger.info("stock_decremented", products=len(requirements))
