"""Agent tool surface.

JSON-schema tool definitions for the agent loop plus a dispatcher that maps
tool calls onto :class:`~agentic_checkout.orchestrator.CheckoutOrchestrator`
operations.  Card data never appears in any tool result; the agent only
ever sees the last four digits.
"""

from __future__ import annotations

from typing import Any

import structlog

from agentic_checkout.models import ToolDefinition, ToolResult
from agentic_checkout.orchestrator import CheckoutOrchestrator
from agentic_checkout.stages.common import StageContext

logger = structlog.get_logger(__name__)


def _object(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


_CART_ID = {"type": "string", "description": "Cart ID from createCart"}
_PRODUCT_ID = {"type": "string", "description": "Product ID (e.g. prod_001)"}
_CHECKOUT_ID = {"type": "string", "description": "Checkout ID from checkoutCart"}


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

CHECKOUT_TOOLS: list[ToolDefinition] = [
    ToolDefinition(
        name="browseProducts",
        description="List all products in the merchant catalog with prices and stock.",
        inputSchema=_object({}, []),
    ),
    ToolDefinition(
        name="createCart",
        description="Create a new empty shopping cart for the current user.",
        inputSchema=_object({}, []),
    ),
    ToolDefinition(
        name="addToCart",
        description="Add a product to the cart. Prices always come from the catalog.",
        inputSchema=_object(
            {
                "cartId": _CART_ID,
                "productId": _PRODUCT_ID,
                "quantity": {"type": "integer", "minimum": 1, "default": 1},
            },
            ["cartId", "productId"],
        ),
    ),
    ToolDefinition(
        name="removeFromCart",
        description="Remove a product line from the cart entirely.",
        inputSchema=_object({"cartId": _CART_ID, "productId": _PRODUCT_ID}, ["cartId", "productId"]),
    ),
    ToolDefinition(
        name="reduceCartItem",
        description="Reduce the quantity of a product in the cart; the line is removed at zero.",
        inputSchema=_object(
            {
                "cartId": _CART_ID,
                "productId": _PRODUCT_ID,
                "amount": {"type": "integer", "minimum": 1, "default": 1},
            },
            ["cartId", "productId"],
        ),
    ),
    ToolDefinition(
        name="checkoutCart",
        description=(
            "Freeze the cart and compute the final total from the catalog. "
            "Returns the checkout ID used by the payment steps."
        ),
        inputSchema=_object({"cartId": _CART_ID}, ["cartId"]),
    ),
    ToolDefinition(
        name="createMandate",
        description=(
            "Step 1 of payment: request a spending mandate from the user's wallet "
            "for exactly the checkout's server-computed total."
        ),
        inputSchema=_object({"checkoutId": _CHECKOUT_ID}, ["checkoutId"]),
    ),
    ToolDefinition(
        name="requestCardRevealToken",
        description=(
            "Step 2 of payment: reveal the card for the approved mandate and secure it "
            "with the payment processor. You will only see the last 4 digits. If the "
            "result says collect_cvv, send the user to the wallet page to re-enter "
            "their CVV, then call this tool again."
        ),
        inputSchema=_object(
            {"mandateId": {"type": ["string", "integer"], "description": "Mandate ID from createMandate"}},
            [],
        ),
    ),
    ToolDefinition(
        name="executePayment",
        description=(
            "Final step: charge the secured payment method for the checkout. "
            "No card details are needed, only the checkout ID."
        ),
        inputSchema=_object({"checkoutId": _CHECKOUT_ID}, ["checkoutId"]),
    ),
    ToolDefinition(
        name="getSessionState",
        description="Show where the current conversation is in the checkout protocol.",
        inputSchema=_object({}, []),
    ),
]

# The browser variant completes payment during realization
_BROWSER_HIDDEN = frozenset({"executePayment"})


def _is_error(payload: dict[str, Any]) -> bool:
    # Session views carry an "error" field too; failures always carry "retryable".
    return "retryable" in payload and bool(payload.get("error"))


def list_tools(realization_mode: str = "tokenize") -> list[dict[str, Any]]:
    """Return the tool definitions available in ``realization_mode``."""
    hidden = _BROWSER_HIDDEN if realization_mode == "browser" else frozenset()
    return [tool.model_dump() for tool in CHECKOUT_TOOLS if tool.name not in hidden]


# ---------------------------------------------------------------------------
# Tool handler
# ---------------------------------------------------------------------------


class CheckoutToolHandler:
    """Dispatches tool calls for one conversation to the orchestrator."""

    def __init__(self, orchestrator: CheckoutOrchestrator) -> None:
        self._orchestrator = orchestrator

    async def execute(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        session_id: str,
        user_id: str,
    ) -> ToolResult:
        """Execute ``tool_name`` for ``session_id`` on behalf of ``user_id``.

        The session is fetched (or reset after a finished payment) before
        dispatch.  Operation failures come back as unsuccessful results
        carrying the ``retryable`` flag.
        """
        handler_map = {
            "browseProducts": self._handle_browse_products,
            "createCart": self._handle_create_cart,
            "addToCart": self._handle_add_to_cart,
            "removeFromCart": self._handle_remove_from_cart,
            "reduceCartItem": self._handle_reduce_cart_item,
            "checkoutCart": self._handle_checkout_cart,
            "createMandate": self._handle_create_mandate,
            "requestCardRevealToken": self._handle_reveal,
            "executePayment": self._handle_execute_payment,
            "getSessionState": self._handle_get_state,
        }

        handler = handler_map.get(tool_name)
        if handler is None:
            return ToolResult(tool_name=tool_name, success=False, error=f"Unknown tool: {tool_name}")

        started = await self._orchestrator.begin_session(session_id, user_id)
        if _is_error(started):
            return self._result(tool_name, started)

        ctx = StageContext(session_id=session_id, user_id=user_id)
        try:
            payload = await handler(ctx, arguments)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("tool_arguments_invalid", tool=tool_name, error=str(exc))
            return ToolResult(
                tool_name=tool_name,
                success=False,
                error=f"Invalid arguments for {tool_name}: {exc}",
            )
        return self._result(tool_name, payload)

    @staticmethod
    def _result(tool_name: str, payload: dict[str, Any]) -> ToolResult:
        if _is_error(payload):
            logger.info("tool_execution_failed", tool=tool_name, error=payload["error"])
            return ToolResult(
                tool_name=tool_name,
                success=False,
                result=payload,
                error=payload.get("message") or payload["error"],
                retryable=bool(payload.get("retryable", False)),
            )
        return ToolResult(tool_name=tool_name, success=True, result=payload)

    # ------------------------------------------------------------------
    # Individual tool handlers
    # ------------------------------------------------------------------

    async def _handle_browse_products(self, ctx: StageContext, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._orchestrator.browse_products(ctx)

    async def _handle_create_cart(self, ctx: StageContext, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._orchestrator.create_cart(ctx)

    async def _handle_add_to_cart(self, ctx: StageContext, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._orchestrator.add_to_cart(
            ctx,
            cart_id=str(arguments["cartId"]),
            product_id=str(arguments["productId"]),
            quantity=int(arguments.get("quantity", 1)),
        )

    async def _handle_remove_from_cart(self, ctx: StageContext, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._orchestrator.remove_from_cart(
            ctx, cart_id=str(arguments["cartId"]), product_id=str(arguments["productId"])
        )

    async def _handle_reduce_cart_item(self, ctx: StageContext, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._orchestrator.reduce_cart_item(
            ctx,
            cart_id=str(arguments["cartId"]),
            product_id=str(arguments["productId"]),
            amount=int(arguments.get("amount", 1)),
        )

    async def _handle_checkout_cart(self, ctx: StageContext, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._orchestrator.checkout_cart(ctx, cart_id=str(arguments["cartId"]))

    async def _handle_create_mandate(self, ctx: StageContext, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._orchestrator.create_mandate(ctx, checkout_id=str(arguments["checkoutId"]))

    async def _handle_reveal(self, ctx: StageContext, arguments: dict[str, Any]) -> dict[str, Any]:
        mandate_id = arguments.get("mandateId")
        return await self._orchestrator.realize_credentials(
            ctx, mandate_id=str(mandate_id) if mandate_id is not None else None
        )

    async def _handle_execute_payment(self, ctx: StageContext, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._orchestrator.execute_payment(ctx, checkout_id=str(arguments["checkoutId"]))

    async def _handle_get_state(self, ctx: StageContext, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._orchestrator.get_state(ctx.session_id)
