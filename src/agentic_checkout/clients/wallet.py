"""Wallet authority client.

Implements the staged-authorization calls: mandate creation, reveal-token
request, one-time card reveal and billing-details lookup.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import httpx
import structlog

from agentic_checkout.clients.base import UpstreamClient
from agentic_checkout.credentials import RevealedCard, parse_reveal_payload
from agentic_checkout.models import BillingDetails, Mandate

logger = structlog.get_logger(__name__)


class WalletClient(UpstreamClient):
    """Async client for the wallet authority's REST API."""

    service = "wallet"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        mode: str = "sandbox",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, timeout=timeout, transport=transport)
        self._api_key = api_key
        self._mode = mode

    def _headers(self, user_id: str, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"x-api-key": self._api_key, "x-user-id": user_id}
        if extra:
            headers.update(extra)
        return headers

    async def create_mandate(
        self,
        user_id: str,
        amount: Decimal,
        currency: str,
        merchant: str,
        summary: str,
    ) -> Mandate:
        """Request spending approval for exactly ``amount``.

        Parameters
        ----------
        user_id:
            Wallet user the mandate is created for.
        amount:
            Server-computed total, already rounded to the minor unit.
        currency:
            ISO currency code.
        merchant:
            Merchant display name.
        summary:
            Human-readable product summary.
        """
        body: dict[str, Any] = {
            "product": summary,
            "price": str(amount),
            "currency": currency,
            "merchant": merchant,
            "mode": self._mode,
        }
        data = await self._request(
            "POST", "/api/v1/mandate/create", headers=self._headers(user_id), json_body=body
        )
        self._require(data, "mandate_id")
        mandate = Mandate(mandate_id=str(data["mandate_id"]), request_id=data.get("request_id"))
        logger.info("wallet_mandate_created", mandate_id=mandate.mandate_id, amount=str(amount))
        return mandate

    async def request_reveal_token(self, user_id: str, mandate_id: str) -> str:
        data = await self._request(
            "POST",
            "/api/v1/wallet/request_card_reveal_token",
            headers=self._headers(user_id),
            json_body={"mandate_id": mandate_id},
        )
        self._require(data, "reveal_token")
        return str(data["reveal_token"])

    async def reveal_card(self, user_id: str, reveal_token: str) -> RevealedCard:
        """Redeem ``reveal_token`` for the card, as a :class:`RevealedCard`."""
        data = await self._request(
            "GET",
            "/api/v1/wallet/reveal_card_details",
            headers=self._headers(user_id, {"Authorization": f"Bearer {reveal_token}"}),
        )
        return parse_reveal_payload(data)

    async def get_billing_details(self, user_id: str) -> BillingDetails:
        data = await self._request(
            "GET", "/api/v1/wallet/billing_details", headers=self._headers(user_id)
        )
        self._require(data, "card_holder", "billing_address", "zip_code")
        return BillingDetails(
            name=data["card_holder"],
            address=data["billing_address"],
            phone=data.get("phone_number") or "",
            zip_code=data["zip_code"],
            city=data.get("city"),
            state=data.get("state"),
        )
