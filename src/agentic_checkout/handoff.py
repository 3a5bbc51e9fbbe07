"""Checkout handoff tokens.

A handoff token binds an out-of-band actor (the automated browser) to one
checkout for a few minutes.  Tokens are HMAC-signed and verified without any
server-side registry, so the minting and verifying processes may differ.

Format::

    base64url(checkout_id) "." hex(expiry_epoch_ms) "." hex(hmac_sha256(secret, payload))

where ``payload`` is the first two segments joined by ``"."``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from typing import Callable

import structlog

from agentic_checkout.errors import ConfigurationError

logger = structlog.get_logger(__name__)

# Cookie read by the hosted checkout routes
CHECKOUT_TOKEN_COOKIE = "checkout-token"

DEFAULT_TTL_SECONDS = 5 * 60


def _b64url_encode(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode("utf-8")).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> str:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")


class HandoffTokenService:
    """Mints and verifies stateless checkout handoff tokens.

    Parameters
    ----------
    secret:
        Shared signing secret.  Every instance that verifies tokens must
        hold the same value.
    ttl_seconds:
        Token lifetime, independent of session TTLs.
    clock:
        Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._ttl_ms = int(ttl_seconds * 1000)
        self._clock = clock

    def _sign(self, payload: str) -> str:
        if not self._secret:
            raise ConfigurationError(
                "SESSION_SECRET is required for checkout token signing"
            )
        return hmac.new(
            self._secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def mint(self, checkout_id: str) -> str:
        """Create a token bound to ``checkout_id``."""
        expires_at_ms = int(self._clock() * 1000) + self._ttl_ms
        payload = f"{_b64url_encode(checkout_id)}.{expires_at_ms:x}"
        token = f"{payload}.{self._sign(payload)}"
        logger.info("checkout_token_minted", checkout_id=checkout_id)
        return token

    def verify(self, token: str, expected_checkout_id: str) -> bool:
        """Check signature, expiry and checkout binding of ``token``."""
        if not token:
            return False

        parts = token.split(".")
        if len(parts) != 3:
            logger.warning("checkout_token_malformed")
            return False

        id_b64, exp_hex, provided_sig = parts
        expected_sig = self._sign(f"{id_b64}.{exp_hex}")

        try:
            provided = bytes.fromhex(provided_sig)
        except ValueError:
            logger.warning("checkout_token_signature_invalid")
            return False
        if not hmac.compare_digest(provided, bytes.fromhex(expected_sig)):
            logger.warning("checkout_token_signature_invalid")
            return False

        try:
            expires_at_ms = int(exp_hex, 16)
            checkout_id = _b64url_decode(id_b64)
        except (ValueError, binascii.Error, UnicodeDecodeError):
            logger.warning("checkout_token_malformed")
            return False

        if int(self._clock() * 1000) > expires_at_ms:
            logger.warning("checkout_token_expired", checkout_id=expected_checkout_id)
            return False

        if not hmac.compare_digest(checkout_id.encode("utf-8"), expected_checkout_id.encode("utf-8")):
            logger.warning("checkout_token_checkout_mismatch")
            return False

        return True
