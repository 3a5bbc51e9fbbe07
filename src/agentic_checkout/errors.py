"""Checkout error hierarchy.

Every failure the orchestrator can report belongs to exactly one
:class:`ErrorKind`.  Internal layers raise the matching ``CheckoutError``
subclass; upstream adapters raise :class:`UpstreamError` with a tagged
:class:`UpstreamFailure`, which the classifier turns into a kind.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


class ErrorKind(str, enum.Enum):
    """Closed taxonomy of outcomes reported to the caller."""

    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    STALE_PRODUCT = "STALE_PRODUCT"
    NO_PAYMENT_METHOD = "NO_PAYMENT_METHOD"
    INCOMPLETE_CREDENTIAL_DATA = "INCOMPLETE_CREDENTIAL_DATA"
    INVALID_EXPIRY_FORMAT = "INVALID_EXPIRY_FORMAT"
    CVV_EXPIRED = "CVV_EXPIRED"
    TOKENIZATION_FAILED = "TOKENIZATION_FAILED"
    CREDENTIALS_EXPIRED = "CREDENTIALS_EXPIRED"
    PROCESSOR_DECLINED = "PROCESSOR_DECLINED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    TRANSIENT_UPSTREAM_ERROR = "TRANSIENT_UPSTREAM_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    UNKNOWN = "UNKNOWN"


class CheckoutError(Exception):
    """Base exception for all checkout failures."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        remediation: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        self.remediation = remediation
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to the caller-facing error shape."""
        payload: dict[str, Any] = {
            "error": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.remediation:
            payload["remediation"] = self.remediation
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(CheckoutError):
    """Cart, product, session or checkout does not exist."""

    kind = ErrorKind.NOT_FOUND


class InvalidStateError(CheckoutError):
    """Wrong cart or session status for the requested transition."""

    kind = ErrorKind.INVALID_STATE


class CartNotActiveError(InvalidStateError):
    """Items can only change while the cart is ``active``."""


class InsufficientStockError(CheckoutError):
    kind = ErrorKind.INSUFFICIENT_STOCK


class StaleProductError(CheckoutError):
    """A line item's product disappeared from the catalog after it was added."""

    kind = ErrorKind.STALE_PRODUCT


class NoPaymentMethodError(CheckoutError):
    kind = ErrorKind.NO_PAYMENT_METHOD


class IncompleteCredentialDataError(CheckoutError):
    kind = ErrorKind.INCOMPLETE_CREDENTIAL_DATA
    retryable = True


class InvalidExpiryFormatError(CheckoutError):
    kind = ErrorKind.INVALID_EXPIRY_FORMAT
    retryable = True


class CvvExpiredError(CheckoutError):
    """The wallet's dynamic CVV expired; the end user must re-enter it."""

    kind = ErrorKind.CVV_EXPIRED


class TokenizationFailedError(CheckoutError):
    kind = ErrorKind.TOKENIZATION_FAILED
    retryable = True


class CredentialsExpiredError(CheckoutError):
    kind = ErrorKind.CREDENTIALS_EXPIRED


class ProcessorDeclinedError(CheckoutError):
    kind = ErrorKind.PROCESSOR_DECLINED


class ConfigurationError(CheckoutError):
    """Missing or rejected secrets; never retryable."""

    kind = ErrorKind.CONFIGURATION_ERROR


class TransientUpstreamError(CheckoutError):
    kind = ErrorKind.TRANSIENT_UPSTREAM_ERROR
    retryable = True


class RateLimitedError(CheckoutError):
    kind = ErrorKind.RATE_LIMITED
    retryable = True


# ---------------------------------------------------------------------------
# Upstream failures (tagged variant produced by the client adapters)
# ---------------------------------------------------------------------------


class UpstreamFailureKind(str, enum.Enum):
    """How an external call failed."""

    HTTP_STATUS = "http_status"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    MALFORMED_RESPONSE = "malformed_response"


@dataclass(frozen=True)
class UpstreamFailure:
    """Normalized description of a failed wallet or processor call."""

    service: str
    kind: UpstreamFailureKind
    message: str
    status_code: int | None = None
    code: str | None = None
    decline_code: str | None = None


class UpstreamError(Exception):
    """Raised by client adapters; carries an :class:`UpstreamFailure`."""

    def __init__(self, failure: UpstreamFailure) -> None:
        self.failure = failure
        super().__init__(f"{failure.service}: {failure.message}")
