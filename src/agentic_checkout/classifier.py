"""Error classifier.

Turns any exception raised inside a stage into a :class:`ClassifiedError`:
the kind reported to the caller, whether the caller may retry, and whether
the failure is recorded in session state.  Retryable failures are never
recorded so an eventually-successful retry leaves a clean audit trail.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from agentic_checkout.errors import (
    CheckoutError,
    ErrorKind,
    UpstreamError,
    UpstreamFailure,
    UpstreamFailureKind,
)

_TRANSIENT_STATUSES = frozenset({429, 502, 503, 504})
_AUTH_STATUSES = frozenset({401, 403})

CVV_REMEDIATION = (
    "The card's security code has expired. Ask the user to re-enter their CVV "
    "on the wallet page, then retry credential realization."
)
NO_PAYMENT_METHOD_REMEDIATION = (
    "No payment method is ready for this session. Run credential realization "
    "for the approved mandate before executing payment."
)


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    retryable: bool
    record_in_session: bool
    remediation: str | None = None
    action: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.remediation:
            payload["remediation"] = self.remediation
        if self.action:
            payload["action"] = self.action
        return payload


def is_cvv_expired_message(message: str) -> bool:
    lowered = message.lower()
    return "cvv" in lowered and ("expired" in lowered or "invalid" in lowered)


def _cvv_expired() -> ClassifiedError:
    return ClassifiedError(
        kind=ErrorKind.CVV_EXPIRED,
        message="Card CVV has expired. The user must re-enter it before retrying.",
        retryable=False,
        record_in_session=False,
        remediation=CVV_REMEDIATION,
        action="collect_cvv",
    )


def _classify_http(failure: UpstreamFailure) -> ClassifiedError:
    status = failure.status_code or 0
    service = failure.service

    if status in _TRANSIENT_STATUSES:
        kind = ErrorKind.RATE_LIMITED if status == 429 else ErrorKind.TRANSIENT_UPSTREAM_ERROR
        return ClassifiedError(
            kind=kind,
            message=f"The {service} service is temporarily unavailable ({status}). Please retry.",
            retryable=True,
            record_in_session=False,
        )
    if status >= 500:
        return ClassifiedError(
            kind=ErrorKind.TRANSIENT_UPSTREAM_ERROR,
            message=f"The {service} service failed ({status}). Please retry.",
            retryable=True,
            record_in_session=False,
        )
    if status in _AUTH_STATUSES:
        return ClassifiedError(
            kind=ErrorKind.CONFIGURATION_ERROR,
            message=f"The {service} service rejected our credentials. Check the configured API keys.",
            retryable=False,
            record_in_session=True,
        )
    if is_cvv_expired_message(failure.message):
        return _cvv_expired()
    if status == 402 or failure.code == "card_declined" or failure.decline_code:
        return ClassifiedError(
            kind=ErrorKind.PROCESSOR_DECLINED,
            message=failure.message,
            retryable=False,
            record_in_session=True,
        )
    if status == 404 or failure.code == "card_not_found":
        return ClassifiedError(
            kind=ErrorKind.NOT_FOUND,
            message=f"The {service} service could not find the requested resource.",
            retryable=False,
            record_in_session=True,
        )
    return ClassifiedError(
        kind=ErrorKind.UNKNOWN,
        message=f"The {service} service rejected the request ({status}).",
        retryable=False,
        record_in_session=True,
    )


def _classify_upstream(failure: UpstreamFailure) -> ClassifiedError:
    if failure.kind is UpstreamFailureKind.HTTP_STATUS:
        return _classify_http(failure)
    if failure.kind in (
        UpstreamFailureKind.TIMEOUT,
        UpstreamFailureKind.CONNECTION,
        UpstreamFailureKind.MALFORMED_RESPONSE,
    ):
        return ClassifiedError(
            kind=ErrorKind.TRANSIENT_UPSTREAM_ERROR,
            message=failure.message,
            retryable=True,
            record_in_session=False,
        )
    # Every UpstreamFailureKind member must be handled above.
    raise AssertionError(f"Unhandled upstream failure kind: {failure.kind!r}")


def classify(exc: BaseException) -> ClassifiedError:
    """Classify ``exc`` into the caller-facing outcome."""
    if isinstance(exc, UpstreamError):
        return _classify_upstream(exc.failure)
    if isinstance(exc, CheckoutError):
        if exc.kind is ErrorKind.CVV_EXPIRED:
            return _cvv_expired()
        remediation = exc.remediation
        if exc.kind is ErrorKind.NO_PAYMENT_METHOD and remediation is None:
            remediation = NO_PAYMENT_METHOD_REMEDIATION
        return ClassifiedError(
            kind=exc.kind,
            message=exc.message,
            retryable=exc.retryable,
            record_in_session=not exc.retryable,
            remediation=remediation,
        )
    return ClassifiedError(
        kind=ErrorKind.UNKNOWN,
        message=str(exc) or type(exc).__name__,
        retryable=False,
        record_in_session=True,
    )
