"""Revealed card credentials.

:class:`RevealedCard` is the only type that ever holds raw card data.  It can
only be built by :func:`parse_reveal_payload` in this module, it renders as
``RevealedCard(last4=...)`` everywhere, and it refuses to be pickled or
copied.  The processor's ``tokenize_card`` call and the browser driver's
card-fill step are its only consumers; both call :meth:`RevealedCard.wipe`
when done.
"""

from __future__ import annotations

import re
from typing import Any

from agentic_checkout.errors import IncompleteCredentialDataError, InvalidExpiryFormatError

_CONSTRUCTION_KEY = object()
_EXPIRY_RE = re.compile(r"^\s*(\d{1,2})\s*/?\s*(\d{2}|\d{4})\s*$")


class RevealedCard:
    """Transient raw card credentials.  Never log, return or persist."""

    __slots__ = ("_number", "_exp_month", "_exp_year", "_cvc", "_holder_name", "last4")
    __log_redacted__ = True

    def __init__(
        self,
        key: object,
        number: str,
        exp_month: int,
        exp_year: int,
        cvc: str,
        holder_name: str,
        last4: str,
    ) -> None:
        if key is not _CONSTRUCTION_KEY:
            raise TypeError("RevealedCard can only be created by parse_reveal_payload()")
        self._number = number
        self._exp_month = exp_month
        self._exp_year = exp_year
        self._cvc = cvc
        self._holder_name = holder_name
        self.last4 = last4

    def __repr__(self) -> str:
        return f"RevealedCard(last4={self.last4!r})"

    __str__ = __repr__

    def __reduce__(self) -> Any:
        raise TypeError("RevealedCard cannot be serialized")

    def __copy__(self) -> Any:
        raise TypeError("RevealedCard cannot be copied")

    def __deepcopy__(self, memo: Any) -> Any:
        raise TypeError("RevealedCard cannot be copied")

    # Accessors used by the tokenization call and the browser fill step.

    @property
    def number(self) -> str:
        return self._number

    @property
    def exp_month(self) -> int:
        return self._exp_month

    @property
    def exp_year(self) -> int:
        return self._exp_year

    @property
    def cvc(self) -> str:
        return self._cvc

    @property
    def holder_name(self) -> str:
        return self._holder_name

    def expiry_mmyy(self) -> str:
        """Expiry as typed into card forms, e.g. ``0428``."""
        return f"{self._exp_month:02d}{self._exp_year % 100:02d}"

    def wipe(self) -> None:
        """Drop references to the raw values."""
        self._number = ""
        self._cvc = ""
        self._holder_name = ""
        self._exp_month = 0
        self._exp_year = 0


def parse_expiry(raw: str) -> tuple[int, int]:
    """Parse ``MM/YY``, ``MMYY``, ``MM/YYYY`` into ``(month, four_digit_year)``."""
    match = _EXPIRY_RE.match(raw or "")
    if not match:
        raise InvalidExpiryFormatError("Card expiry from the wallet is not in MM/YY format")
    month = int(match.group(1))
    year = int(match.group(2))
    if not 1 <= month <= 12:
        raise InvalidExpiryFormatError("Card expiry month from the wallet is out of range")
    if year < 100:
        year += 2000
    return month, year


def parse_reveal_payload(payload: dict[str, Any]) -> RevealedCard:
    """Build a :class:`RevealedCard` from a wallet reveal response.

    Network-token (variant) credentials are preferred when the wallet marks
    the payment as such.  Errors mention missing field *names* only, never
    values.
    """
    variant = payload.get("visa_credentials") if payload.get("is_visa_payment") else None
    if variant:
        missing = [
            name
            for name in ("card_number", "expiry_month", "expiry_year", "cvv")
            if not variant.get(name)
        ]
        if missing:
            raise IncompleteCredentialDataError(
                f"Incomplete network-token credentials from the wallet: missing {', '.join(missing)}",
                details={"missing": missing},
            )
        month, year = parse_expiry(f"{variant['expiry_month']}/{variant['expiry_year']}")
        number = str(variant["card_number"])
        cvc = str(variant["cvv"])
    else:
        missing = [
            name
            for name in ("card_number", "card_expiry_date", "card_cvv")
            if not payload.get(name)
        ]
        if missing:
            raise IncompleteCredentialDataError(
                f"Incomplete card data from the wallet: missing {', '.join(missing)}",
                details={"missing": missing},
            )
        month, year = parse_expiry(str(payload["card_expiry_date"]))
        number = str(payload["card_number"])
        cvc = str(payload["card_cvv"])

    last4 = str(payload.get("last4_digits") or number[-4:])
    return RevealedCard(
        _CONSTRUCTION_KEY,
        number=number,
        exp_month=month,
        exp_year=year,
        cvc=cvc,
        holder_name=str(payload.get("card_holder") or ""),
        last4=last4,
    )
