"""structlog configuration shared by all services.

Every log line passes through :func:`redact_sensitive` before rendering, so
card material and e-mail addresses never reach a handler even if a caller
passes them by mistake.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

import structlog

# Keys whose values are always masked, regardless of type.
SENSITIVE_KEYS = frozenset(
    {
        "card_number",
        "cardnumber",
        "number",
        "pan",
        "cvv",
        "cvc",
        "card_cvv",
        "expiry",
        "card_expiry",
        "card_expiry_date",
        "exp_month",
        "exp_year",
        "reveal_token",
        "card",
        "session_secret",
        "api_key",
        "secret_key",
    }
)

_MASK = "[REDACTED]"
_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-]+)@([A-Za-z0-9-]+)\.([A-Za-z0-9.-]+)")
_PAN_RE = re.compile(r"\b(?:\d[ -]?){13,19}\b")


def redact_email(email: str) -> str:
    """Redact an e-mail for safe logging: ``jane.doe@gmail.com`` -> ``ja***@gm***.com``."""
    local, sep, domain = email.partition("@")
    if not sep or not domain:
        return "***"
    domain_name, _, tld = domain.partition(".")
    redacted_local = local[:1] + "***" if len(local) <= 2 else local[:2] + "***"
    redacted_domain = (
        domain_name[:1] + "***" if len(domain_name) <= 2 else domain_name[:2] + "***"
    )
    return f"{redacted_local}@{redacted_domain}.{tld}"


def _scrub_text(value: str) -> str:
    value = _PAN_RE.sub(_MASK, value)
    return _EMAIL_RE.sub(lambda m: redact_email(m.group(0)), value)


def redact_sensitive(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor that masks card data, secrets and e-mail addresses."""
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = _MASK
        elif isinstance(value, str):
            event_dict[key] = _scrub_text(value)
        elif getattr(value, "__log_redacted__", False):
            event_dict[key] = repr(value)
    return event_dict


def setup_logging(level: str = "INFO", fmt: str = "console") -> None:
    """Configure structlog and the stdlib root logger.

    Parameters
    ----------
    level:
        Minimum log level name (``DEBUG``, ``INFO`` ...).
    fmt:
        ``console`` for human-readable output, ``json`` for one JSON
        object per line.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    renderer: Any
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
