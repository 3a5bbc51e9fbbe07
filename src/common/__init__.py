"""Common shared utilities for the checkout services."""

from common.config import Settings
from common.logging import redact_email, setup_logging
from common.models import HealthResponse, ErrorResponse

__all__ = ["Settings", "setup_logging", "redact_email", "HealthResponse", "ErrorResponse"]
