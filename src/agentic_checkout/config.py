"""Configuration management for the agentic checkout orchestrator."""

from __future__ import annotations

from typing import Literal

from common.config import Settings as BaseSettings


class Settings(BaseSettings):
    """Agentic checkout configuration.

    Inherits logging and infrastructure settings from
    ``common.config.Settings`` and adds orchestrator-specific options.
    """

    # Service identity
    service_name: str = "agentic-checkout"
    service_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8030

    # Merchant
    merchant_name: str = "ByteShop"
    currency: str = "USD"

    # Wallet authority
    wallet_api_url: str = "https://api.nekuda.ai"
    wallet_api_key: str = ""
    wallet_mode: str = "sandbox"
    # Where end users re-enter their CVV when the wallet reports it expired
    wallet_refresh_url: str = "http://localhost:3000/wallet"

    # Payment processor
    processor_secret_key: str = ""
    processor_publishable_key: str = ""

    # Credential realization: exactly one variant per deployment
    realization_mode: Literal["tokenize", "browser"] = "tokenize"

    # Handoff tokens for the hosted checkout page
    session_secret: str = ""
    checkout_base_url: str = "http://localhost:3000"

    # Browser automation
    browser_headless: bool = True
    browser_timeout_seconds: float = 30.0

    # TTLs
    credential_ttl_seconds: int = 55 * 60
    handoff_token_ttl_seconds: int = 5 * 60
    completed_session_ttl_seconds: int = 30 * 60
    abandoned_session_ttl_seconds: int = 60 * 60
    settlement_claim_seconds: int = 2 * 60

    # Session storage
    session_backend: Literal["memory", "redis"] = "memory"

    # Timeouts and limits
    upstream_timeout: float = 15.0
    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 10


def get_settings() -> Settings:
    """Return a settings instance loaded from the environment."""
    return Settings()
