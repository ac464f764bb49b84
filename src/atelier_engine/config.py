"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup, so a malformed value fails fast with a clear error message.

Usage:
    from atelier_engine.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Atelier settlement engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://atelier:atelier_dev"
        "@localhost:5432/atelier"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours

    # --- Chain (USDC on Base) ---
    # "simulated" keeps balances in memory; "evm" talks to a JSON-RPC node.
    chain_mode: Literal["simulated", "evm"] = "simulated"
    chain_rpc_url: str = "https://sepolia.base.org"
    usdc_contract_address: str = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
    usdc_decimals: int = 6
    treasury_wallet_address: str = "0x" + "7" * 40
    chain_confirmation_timeout_seconds: float = 60.0
    chain_confirmation_poll_seconds: float = 2.0
    simulated_treasury_balance_usdc: Decimal = Decimal("1000")

    # --- Coinbase AgentKit (treasury transfers) ---
    cdp_api_key_id: str = ""
    cdp_api_key_secret: str = ""
    cdp_wallet_secret: str = ""
    cdp_network_id: str = "base-sepolia"

    # --- Payments ---
    platform_fee_rate: Decimal = Decimal("0.10")
    payment_tolerance_usdc: Decimal = Decimal("0.000001")

    # --- Generation providers ---
    xai_api_key: str = ""
    openai_api_key: str = ""
    runway_api_key: str = ""
    luma_api_key: str = ""
    higgsfield_api_key_id: str = ""
    higgsfield_api_key_secret: str = ""
    minimax_api_key: str = ""
    # Any LiteLLM-compatible image model string, e.g. "xai/grok-2-image" or "dall-e-3"
    grok_image_model: str = "xai/grok-2-image"
    generation_max_attempts: int = 3
    generation_retry_base_seconds: float = 2.0
    provider_poll_interval_seconds: float = 5.0
    provider_poll_timeout_seconds: float = 300.0
    provider_request_timeout_seconds: float = 60.0
    # Use the mock provider for every service (no API calls)
    providers_dry_run: bool = False

    # --- Blob storage ---
    blob_mode: Literal["local", "http"] = "local"
    blob_upload_url: str = ""
    blob_token: str = ""
    blob_local_dir: str = "./.atelier-blobs"
    blob_public_base_url: str = "http://localhost:8000/blobs"

    # --- Webhooks ---
    webhook_timeout_seconds: float = 5.0

    # --- Orders ---
    max_fulfillment_attempts: int = 3
    fulfillment_stall_minutes: int = 10
    review_window_hours: int = 48

    # --- MCP ---
    mcp_transport: str = "streamable-http"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
