"""
Configuration and settings for the marketplace backend.
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    frontend_url: str = Field(default="http://localhost:3012")

    # Database (any SQLAlchemy URL; Postgres expected in production)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias="MARKETPLACE_USE_IN_MEMORY_BACKENDS",
    )

    # Auth
    jwt_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")
    jwt_expires_minutes: int = Field(default=7 * 24 * 60)

    # Privy SSO
    privy_app_id: Optional[str] = Field(default=None)
    privy_app_secret: Optional[str] = Field(default=None)
    privy_verification_key: Optional[str] = Field(default=None)
    privy_api_base: str = Field(default="https://auth.privy.io/api/v1")

    # Chain / transaction monitoring
    web3_provider_url: Optional[str] = Field(default=None)
    web3_request_timeout_seconds: float = Field(default=30.0)
    required_confirmations: int = Field(default=3)
    monitor_poll_interval_seconds: float = Field(default=10.0)
    monitor_timeout_seconds: float = Field(default=30 * 60)

    # Orders
    platform_fee_rate: Decimal = Field(default=Decimal("0.025"))

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["text", "json"] = Field(default="text")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
