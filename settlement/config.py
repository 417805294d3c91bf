"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    auto_migrate: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Content Settlement API"
    api_version: str = "0.1.0"
    api_description: str = "Purchase and payment settlement for the content marketplace"

    # Identity - tokens are issued by the external identity provider
    auth_jwt_secret: str = ""
    auth_jwt_algorithm: str = "HS256"
    auth_jwt_audience: str | None = None
    auth_admin_role: str = "admin"

    # Settlement policy
    platform_fee_rate: float = 0.20
    refund_window_days: float = 7.0
    payout_minimum_amount: int = 10000
    recent_payouts_limit: int = 10

    # Payment Gateway - TossPayments (card confirm)
    toss_secret_key: str = ""
    toss_api_url: str = "https://api.tosspayments.com"
    toss_webhook_secret: str = ""  # Enables toss-signature checks when set

    # Payment Gateway - PortOne V2 (unified verify, virtual accounts)
    portone_api_secret: str = ""
    portone_api_url: str = "https://api.portone.io"

    # Upper bound for every gateway round trip
    gateway_timeout_seconds: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "content-settlement-api"
    environment: str = "production"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        A wrong fee rate would silently misallocate every settlement.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not 0.0 <= self.platform_fee_rate < 1.0:
            errors.append(
                f"PLATFORM_FEE_RATE must be within [0, 1), got: {self.platform_fee_rate}"
            )

        if self.refund_window_days < 0:
            errors.append(
                f"REFUND_WINDOW_DAYS cannot be negative, got: {self.refund_window_days}"
            )

        if self.gateway_timeout_seconds <= 0:
            errors.append("GATEWAY_TIMEOUT_SECONDS must be positive")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
