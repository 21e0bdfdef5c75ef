"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Gateway credentials and collaborator URLs are validated at startup.
"""

import sys
from urllib.parse import urlsplit

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Deployment
    environment: str = "development"  # development or production

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Storefront Payments API"
    api_version: str = "0.1.0"
    api_description: str = "Checkout signing and gateway notification reconciliation"

    # Database Configuration - optional, in-memory order ledger when empty
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Payment Gateway - PayUNi
    payuni_api_url: str = ""
    payuni_merchant_id: str = ""
    payuni_hash_key: str = ""  # AES-256 key, exactly 32 bytes
    payuni_hash_iv: str = ""  # GCM nonce, exactly 16 bytes
    payuni_version: str = "1.0"
    payuni_return_url: str = ""
    payuni_confirm_with_query: bool = False
    payuni_query_timeout_seconds: float = 10.0
    notify_url: str = ""

    # Human verification - Cloudflare Turnstile
    turnstile_enable: bool = False
    turnstile_secret_key: str = ""
    turnstile_verify_url: str = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
    turnstile_timeout_seconds: float = 5.0

    # Persistence collaborator (spreadsheet webhook)
    gas_webhook_url: str = ""
    gas_webhook_token: str = ""
    gas_webhook_timeout_seconds: float = 10.0

    # Rate limiting (sliding windows per route class)
    rate_limit_general_window_seconds: int = 15 * 60
    rate_limit_general_max: int = 200
    rate_limit_payment_window_seconds: int = 60
    rate_limit_payment_max: int = 5
    rate_limit_result_window_seconds: int = 60
    rate_limit_result_max: int = 10

    # One-time tokens
    one_time_token_ttl_seconds: int = 300

    # Browser-facing security
    csrf_cookie_name: str = "csrf_token"
    csrf_header_name: str = "X-CSRF-Token"
    cors_allowed_origins: str = ""  # Comma-separated
    result_page_path: str = "/result.html"
    trusted_proxy_hops: int = 1  # Reverse proxies that append to X-Forwarded-For

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "storefront-payments"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start without gateway credentials, notify/return URLs
        or the persistence collaborator. A missing value would otherwise only
        surface on the first checkout.
        """
        errors: list[str] = []

        required = {
            "PAYUNI_API_URL": self.payuni_api_url,
            "PAYUNI_MERCHANT_ID": self.payuni_merchant_id,
            "PAYUNI_HASH_KEY": self.payuni_hash_key,
            "PAYUNI_HASH_IV": self.payuni_hash_iv,
            "PAYUNI_RETURN_URL": self.payuni_return_url,
            "NOTIFY_URL": self.notify_url,
            "GAS_WEBHOOK_URL": self.gas_webhook_url,
        }
        for name, value in required.items():
            if not value:
                errors.append(f"{name} is required but empty or missing")

        if self.payuni_hash_key and len(self.payuni_hash_key.encode("utf-8")) != 32:
            errors.append("PAYUNI_HASH_KEY must be exactly 32 bytes")
        if self.payuni_hash_iv and len(self.payuni_hash_iv.encode("utf-8")) != 16:
            errors.append("PAYUNI_HASH_IV must be exactly 16 bytes")

        if self.turnstile_enable and not self.turnstile_secret_key:
            errors.append("TURNSTILE_SECRET_KEY is required when TURNSTILE_ENABLE is true")

        if self.trusted_proxy_hops < 0:
            errors.append(f"TRUSTED_PROXY_HOPS cannot be negative, got {self.trusted_proxy_hops}")

        if self.database_url and not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        for name, value in (
            ("RATE_LIMIT_GENERAL_MAX", self.rate_limit_general_max),
            ("RATE_LIMIT_PAYMENT_MAX", self.rate_limit_payment_max),
            ("RATE_LIMIT_RESULT_MAX", self.rate_limit_result_max),
            ("ONE_TIME_TOKEN_TTL_SECONDS", self.one_time_token_ttl_seconds),
        ):
            if value <= 0:
                errors.append(f"{name} must be positive, got {value}")

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
    def is_production(self) -> bool:
        """Whether caller-facing errors must stay generic."""
        return self.environment.lower() == "production"

    @property
    def is_sandbox_gateway(self) -> bool:
        """Whether the gateway URL points at the sandbox environment."""
        return "sandbox" in self.payuni_api_url

    @property
    def allowed_origins(self) -> list[str]:
        """CORS origins: configured list plus the return URL."""
        origins = []
        for origin in self.cors_allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        parts = urlsplit(self.payuni_return_url)
        if parts.scheme and parts.netloc:
            return_origin = f"{parts.scheme}://{parts.netloc}"
            if return_origin not in origins:
                origins.append(return_origin)
        return origins


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
