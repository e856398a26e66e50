"""Meterbridge configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "api_key": "insecure-admin-key-change-me",
}


class MeterbridgeSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="METERBRIDGE_")

    environment: str = "development"

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/meterbridge.db"

    # API
    api_title: str = "Meterbridge"
    api_version: str = "0.1.0"
    api_key: str = "insecure-admin-key-change-me"
    host: str = "0.0.0.0"
    port: int = 8080
    api_prefix: str = ""
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]
    log_level: str = "INFO"

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300  # seconds, 0 disables the timestamp check

    # Webhook ledger
    webhook_max_retries: int = 5
    webhook_retry_batch_size: int = 100

    # License service
    license_service_base_url: str = ""
    license_private_key: str = ""
    license_timeout: float = 15.0  # seconds

    # Email notifications
    email_provider: str = ""  # "sendgrid", "resend" or empty for log-only
    email_api_key: str = ""
    email_from: str = "billing@meterbridge.local"
    email_from_name: str = "Meterbridge Billing"
    notification_attempts: int = 3
    notification_backoff_ms: int = 5000

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.environment != "development":
            if insecure_fields:
                env_vars = ", ".join(f"METERBRIDGE_{f.upper()}" for f in insecure_fields)
                raise RuntimeError(
                    f"Insecure default values detected in '{self.environment}' environment. "
                    f"Set these environment variables to secure values: {env_vars}. "
                    "Generate secrets with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
                )
            if not self.stripe_webhook_secret:
                raise RuntimeError(
                    "METERBRIDGE_STRIPE_WEBHOOK_SECRET must be set outside development; "
                    "webhook deliveries cannot be verified without it"
                )

        if insecure_fields:
            warnings.warn(
                "Using insecure default admin key; set METERBRIDGE_API_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> MeterbridgeSettings:
    settings = MeterbridgeSettings()
    settings.validate_for_production()
    return settings
