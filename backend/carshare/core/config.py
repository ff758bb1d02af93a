# backend/carshare/core/config.py
import logging
import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_CAPTURE_MAX_DAYS = 6

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.info(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: str = Field(default="development", description="Deployment environment name")

    secret_key: SecretStr = Field(
        default=SecretStr("dev-secret-key-change-me"),
        description="Secret key for JWT tokens",
    )
    algorithm: str = "HS256"
    access_token_expire_minutes: int = Field(
        default=60, description="Lifetime of issued access tokens"
    )

    database_url: str = Field(
        default="sqlite:///./carshare.db", description="SQLAlchemy database URL"
    )
    redis_url: str = "redis://localhost:6379"

    # Stripe Configuration
    stripe_secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key for backend API calls",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Signing secret for the Stripe webhook endpoint",
    )
    stripe_webhook_url: str = Field(
        default="", description="Public URL Stripe delivers webhook events to"
    )
    stripe_currency: str = Field(default="usd", description="Default currency for payments")
    stripe_max_network_retries: int = Field(
        default=2, description="Automatic retries the Stripe SDK applies to network errors"
    )

    # Payment lifecycle
    platform_fee_percentage: float = Field(
        default=10, description="Platform fee percentage (10 = 10%)"
    )
    payment_capture_max_days: int = Field(
        default=DEFAULT_PAYMENT_CAPTURE_MAX_DAYS,
        description="Longest trip (in days) that still uses manual capture",
    )
    enable_destination_manual_capture: bool = Field(
        default=True, description="Authorize short trips now and capture at trip end"
    )
    enable_connect_payouts: bool = Field(
        default=True, description="Master switch for checkout creation and webhook effects"
    )
    payment_due_lead_hours: int = Field(
        default=24, description="Hours before trip start when payment becomes due"
    )
    deposit_claim_window_hours: int = Field(
        default=72, description="Hours after trip end a host may claim against the deposit"
    )
    lockbox_reveal_window_hours: int = Field(
        default=2, description="Hours before trip start the lockbox code becomes visible"
    )

    # Reconciliation and scheduler
    stale_checkout_age_minutes: int = Field(
        default=5, description="Age after which a pending checkout is swept"
    )
    stale_checkout_batch_limit: int = Field(
        default=50, description="Maximum payments inspected per stale sweep"
    )
    scheduler_batch_size: int = Field(
        default=100, description="Maximum scheduled actions claimed per poll"
    )
    scheduler_max_attempts: int = Field(
        default=5, description="Attempts before a scheduled action is failed permanently"
    )
    scheduler_retry_delay_seconds: int = Field(
        default=300, description="Delay before a transiently failed action runs again"
    )
    scheduler_claim_lease_seconds: int = Field(
        default=900,
        description="Running actions claimed longer ago than this are treated as abandoned and claimed again",
    )

    allowed_redirect_hosts: str = Field(
        default="",
        description="Comma-separated hosts allowed in checkout success/cancel URLs",
    )

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("payment_capture_max_days", mode="before")
    @classmethod
    def _coerce_capture_max_days(cls, value: object) -> int:
        try:
            parsed = int(str(value).strip())
        except (TypeError, ValueError):
            logger.warning(
                "Invalid PAYMENT_CAPTURE_MAX_DAYS %r, using %s",
                value,
                DEFAULT_PAYMENT_CAPTURE_MAX_DAYS,
            )
            return DEFAULT_PAYMENT_CAPTURE_MAX_DAYS
        if parsed <= 0:
            return DEFAULT_PAYMENT_CAPTURE_MAX_DAYS
        return parsed

    @field_validator("enable_destination_manual_capture", "enable_connect_payouts", mode="before")
    @classmethod
    def _coerce_flag(cls, value: object) -> bool | object:
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in {"0", "false", "no", "off"}:
                return False
            # Unrecognised values keep the feature on
            return True
        return value

    @property
    def redirect_hosts(self) -> List[str]:
        return [
            host.strip().lower() for host in self.allowed_redirect_hosts.split(",") if host.strip()
        ]


settings = Settings()
