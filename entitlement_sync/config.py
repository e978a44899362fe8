"""
Environment configuration for the entitlement sync service.
"""
from typing import List, Optional
from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings

# Load environment variables from .env file at module import time.
# Variables already present in the process environment win.
load_dotenv(override=False)


def _split_csv(value: Optional[str]) -> List[str]:
    """Split a comma-separated setting into a list of trimmed, non-empty items."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: Optional[str] = None

    # Ingestion endpoint
    webhook_path: str = "/api/v1/webhooks/orders"
    webhook_source: str = "cartpanda"
    cors_allowed_origins: str = ""

    # Event classification (comma-separated event tags)
    grant_event_types: str = "order.paid"
    revoke_event_types: str = "order.refunded,order.cancelled,order.chargeback"

    # Reconciliation limits and retry hints
    reconcile_timeout_seconds: float = 25.0
    reconcile_max_workers: int = 4
    unknown_customer_retry_after_seconds: int = 3600
    store_retry_after_seconds: int = 30

    # Notification emitted on a new grant
    notification_title: str = "New product available!"
    notification_message: str = "You now have access to {product_name}. Start now!"
    notification_type: str = "new_product"

    # Event log
    error_message_max_length: int = 1000

    # Application
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @field_validator("webhook_path")
    @classmethod
    def _webhook_path_is_absolute(cls, v: str) -> str:
        v = (v or "").strip()
        if not v.startswith("/"):
            raise ValueError("webhook_path must start with '/'")
        return v

    @field_validator("reconcile_timeout_seconds")
    @classmethod
    def _timeout_is_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("reconcile_timeout_seconds must be greater than zero")
        return v

    @property
    def grant_events(self) -> List[str]:
        return _split_csv(self.grant_event_types)

    @property
    def revoke_events(self) -> List[str]:
        return _split_csv(self.revoke_event_types)

    @property
    def allowed_origins(self) -> List[str]:
        return _split_csv(self.cors_allowed_origins)


# Global settings instance
settings = Settings()
