# core/config.py
from pydantic import Field, AnyUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ────────────────────────────────
    # 1. APP & ENVIRONMENT
    # ────────────────────────────────
    PROJECT_NAME: str = "Marketplace Payments"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=True)

    # ────────────────────────────────
    # 2. FRONTEND
    # ────────────────────────────────
    FRONTEND_URL: AnyUrl = Field(
        default="http://localhost:5173",
        description="Base URL for the storefront client",
    )

    # ────────────────────────────────
    # 3. FIREBASE / FIRESTORE
    # ────────────────────────────────
    # Base64-encoded Firebase service account JSON
    MARKET_FIREBASE_KEY: Optional[str] = Field(
        default=None,
        description="Base64-encoded Firebase service account JSON",
    )

    # ────────────────────────────────
    # 4. PAYMENT GATEWAY (mobile money)
    # ────────────────────────────────
    PAYMENT_API_URL: str = Field(
        default="http://localhost:3000",
        description="Base URL of the payments backend fronting the mobile-money gateway",
    )
    PAYMENT_SERVICE_TOKEN: Optional[str] = Field(
        default=None,
        description="Server-to-server bearer token used by background workers",
    )
    PAYMENT_HTTP_TIMEOUT: float = 15.0
    PAYMENT_POLL_INTERVAL_SECONDS: float = 5.0
    PAYMENT_DEADLINE_SECONDS: float = 600.0  # 10 minutes
    PAYMENT_SESSION_RETENTION_SECONDS: float = 300.0  # finished sessions stay readable this long
    PHONE_COUNTRY_CODE: str = "237"
    DEFAULT_COUNTRY: str = "CM"

    # ────────────────────────────────
    # 5. ORDERS
    # ────────────────────────────────
    ORDER_STORE_BACKEND: Literal["firestore", "api"] = "firestore"
    PENDING_ORDER_BACKEND: Literal["firestore", "file"] = Field(
        default="firestore",
        description="Where staged orders live; \"file\" only suits a single host",
    )
    ORDER_RETRY_ENABLED: bool = Field(
        default=False,
        description="Queue a Celery retry when an order could not be created after payment",
    )
    PENDING_ORDER_DIR: str = Field(
        default=".pending_orders",
        description="Directory for the file backend, one staged order per browsing context",
    )

    # ────────────────────────────────
    # 6. TASK QUEUE (Celery)
    # ────────────────────────────────
    CELERY_BROKER_URL: str = Field(default="redis://localhost:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://localhost:6379/0")


# Create singleton
settings = Settings()
