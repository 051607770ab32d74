# src/signalrelay/config.py
"""
Runtime settings, loaded from the environment (and an optional .env file).
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment / DB
    ENV: str = Field(default="dev")
    DATABASE_URL: str = Field(default="sqlite:///./dev.db")

    # Telegram
    TELEGRAM_BOT_TOKEN: str | None = None
    TELEGRAM_ADMIN_CHAT_ID: str | None = None

    # API / Security
    API_KEY: str | None = None
    CORS_ORIGINS: str = "*"

    # External Webhooks
    TV_WEBHOOK_SECRET: str | None = None

    # UPI payee details used to build payment instructions
    UPI_VPA: str = "alerts@paytm"
    UPI_MERCHANT_NAME: str = "TradingView Alert Bot"
    UPI_MERCHANT_CODE: str = "TVAB001"
    PAYMENT_CURRENCY: str = "INR"
    PAYMENT_TTL_HOURS: int = 24
    PAYMENT_SWEEP_INTERVAL_SECONDS: int = 900

    # Proof-of-payment uploads
    PROOF_MAX_BYTES: int = 5 * 1024 * 1024
    PROOF_UPLOAD_DIR: str = "./public/uploads/payment-proofs"
    QR_CODE_DIR: str = "./public/qr-codes"

    # Delivery pipeline
    DELIVERY_TIMEOUT_SECONDS: float = 10.0
    DELIVERY_MAX_ATTEMPTS: int = 3
    DELIVERY_BACKOFF_SECONDS: float = 1.0
    DELIVERY_CONCURRENCY: int = 10

    # Observability
    METRICS_ENABLED: bool = True


settings = Settings()
