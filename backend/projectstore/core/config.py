# core/config.py
from pydantic import Field, AnyUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, Literal


class Settings(BaseSettings):
    # ────────────────────────────────
    # 1. APP & ENVIRONMENT
    # ────────────────────────────────
    PROJECT_NAME: str = "Project Store"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=True)
    BACKEND_URL: str = "http://127.0.0.1:8000"

    # ────────────────────────────────
    # 2. FRONTEND
    # ────────────────────────────────
    FRONTEND_URL: AnyUrl = Field(
        default="http://localhost:3000",
        description="Base URL for the storefront client"
    )

    # ────────────────────────────────
    # 3. FIREBASE / FIRESTORE
    # ────────────────────────────────
    GOOGLE_APPLICATION_CREDENTIALS: Optional[str] = Field(
        default=None,
        description="Path to Firebase service account JSON"
    )
    STORE_FIREBASE_KEY: Optional[str] = Field(
        default=None,
        description="Base64-encoded Firebase service account JSON"
    )

    # ────────────────────────────────
    # 4. TASK QUEUE (Celery)
    # ────────────────────────────────
    CELERY_BROKER_URL: str = Field(default="redis://localhost:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://localhost:6379/0")

    # ────────────────────────────────
    # 5. MAILBOX (payment confirmation emails)
    # ────────────────────────────────
    EMAIL_SEARCH_BACKEND: Literal["imap", "synthetic"] = "imap"
    GMAIL_EMAIL: Optional[str] = None
    GMAIL_APP_PASSWORD: Optional[str] = None
    IMAP_SERVER: str = "imap.gmail.com"
    IMAP_PORT: int = 993
    IMAP_FOLDER: str = "INBOX"
    IMAP_TIMEOUT_SECONDS: float = 20.0

    EMAIL_SEARCH_DAYS: int = 7
    EMAIL_SEARCH_RETRY_DAYS: int = 14
    EMAIL_SEARCH_TIMEOUT_SECONDS: float = 30.0

    # ────────────────────────────────
    # 6. MERCHANT ACCOUNTS (shown at checkout)
    # ────────────────────────────────
    RECIPIENT_NAME: str = "Project Store"
    RECIPIENT_NUMBER: str = "03000000000"
    NAYAPAY_ENABLED: bool = True
    JAZZCASH_ENABLED: bool = True
    EASYPAISA_ENABLED: bool = True
    JAZZCASH_TO_NAYAPAY_ENABLED: bool = True
    RAAST_ID: Optional[str] = None

    # ────────────────────────────────
    # 7. DOWNLOADS
    # ────────────────────────────────
    DOWNLOAD_PATH_PREFIX: str = "/api/payments/download/"

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# Create singleton
settings = Settings()
