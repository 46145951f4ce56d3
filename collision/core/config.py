# collision/core/config.py
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Core ---
    DATABASE_URL: str = "sqlite:///./collision.db"
    SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    LOG_LEVEL: str = "INFO"

    # --- Prices (coins) ---
    SUBMIT_COST: int = 10
    RENEW_COST: int = 10
    RESUBMIT_COST: int = 10
    FORCE_ADD_COST: int = 50
    HAIDILAO_COST: int = 100
    SEND_EMAIL_COST: int = 1

    # --- Collision codes ---
    DEFAULT_VALIDITY_DAYS: int = 1
    MAX_VALIDITY_DAYS: int = 365
    BATCH_SUBMIT_MAX: int = 50
    ENABLE_COLLISION_AUDIT: bool = False
    FORBIDDEN_KEYWORDS: str | None = None     # comma separated

    # --- Matching ---
    ADD_FRIEND_WINDOW_HOURS: int = 24
    ALLOW_MULTI_MATCH: bool = True
    MATCHER_SWEEP_INTERVAL_SECONDS: int = 0   # 0 = sweep disabled

    # --- Hot tags ---
    HOT_TAG_CACHE_TTL_SECONDS: int = 5
    HOT_TAG_LIMIT: int = 3
    HOT_TAG_DEFAULT_STATUS: str = "show"      # show / hide

    # --- Email (SMTP) ---
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 465
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_FROM_ALIAS: str = "Tag Collision"
    SMTP_USE_SSL: bool = True
    SMTP_TIMEOUT_SECONDS: int = 10
    EMAIL_MAX_RETRIES: int = 3
    EMAIL_BACKOFF_BASE_SECONDS: float = 1.0

    # --- Payments (settlement callback) ---
    PAYMENT_CALLBACK_SECRET: str | None = None

    # --- i18n ---
    DEFAULT_LANGUAGE: str = "zh"

    def forbidden_keywords(self) -> list[str]:
        if not self.FORBIDDEN_KEYWORDS:
            return []
        return [k.strip().casefold() for k in self.FORBIDDEN_KEYWORDS.split(",") if k.strip()]


settings = Settings()
