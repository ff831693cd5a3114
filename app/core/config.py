from __future__ import annotations

import os
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseAppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "ProdAI"
    ENV: str = "dev"

    # Firebase (Auth + Firestore)
    FIREBASE_SERVICE_ACCOUNT: str | None = None  # Full service-account JSON
    FIREBASE_PROJECT_ID: str | None = None
    USERS_COLLECTION: str = "usuarios"

    # Mercado Pago (recurring preapprovals)
    MP_ACCESS_TOKEN: str | None = None
    MP_API_BASE: str = "https://api.mercadopago.com"
    MP_WEBHOOK_SECRET: str | None = None
    MP_TIMEOUT_SECONDS: float = 10.0

    # Plus plan
    PLUS_PRICE: float = 19.9
    PLUS_CURRENCY: str = "BRL"
    PLUS_REASON: str = "Assinatura Prod.AI Plus"
    FREE_DAILY_MESSAGES: int = 10
    CANCEL_GRACE_FALLBACK_DAYS: int = 30

    # Expiration sweep runs at minute 0 of these UTC hours (00/06/12/18 in GMT-3)
    SWEEP_CRON_HOURS: str = "3,9,15,21"

    FRONTEND_URL: str = "https://prod-ai-teste.vercel.app"
    REDIS_URL: str = "redis://localhost:6379/0"
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    CORS_ALLOW_ORIGINS: list[str] = ["*"]
    CORS_ALLOW_METHODS: list[str] = ["GET", "POST", "OPTIONS"]
    CORS_ALLOW_HEADERS: list[str] = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    HSTS_SECONDS: int = 31_536_000
    CONTENT_SECURITY_POLICY: str = "default-src 'none'; frame-ancestors 'none'"

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "plain"
    SENTRY_DSN: str | None = None

    @field_validator("FRONTEND_URL", "MP_API_BASE", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def _validate_required_fields(self) -> BaseAppSettings:
        required_in_prod = (
            "FIREBASE_SERVICE_ACCOUNT",
            "MP_ACCESS_TOKEN",
            "MP_WEBHOOK_SECRET",
        )
        if self.ENV.lower() == "prod":
            missing = [name for name in required_in_prod if not getattr(self, name)]
            if missing:
                raise ValueError(f"Missing required production settings: {', '.join(missing)}")
        return self


class DevSettings(BaseAppSettings):
    ENV: str = "dev"
    FRONTEND_URL: str = "http://localhost:3000"


class TestSettings(BaseAppSettings):
    ENV: str = "test"
    MP_ACCESS_TOKEN: str | None = "TEST-mp-access-token"
    MP_WEBHOOK_SECRET: str | None = None


class ProdSettings(BaseAppSettings):
    ENV: str = "prod"
    CORS_ALLOW_ORIGINS: list[str] = [
        "https://prod-ai-teste.vercel.app",
    ]
    LOG_FORMAT: str = "json"


_ENV_TO_SETTINGS: dict[str, type[BaseAppSettings]] = {
    "dev": DevSettings,
    "development": DevSettings,
    "test": TestSettings,
    "testing": TestSettings,
    "prod": ProdSettings,
    "production": ProdSettings,
}


@lru_cache
def get_settings() -> BaseAppSettings:
    env_name = os.getenv("APP_ENV") or os.getenv("ENV") or "dev"
    env = env_name.lower()
    settings_cls = _ENV_TO_SETTINGS.get(env, DevSettings)
    return settings_cls()


settings = get_settings()
