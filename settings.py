# settings.py
from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_JWT_SECRET = "dev-secret-change-me"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    ENV: str = "dev"

    # -----------------------
    # DB
    # -----------------------
    DATABASE_URL: str = ""
    DB_POOL_MIN: int = 1
    DB_POOL_MAX: int = 10
    DB_STATEMENT_TIMEOUT_MS: int = 5000

    # -----------------------
    # JWT (verification only; tokens are issued by the portal)
    # -----------------------
    JWT_SECRET: str = Field(default=DEFAULT_JWT_SECRET, min_length=16)
    JWT_ALG: str = Field(default="HS256")
    JWT_ACCESS_MINUTES: int = Field(default=60)

    # -----------------------
    # M-Pesa (Daraja)
    # -----------------------
    MPESA_ENV: Literal["sandbox", "production"] = "sandbox"
    MPESA_STRICT_STARTUP_VALIDATION: bool = False

    MPESA_SANDBOX_BASE_URL: str = "https://sandbox.safaricom.co.ke"
    MPESA_PRODUCTION_BASE_URL: str = "https://api.safaricom.co.ke"

    MPESA_CONSUMER_KEY: str = ""
    MPESA_CONSUMER_SECRET: str = ""
    MPESA_SHORTCODE: str = ""
    MPESA_PASSKEY: str = ""
    MPESA_TRANSACTION_TYPE: str = "CustomerPayBillOnline"

    # public base URL of this service, used to build the STK callback URL
    BASE_URL: str = ""
    MPESA_CALLBACK_PATH: str = "/api/payments/mpesa/callback"

    MPESA_HTTP_TIMEOUT_S: float = 30.0
    MPESA_HTTP_DEBUG: bool = False
    MPESA_TOKEN_CACHE_ENABLED: bool = True
    MPESA_TOKEN_SAFETY_BUFFER_S: int = 60

    CURRENCY: str = "KES"
    LOG_LEVEL: str = "INFO"


settings = Settings()


def validate_env_settings() -> None:
    """
    Fail fast outside dev/test when required configuration is missing.
    Lists every missing name at once so a deploy can be fixed in one go.
    """
    env = (settings.ENV or "dev").strip().lower()
    if env not in ("staging", "prod", "production"):
        return

    missing: list[str] = []
    if not (settings.DATABASE_URL or "").strip():
        missing.append("DATABASE_URL")
    if not settings.JWT_SECRET or settings.JWT_SECRET == DEFAULT_JWT_SECRET:
        missing.append("JWT_SECRET")

    for name in (
        "MPESA_CONSUMER_KEY",
        "MPESA_CONSUMER_SECRET",
        "MPESA_SHORTCODE",
        "MPESA_PASSKEY",
        "BASE_URL",
    ):
        if not (getattr(settings, name, "") or "").strip():
            missing.append(name)

    if missing:
        raise RuntimeError(
            f"Settings validation failed for ENV={env}. Missing or insecure: " + ", ".join(missing)
        )
