# app/providers/mobile_money/config.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from settings import Settings, settings as default_settings


def mpesa_mode(s: Optional[Settings] = None) -> str:
    s = s or default_settings
    return (s.MPESA_ENV or "sandbox").strip().lower()


def is_strict_startup_validation(s: Optional[Settings] = None) -> bool:
    s = s or default_settings
    return bool(s.MPESA_STRICT_STARTUP_VALIDATION)


@dataclass(frozen=True)
class MpesaConfig:
    mode: str  # "sandbox" | "production"
    base_url: str
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    transaction_type: str = "CustomerPayBillOnline"
    timeout_s: float = 30.0
    token_cache_enabled: bool = True
    token_safety_buffer_s: int = 60
    http_debug: bool = False

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/oauth/v1/generate"

    @property
    def stk_push_url(self) -> str:
        return f"{self.base_url}/mpesa/stkpush/v1/processrequest"

    @property
    def stk_query_url(self) -> str:
        return f"{self.base_url}/mpesa/stkpushquery/v1/query"


def build_callback_url(base_url: str, path: str) -> str:
    base = (base_url or "").strip().rstrip("/")
    p = (path or "").strip()
    if not base:
        return ""
    if not p.startswith("/"):
        p = "/" + p
    return base + p


def mpesa_config(s: Optional[Settings] = None) -> MpesaConfig:
    s = s or default_settings
    mode = mpesa_mode(s)
    if mode == "production":
        base = (s.MPESA_PRODUCTION_BASE_URL or "").strip()
    else:
        base = (s.MPESA_SANDBOX_BASE_URL or "").strip()

    return MpesaConfig(
        mode=mode,
        base_url=base.rstrip("/"),
        consumer_key=(s.MPESA_CONSUMER_KEY or "").strip(),
        consumer_secret=(s.MPESA_CONSUMER_SECRET or "").strip(),
        shortcode=str(s.MPESA_SHORTCODE or "").strip(),
        passkey=(s.MPESA_PASSKEY or "").strip(),
        callback_url=build_callback_url(s.BASE_URL, s.MPESA_CALLBACK_PATH),
        transaction_type=(s.MPESA_TRANSACTION_TYPE or "CustomerPayBillOnline").strip(),
        timeout_s=float(s.MPESA_HTTP_TIMEOUT_S),
        token_cache_enabled=bool(s.MPESA_TOKEN_CACHE_ENABLED),
        token_safety_buffer_s=int(s.MPESA_TOKEN_SAFETY_BUFFER_S),
        http_debug=bool(s.MPESA_HTTP_DEBUG),
    )
