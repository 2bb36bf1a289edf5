# app/providers/mobile_money/validate.py
from __future__ import annotations

import logging
from typing import Iterable, Optional

from app.providers.mobile_money.config import is_strict_startup_validation, mpesa_mode
from settings import Settings, settings as default_settings

logger = logging.getLogger("school_pay")

REQUIRED_SETTINGS = (
    "MPESA_CONSUMER_KEY",
    "MPESA_CONSUMER_SECRET",
    "MPESA_SHORTCODE",
    "MPESA_PASSKEY",
    "BASE_URL",
)


def _sorted_csv(items: Iterable[str]) -> str:
    return ", ".join(sorted(set(items)))


def validate_mpesa_startup(s: Optional[Settings] = None) -> None:
    """
    Fail-fast validation.

    Rules:
      - sandbox: validate ONLY if MPESA_STRICT_STARTUP_VALIDATION=1
      - production: always validate
      - raise RuntimeError listing every missing setting
    """
    s = s or default_settings
    mode = mpesa_mode(s)
    strict = is_strict_startup_validation(s)

    logger.info("mpesa startup check: mode=%s strict=%s", mode, strict)

    if mode == "sandbox" and not strict:
        return

    missing = [name for name in REQUIRED_SETTINGS if not str(getattr(s, name, "") or "").strip()]
    if missing:
        raise RuntimeError(
            "M-Pesa startup validation failed. "
            f"mode={mode} Missing required settings: " + _sorted_csv(missing)
        )

    base_url = (s.BASE_URL or "").strip().lower()
    if not base_url.startswith(("http://", "https://")):
        raise RuntimeError(
            "M-Pesa startup validation failed. "
            f"BASE_URL must be an http(s) URL reachable by the provider, got {s.BASE_URL!r}"
        )
