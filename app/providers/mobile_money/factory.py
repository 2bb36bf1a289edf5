# app/providers/mobile_money/factory.py
from __future__ import annotations

import threading
from typing import Optional

from app.providers.mobile_money.config import mpesa_config
from app.providers.mobile_money.mpesa import MpesaProvider

_PROVIDER_LOCK = threading.Lock()
_PROVIDER: Optional[MpesaProvider] = None


def get_mpesa_provider() -> MpesaProvider:
    """Process-wide provider so the token cache survives across requests."""
    global _PROVIDER
    with _PROVIDER_LOCK:
        if _PROVIDER is None:
            _PROVIDER = MpesaProvider(mpesa_config())
        return _PROVIDER


def reset_mpesa_provider() -> None:
    global _PROVIDER
    with _PROVIDER_LOCK:
        if _PROVIDER is not None:
            _PROVIDER.http.close()
        _PROVIDER = None
