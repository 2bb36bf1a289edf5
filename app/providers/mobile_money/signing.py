# app/providers/mobile_money/signing.py
from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timezone

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


@dataclass(frozen=True)
class StkCredentials:
    password: str
    timestamp: str


def format_timestamp(now: datetime) -> str:
    """
    14-digit YYYYMMDDHHMMSS. Aware datetimes are normalized to UTC first;
    naive datetimes are taken as already being UTC.
    """
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime(TIMESTAMP_FORMAT)


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def derive_password(shortcode: str, passkey: str, now: datetime) -> StkCredentials:
    timestamp = format_timestamp(now)
    return StkCredentials(password=stk_password(str(shortcode), passkey, timestamp), timestamp=timestamp)
