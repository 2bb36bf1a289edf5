# app/payments/phone.py
from __future__ import annotations

import re

_KE_MSISDN_RE = re.compile(r"^254(7|1)\d{8}$")


def normalize_msisdn(raw: str) -> str:
    """
    Daraja wants 2547XXXXXXXX / 2541XXXXXXXX without '+'.
    Accepts 07..., 01..., +254..., 254... with spaces or dashes.
    """
    phone = re.sub(r"[\s\-()]", "", raw or "")
    if phone.startswith("+"):
        phone = phone[1:]
    elif phone.startswith("0"):
        phone = "254" + phone[1:]

    if not _KE_MSISDN_RE.match(phone):
        raise ValueError(f"Unsupported phone number: {raw!r}")
    return phone
