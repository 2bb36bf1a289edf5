# app/providers/mobile_money/http.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from services.redaction import redact_dict, redact_headers, redact_text

logger = logging.getLogger("school_pay.mpesa.http")


@dataclass
class HttpResponse:
    status_code: int
    json: Optional[Any]
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class HttpClient:
    def __init__(self, timeout_s: float = 30.0, follow_redirects: bool = True):
        self._client = httpx.Client(timeout=timeout_s, follow_redirects=follow_redirects)

    def post(
        self,
        url: str,
        *,
        headers: dict[str, str],
        json_body: dict[str, Any] | None = None,
        debug: bool = False,
    ) -> HttpResponse:
        r = self._client.post(url, headers=headers, json=json_body)
        if debug:
            self._debug_dump("POST", url, headers, json_body, r)
        return self._wrap(r)

    def get(
        self,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, str] | None = None,
        debug: bool = False,
    ) -> HttpResponse:
        r = self._client.get(url, headers=headers, params=params)
        if debug:
            self._debug_dump("GET", url, headers, None, r)
        return self._wrap(r)

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _wrap(r: httpx.Response) -> HttpResponse:
        try:
            payload = r.json()
        except ValueError:
            payload = None
        return HttpResponse(status_code=r.status_code, json=payload, text=r.text)

    @staticmethod
    def _debug_dump(method: str, url: str, headers: dict[str, str], json_body: Any, r: httpx.Response) -> None:
        logger.debug(
            "http %s %s headers=%s json=%s -> status=%s text=%s",
            method,
            url,
            redact_headers(headers or {}),
            redact_dict(json_body) if isinstance(json_body, dict) else None,
            r.status_code,
            redact_text(r.text[:300]),
        )


def is_retryable_http(code: int) -> bool:
    # Transient / throttling / gateway issues
    return code in (408, 425, 429, 500, 502, 503, 504)
