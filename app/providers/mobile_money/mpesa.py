# app/providers/mobile_money/mpesa.py
from __future__ import annotations

import base64
import logging
import threading
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Optional, Union

import httpx

from app.providers.base import (
    AuthenticationFailure,
    ProviderFailure,
    StkPushAccepted,
    StkPushResult,
    StkQueryAnswered,
    StkQueryResult,
    TransportFailure,
)
from app.providers.mobile_money.config import MpesaConfig
from app.providers.mobile_money.http import HttpClient, HttpResponse, is_retryable_http
from app.providers.mobile_money.signing import StkCredentials, derive_password
from services.redaction import redact_text

logger = logging.getLogger("school_pay.mpesa")

DEFAULT_TOKEN_TTL_S = 3599
# query answer while the payer has not yet acted on the prompt
STILL_PROCESSING_ERROR_CODE = "500.001.1001"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def round_amount(amount: Union[int, float, Decimal, str]) -> int:
    """
    Whole shillings, round-half-up: 499.5 -> 500, 499.4 -> 499.
    Raises ValueError for non-numeric input or a result below 1.
    """
    try:
        value = Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite() or value < 1:
        raise ValueError(f"Amount must be at least 1, got {amount!r}")
    return int(value)


def _parse_result_code(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _error_message(resp: HttpResponse) -> str:
    body = resp.json if isinstance(resp.json, dict) else {}
    message = body.get("errorMessage") or body.get("ResponseDescription")
    if message:
        return str(message)
    return f"HTTP {resp.status_code}"


class MpesaProvider:
    """
    Daraja STK Push client. Configuration is injected; nothing here reads
    the environment. Public push/query calls return a result object and
    never raise for provider-side problems.
    """

    def __init__(
        self,
        config: MpesaConfig,
        http: Optional[HttpClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.http = http or HttpClient(timeout_s=config.timeout_s)
        self._clock = clock or _utcnow
        self._token: Optional[str] = None
        self._token_exp: float = 0.0
        self._token_lock = threading.Lock()

    # -----------------------
    # Credential cache
    # -----------------------
    def get_access_token(self) -> str:
        if not self.config.token_cache_enabled:
            token, _ = self._fetch_token()
            return token

        with self._token_lock:
            now = time.time()
            if self._token and now < (self._token_exp - self.config.token_safety_buffer_s):
                return self._token
            token, expires_in = self._fetch_token()
            self._token = token
            self._token_exp = now + expires_in
            return token

    def invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_exp = 0.0

    def _fetch_token(self) -> tuple[str, int]:
        cfg = self.config
        basic = base64.b64encode(f"{cfg.consumer_key}:{cfg.consumer_secret}".encode()).decode()
        headers = {
            "Authorization": f"Basic {basic}",
            "Content-Type": "application/json",
        }

        try:
            resp = self.http.get(
                cfg.token_url,
                headers=headers,
                params={"grant_type": "client_credentials"},
                debug=cfg.http_debug,
            )
        except httpx.HTTPError as exc:
            logger.error("mpesa token request failed err=%s", exc)
            raise AuthenticationFailure("Failed to authenticate with M-Pesa", detail=str(exc)) from exc

        body = resp.json if isinstance(resp.json, dict) else None
        token = body.get("access_token") if body else None
        if not resp.ok or not token:
            detail = resp.json if resp.json is not None else resp.text
            logger.error("mpesa token rejected status=%s body=%s", resp.status_code, redact_text(resp.text[:300]))
            raise AuthenticationFailure("Failed to authenticate with M-Pesa", detail=detail)

        try:
            expires_in = int(body.get("expires_in") or DEFAULT_TOKEN_TTL_S)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_TTL_S
        return str(token), max(0, expires_in)

    # -----------------------
    # Request signing
    # -----------------------
    def credentials(self) -> StkCredentials:
        return derive_password(self.config.shortcode, self.config.passkey, self._clock())

    # -----------------------
    # STK push
    # -----------------------
    def initiate_stk_push(
        self,
        phone_number: str,
        amount: Union[int, float, Decimal, str],
        account_reference: str,
        description: str = "Fee Payment",
    ) -> StkPushResult:
        try:
            whole_amount = round_amount(amount)
        except ValueError as exc:
            return ProviderFailure(error=str(exc), error_code="INVALID_AMOUNT", retryable=False)

        try:
            token = self.get_access_token()
        except AuthenticationFailure as exc:
            return ProviderFailure(error=str(exc), error_code="AUTHENTICATION_FAILED", response=exc.detail, retryable=True)

        creds = self.credentials()
        cfg = self.config
        body = {
            "BusinessShortCode": cfg.shortcode,
            "Password": creds.password,
            "Timestamp": creds.timestamp,
            "TransactionType": cfg.transaction_type,
            "Amount": whole_amount,
            "PartyA": phone_number,
            "PartyB": cfg.shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": cfg.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

        try:
            payload = self._post_json(cfg.stk_push_url, token, body)
        except TransportFailure as exc:
            logger.warning(
                "mpesa stk push failed phone=%s reference=%s status=%s err=%s",
                redact_text(phone_number),
                account_reference,
                exc.http_status,
                exc,
            )
            return _failure_from(exc)

        checkout_request_id = payload.get("CheckoutRequestID")
        if not checkout_request_id:
            logger.warning("mpesa stk push ack missing CheckoutRequestID reference=%s", account_reference)
            return ProviderFailure(
                error="Malformed STK push acknowledgement",
                error_code="MALFORMED_RESPONSE",
                response=payload,
                retryable=False,
            )

        logger.info(
            "mpesa stk push accepted checkout_request_id=%s reference=%s amount=%s",
            checkout_request_id,
            account_reference,
            whole_amount,
        )
        return StkPushAccepted(
            checkout_request_id=str(checkout_request_id),
            merchant_request_id=_str_or_none(payload.get("MerchantRequestID")),
            response_code=str(payload.get("ResponseCode", "")),
            response_description=str(payload.get("ResponseDescription", "")),
            customer_message=str(payload.get("CustomerMessage", "")),
        )

    # -----------------------
    # STK query
    # -----------------------
    def query_stk_push(self, checkout_request_id: str) -> StkQueryResult:
        try:
            token = self.get_access_token()
        except AuthenticationFailure as exc:
            return ProviderFailure(error=str(exc), error_code="AUTHENTICATION_FAILED", response=exc.detail, retryable=True)

        creds = self.credentials()
        body = {
            "BusinessShortCode": self.config.shortcode,
            "Password": creds.password,
            "Timestamp": creds.timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        try:
            payload = self._post_json(self.config.stk_query_url, token, body)
        except TransportFailure as exc:
            logger.info(
                "mpesa stk query failed checkout_request_id=%s status=%s err=%s",
                checkout_request_id,
                exc.http_status,
                exc,
            )
            return _failure_from(exc)

        answered = StkQueryAnswered(
            response_code=_str_or_none(payload.get("ResponseCode")),
            response_description=_str_or_none(payload.get("ResponseDescription")),
            result_code=_parse_result_code(payload.get("ResultCode")),
            result_description=_str_or_none(payload.get("ResultDesc")),
            checkout_request_id=_str_or_none(payload.get("CheckoutRequestID")) or checkout_request_id,
            merchant_request_id=_str_or_none(payload.get("MerchantRequestID")),
        )
        logger.info(
            "mpesa stk query answered checkout_request_id=%s result_code=%s",
            checkout_request_id,
            answered.result_code,
        )
        return answered

    def _post_json(self, url: str, token: str, body: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.http.post(url, headers=headers, json_body=body, debug=self.config.http_debug)
        except httpx.TimeoutException as exc:
            raise TransportFailure(f"Gateway timeout: {exc}" if str(exc) else "Gateway timeout") from exc
        except httpx.HTTPError as exc:
            raise TransportFailure(str(exc) or type(exc).__name__) from exc

        if not resp.ok:
            error_code = resp.json.get("errorCode") if isinstance(resp.json, dict) else None
            raise TransportFailure(
                _error_message(resp),
                http_status=resp.status_code,
                error_code=_str_or_none(error_code),
                response=resp.json if resp.json is not None else resp.text,
            )

        if not isinstance(resp.json, dict):
            raise TransportFailure(
                "Unreadable response from M-Pesa",
                http_status=resp.status_code,
                response=resp.text,
            )
        return resp.json


def is_still_processing(failure: ProviderFailure) -> bool:
    return failure.error_code == STILL_PROCESSING_ERROR_CODE


def _failure_from(exc: TransportFailure) -> ProviderFailure:
    retryable = True if exc.http_status is None else is_retryable_http(exc.http_status)
    return ProviderFailure(
        error=str(exc) or "M-Pesa request failed",
        error_code=exc.error_code,
        http_status=exc.http_status,
        response=exc.response,
        retryable=retryable,
    )
