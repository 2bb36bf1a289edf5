# app/providers/base.py
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Literal, Optional, Union


class MpesaError(Exception):
    pass


class AuthenticationFailure(MpesaError):
    """Token acquisition failed. `detail` holds the provider body or transport message."""

    def __init__(self, message: str, detail: Any = None):
        super().__init__(message)
        self.detail = detail


class TransportFailure(MpesaError):
    """Network error, non-2xx status or unreadable body from the provider."""

    def __init__(
        self,
        message: str,
        *,
        http_status: Optional[int] = None,
        error_code: Optional[str] = None,
        response: Any = None,
    ):
        super().__init__(message)
        self.http_status = http_status
        self.error_code = error_code
        self.response = response


class MalformedCallback(MpesaError, ValueError):
    pass


@dataclass(frozen=True)
class ProviderFailure:
    error: str
    error_code: Optional[str] = None
    http_status: Optional[int] = None
    response: Optional[Any] = None
    # None => caller decides; True for throttling / gateway errors
    retryable: Optional[bool] = None
    success: Literal[False] = False


@dataclass(frozen=True)
class StkPushAccepted:
    checkout_request_id: str
    response_code: str
    response_description: str
    customer_message: str
    merchant_request_id: Optional[str] = None
    success: Literal[True] = True


@dataclass(frozen=True)
class StkQueryAnswered:
    response_code: Optional[str]
    response_description: Optional[str]
    result_code: Optional[int]
    result_description: Optional[str]
    checkout_request_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    success: Literal[True] = True

    @property
    def is_terminal(self) -> bool:
        return self.result_code is not None


StkPushResult = Union[StkPushAccepted, ProviderFailure]
StkQueryResult = Union[StkQueryAnswered, ProviderFailure]


@dataclass(frozen=True)
class PaymentOutcome:
    """
    Canonical result of a payment attempt, produced from either a callback
    or a terminal status query. result_code 0 means the payer paid.
    """

    checkout_request_id: str
    result_code: int
    result_description: str
    merchant_request_id: Optional[str] = None
    amount: Optional[Union[int, float]] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    phone_number: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}
