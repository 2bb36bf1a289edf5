# app/providers/mobile_money/callback.py
from __future__ import annotations

from typing import Any, Optional

from app.providers.base import MalformedCallback, PaymentOutcome, StkQueryAnswered

# Daraja metadata item name -> PaymentOutcome field
METADATA_FIELDS = {
    "Amount": "amount",
    "MpesaReceiptNumber": "mpesa_receipt_number",
    "TransactionDate": "transaction_date",
    "PhoneNumber": "phone_number",
}


def validate_callback(body: Any) -> bool:
    """
    Structural check only: body.Body.stkCallback must be an object.
    Never raises; the route acknowledges the provider either way.
    """
    if not isinstance(body, dict):
        return False
    envelope = body.get("Body")
    if not isinstance(envelope, dict):
        return False
    return isinstance(envelope.get("stkCallback"), dict)


def metadata_items(stk_callback: dict[str, Any]) -> dict[str, Any]:
    """Fold CallbackMetadata.Item into a single name -> value map."""
    metadata = stk_callback.get("CallbackMetadata")
    if not isinstance(metadata, dict):
        return {}
    items = metadata.get("Item")
    if not isinstance(items, list):
        return {}

    out: dict[str, Any] = {}
    for item in items:
        if not isinstance(item, dict) or "Name" not in item:
            continue
        name = str(item["Name"])
        # first occurrence wins
        if name not in out:
            out[name] = item.get("Value")
    return out


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def process_callback(body: Any) -> PaymentOutcome:
    if not validate_callback(body):
        raise MalformedCallback("Callback is missing Body.stkCallback")

    stk = body["Body"]["stkCallback"]

    checkout_request_id = stk.get("CheckoutRequestID")
    if not checkout_request_id:
        raise MalformedCallback("Callback is missing CheckoutRequestID")

    raw_code = stk.get("ResultCode")
    if raw_code is None or isinstance(raw_code, bool):
        raise MalformedCallback("Callback is missing ResultCode")
    try:
        result_code = int(str(raw_code).strip())
    except ValueError as exc:
        raise MalformedCallback(f"Callback ResultCode is not an integer: {raw_code!r}") from exc

    items = metadata_items(stk)
    amount = items.get("Amount")
    if isinstance(amount, str):
        try:
            amount = float(amount) if "." in amount else int(amount)
        except ValueError:
            amount = None

    return PaymentOutcome(
        checkout_request_id=str(checkout_request_id),
        merchant_request_id=_optional_str(stk.get("MerchantRequestID")),
        result_code=result_code,
        result_description=str(stk.get("ResultDesc") or ""),
        amount=amount,
        mpesa_receipt_number=_optional_str(items.get("MpesaReceiptNumber")),
        transaction_date=_optional_str(items.get("TransactionDate")),
        phone_number=_optional_str(items.get("PhoneNumber")),
    )


def outcome_from_query(checkout_request_id: str, answer: StkQueryAnswered) -> Optional[PaymentOutcome]:
    """A terminal query answer in the same shape as a callback; None while still pending."""
    if not answer.is_terminal:
        return None
    return PaymentOutcome(
        checkout_request_id=answer.checkout_request_id or checkout_request_id,
        merchant_request_id=answer.merchant_request_id,
        result_code=int(answer.result_code),
        result_description=answer.result_description or "",
    )
