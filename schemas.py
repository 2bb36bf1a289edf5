# schemas.py
from __future__ import annotations

from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, List, Literal

PaymentStatus = Literal["pending", "processing", "completed", "failed"]


# -------- M-PESA --------
class InitiatePaymentRequest(BaseModel):
    fee_id: UUID
    phone_number: str = Field(min_length=9, max_length=20)
    # defaults to the fee's full amount
    amount: Optional[Decimal] = Field(default=None, gt=0)


class InitiatePaymentResponse(BaseModel):
    payment_id: UUID
    status: PaymentStatus
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    customer_message: str
    amount: Decimal


class CallbackAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"


class QueryPaymentResponse(BaseModel):
    payment_id: UUID
    status: PaymentStatus
    result_code: Optional[int] = None
    result_description: Optional[str] = None
    applied: bool = False
    reason: Optional[str] = None


# -------- PAYMENTS --------
class PaymentView(BaseModel):
    id: UUID
    student_id: UUID
    fee_id: UUID
    amount: Decimal
    currency: str
    phone_number: str
    payment_method: str
    status: PaymentStatus
    checkout_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    result_code: Optional[int] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PaymentDetail(PaymentView):
    merchant_request_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    updated_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PaymentListResponse(BaseModel):
    payments: List[PaymentView]
    pagination: Pagination


class PaymentStatsResponse(BaseModel):
    total_payments: int
    completed_payments: int
    pending_payments: int
    failed_payments: int
    total_amount: Decimal
    completed_amount: Decimal
    pending_amount: Decimal
    success_rate: float
