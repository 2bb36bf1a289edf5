from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID


@dataclass(frozen=True)
class Student:
    id: UUID
    user_id: UUID
    admission_no: str


@dataclass(frozen=True)
class Fee:
    id: UUID
    student_id: UUID
    description: str
    amount: Decimal
    status: str  # "unpaid" | "partial" | "paid"
    paid_date: Optional[datetime] = None


@dataclass(frozen=True)
class Payment:
    id: UUID
    student_id: UUID
    fee_id: UUID
    amount: Decimal
    phone_number: str
    status: str
    currency: str = "KES"
    payment_method: str = "mpesa"
    checkout_request_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    result_code: Optional[int] = None
    failure_reason: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    initiated_by: Optional[UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentUpdate:
    """Columns written alongside a status transition. None => leave unchanged."""

    checkout_request_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    result_code: Optional[int] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    metadata: Optional[dict[str, Any]] = None

    def as_columns(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class PaymentFilters:
    status: Optional[str] = None
    student_id: Optional[UUID] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
