# routes/payments.py
from __future__ import annotations

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.payments.model import Payment, PaymentFilters, PaymentUpdate
from app.payments.phone import normalize_msisdn
from app.payments.repository import PaymentRepository
from app.payments.state_machine import FAILED, PENDING, PROCESSING, STATUSES, is_terminal
from app.providers.base import MalformedCallback, ProviderFailure, StkPushAccepted
from app.providers.mobile_money.callback import process_callback, validate_callback
from app.providers.mobile_money.mpesa import MpesaProvider, is_still_processing, round_amount
from deps.admin import require_admin
from deps.auth import CurrentUser, get_current_user
from deps.payments import get_payment_repository, get_provider
from schemas import (
    CallbackAck,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    Pagination,
    PaymentDetail,
    PaymentListResponse,
    PaymentStatsResponse,
    PaymentView,
    QueryPaymentResponse,
)
from services.metrics import increment_callback, increment_stk_push
from services.reconcile import apply_early_callback, apply_outcome, reconcile_payment
from services.redaction import mask_phone, redact_dict
from settings import settings

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = logging.getLogger("school_pay.payments")


def _view(p: Payment) -> PaymentView:
    return PaymentView(
        id=p.id,
        student_id=p.student_id,
        fee_id=p.fee_id,
        amount=p.amount,
        currency=p.currency,
        phone_number=mask_phone(p.phone_number),
        payment_method=p.payment_method,
        status=p.status,
        checkout_request_id=p.checkout_request_id,
        mpesa_receipt_number=p.mpesa_receipt_number,
        result_code=p.result_code,
        failure_reason=p.failure_reason,
        created_at=p.created_at,
        completed_at=p.completed_at,
    )


def _detail(p: Payment) -> PaymentDetail:
    return PaymentDetail(
        **_view(p).model_dump(),
        merchant_request_id=p.merchant_request_id,
        metadata=p.metadata,
        updated_at=p.updated_at,
    )


def _load_visible_payment(repo: PaymentRepository, payment_id: UUID, user: CurrentUser) -> Payment:
    payment = repo.get_payment(payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="PAYMENT_NOT_FOUND")

    if user.is_student:
        student = repo.get_student_by_user(user.user_id)
        if not student or student.id != payment.student_id:
            raise HTTPException(status_code=403, detail="FORBIDDEN")
    return payment


# -----------------------
# STK push
# -----------------------
@router.post("/mpesa/initiate", response_model=InitiatePaymentResponse)
def initiate_mpesa_payment(
    body: InitiatePaymentRequest,
    user: CurrentUser = Depends(get_current_user),
    repo: PaymentRepository = Depends(get_payment_repository),
    provider: MpesaProvider = Depends(get_provider),
):
    student = repo.get_student_by_user(user.user_id)
    if not student:
        raise HTTPException(status_code=404, detail="STUDENT_NOT_FOUND")

    fee = repo.get_fee(student.id, body.fee_id)
    if not fee:
        raise HTTPException(status_code=404, detail="FEE_NOT_FOUND")
    if fee.status == "paid":
        raise HTTPException(status_code=400, detail="FEE_ALREADY_PAID")

    try:
        phone = normalize_msisdn(body.phone_number)
    except ValueError:
        raise HTTPException(status_code=422, detail="INVALID_PHONE_NUMBER")

    requested: Decimal = body.amount if body.amount is not None else fee.amount
    try:
        # whole shillings, same as the push
        amount = Decimal(round_amount(requested))
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": "INVALID_AMOUNT", "message": str(exc)},
        )

    payment = repo.create_payment(
        student_id=student.id,
        fee_id=fee.id,
        amount=amount,
        currency=settings.CURRENCY,
        phone_number=phone,
        initiated_by=user.user_id,
    )

    result = provider.initiate_stk_push(
        phone,
        amount,
        account_reference=f"FEE-{student.admission_no}",
        description=f"Fee payment for {fee.description}",
    )

    if isinstance(result, ProviderFailure):
        repo.transition_status(
            payment.id,
            expected_status=PENDING,
            new_status=FAILED,
            update=PaymentUpdate(failure_reason=result.error),
        )
        increment_stk_push("failed")
        logger.warning(
            "stk push not accepted payment_id=%s phone=%s error_code=%s error=%s",
            payment.id,
            mask_phone(phone),
            result.error_code,
            result.error,
        )
        raise HTTPException(
            status_code=400,
            detail={
                "error": "STK_PUSH_FAILED",
                "message": result.error,
                "payment_id": str(payment.id),
            },
        )

    accepted: StkPushAccepted = result
    repo.transition_status(
        payment.id,
        expected_status=PENDING,
        new_status=PROCESSING,
        update=PaymentUpdate(
            checkout_request_id=accepted.checkout_request_id,
            merchant_request_id=accepted.merchant_request_id,
        ),
    )
    increment_stk_push("accepted")

    # a callback can beat the checkout id write; pick it up now
    early = apply_early_callback(repo, accepted.checkout_request_id)
    status = early.status_after if early and early.applied else PROCESSING

    return InitiatePaymentResponse(
        payment_id=payment.id,
        status=status,
        checkout_request_id=accepted.checkout_request_id,
        merchant_request_id=accepted.merchant_request_id,
        customer_message=accepted.customer_message,
        amount=amount,
    )


# -----------------------
# Provider callback
# -----------------------
@router.post("/mpesa/callback", response_model=CallbackAck)
async def mpesa_callback(
    req: Request,
    repo: PaymentRepository = Depends(get_payment_repository),
):
    """
    Safaricom's result notification. Always acknowledged with ResultCode 0,
    whatever the payload looks like, so the gateway does not redeliver.
    """
    body: Optional[Any] = None
    try:
        body = await req.json()
    except ValueError:
        body = None

    request_id = getattr(req.state, "request_id", None)
    valid = validate_callback(body)
    checkout_request_id: Optional[str] = None
    applied = False
    ignore_reason: Optional[str] = None

    if not valid:
        ignore_reason = "INVALID_PAYLOAD"
    else:
        try:
            outcome = process_callback(body)
        except MalformedCallback as exc:
            valid = False
            ignore_reason = "MALFORMED_CALLBACK"
            logger.warning("mpesa callback malformed request_id=%s err=%s", request_id, exc)
        else:
            checkout_request_id = outcome.checkout_request_id
            result = apply_outcome(repo, outcome, source="callback")
            applied = result.applied
            ignore_reason = result.reason

    logger.info(
        "mpesa callback received request_id=%s checkout_request_id=%s valid=%s applied=%s reason=%s",
        request_id,
        checkout_request_id,
        valid,
        applied,
        ignore_reason,
    )
    repo.record_callback_event(
        checkout_request_id=checkout_request_id,
        valid=valid,
        applied=applied,
        ignore_reason=ignore_reason,
        body=redact_dict(body) if isinstance(body, dict) else None,
        request_id=request_id,
    )
    increment_callback(valid=valid, applied=applied)

    return CallbackAck()


# -----------------------
# On-demand status query
# -----------------------
@router.post("/mpesa/query/{payment_id}", response_model=QueryPaymentResponse)
def query_mpesa_payment(
    payment_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    repo: PaymentRepository = Depends(get_payment_repository),
    provider: MpesaProvider = Depends(get_provider),
):
    payment = _load_visible_payment(repo, payment_id, user)

    if is_terminal(payment.status):
        return QueryPaymentResponse(
            payment_id=payment.id,
            status=payment.status,
            result_code=payment.result_code,
            reason=f"ALREADY_{payment.status.upper()}",
        )
    if not payment.checkout_request_id:
        raise HTTPException(status_code=400, detail="NO_CHECKOUT_REQUEST")

    answer, result = reconcile_payment(repo, provider, payment.checkout_request_id)

    if isinstance(answer, ProviderFailure):
        if is_still_processing(answer):
            return QueryPaymentResponse(
                payment_id=payment.id,
                status=payment.status,
                result_description=answer.error,
                reason="STILL_PROCESSING",
            )
        raise HTTPException(
            status_code=502,
            detail={"error": "STK_QUERY_FAILED", "message": answer.error},
        )

    current = repo.get_payment(payment.id) or payment
    return QueryPaymentResponse(
        payment_id=current.id,
        status=current.status,
        result_code=answer.result_code,
        result_description=answer.result_description,
        applied=bool(result and result.applied),
        reason=result.reason if result else "STILL_PROCESSING",
    )


# -----------------------
# Reads
# -----------------------
@router.get("/status/{payment_id}", response_model=PaymentDetail)
def payment_status(
    payment_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    repo: PaymentRepository = Depends(get_payment_repository),
):
    return _detail(_load_visible_payment(repo, payment_id, user))


@router.get("/history", response_model=PaymentListResponse)
def payment_history(
    student_id: Optional[UUID] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user),
    repo: PaymentRepository = Depends(get_payment_repository),
):
    if user.is_student:
        student = repo.get_student_by_user(user.user_id)
        if not student:
            raise HTTPException(status_code=404, detail="STUDENT_NOT_FOUND")
        student_id = student.id
    elif student_id is None:
        raise HTTPException(status_code=400, detail="STUDENT_ID_REQUIRED")

    payments, total = repo.list_payments(PaymentFilters(student_id=student_id), page=page, limit=limit)
    return _list_response(payments, total, page, limit)


@router.get("", response_model=PaymentListResponse)
def list_payments(
    status: Optional[str] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    _admin: CurrentUser = Depends(require_admin),
    repo: PaymentRepository = Depends(get_payment_repository),
):
    status_norm = (status or "").strip().lower() or None
    if status_norm and status_norm not in STATUSES:
        raise HTTPException(status_code=400, detail="INVALID_STATUS")

    filters = PaymentFilters(status=status_norm, start_date=start_date, end_date=end_date)
    payments, total = repo.list_payments(filters, page=page, limit=limit)
    return _list_response(payments, total, page, limit)


def _list_response(payments: list[Payment], total: int, page: int, limit: int) -> PaymentListResponse:
    return PaymentListResponse(
        payments=[_view(p) for p in payments],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        ),
    )


@router.get("/stats", response_model=PaymentStatsResponse)
def payment_stats(
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    _admin: CurrentUser = Depends(require_admin),
    repo: PaymentRepository = Depends(get_payment_repository),
):
    stats = repo.payment_stats(start_date=start_date, end_date=end_date)
    total_amount = Decimal(stats.get("total_amount") or 0)
    completed_amount = Decimal(stats.get("completed_amount") or 0)
    total = int(stats.get("total_payments") or 0)
    completed = int(stats.get("completed_payments") or 0)

    return PaymentStatsResponse(
        total_payments=total,
        completed_payments=completed,
        pending_payments=int(stats.get("pending_payments") or 0),
        failed_payments=int(stats.get("failed_payments") or 0),
        total_amount=total_amount,
        completed_amount=completed_amount,
        pending_amount=total_amount - completed_amount,
        success_rate=round(completed / total * 100, 2) if total else 0.0,
    )
