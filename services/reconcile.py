from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

from app.payments.model import PaymentUpdate
from app.payments.repository import PaymentRepository
from app.payments.state_machine import COMPLETED, classify_outcome, status_for_result_code
from app.providers.base import MalformedCallback, PaymentOutcome, ProviderFailure
from app.providers.mobile_money.callback import outcome_from_query, process_callback
from app.providers.mobile_money.mpesa import MpesaProvider, is_still_processing
from services.metrics import increment_payment_anomaly, increment_stk_query

logger = logging.getLogger("school_pay.reconcile")

# CAS attempts before giving up on a contended payment row
MAX_CAS_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReconcileResult:
    payment_id: Optional[UUID]
    applied: bool
    status_before: Optional[str] = None
    status_after: Optional[str] = None
    reason: Optional[str] = None


def _update_for(outcome: PaymentOutcome, target: str) -> PaymentUpdate:
    return PaymentUpdate(
        merchant_request_id=outcome.merchant_request_id,
        mpesa_receipt_number=outcome.mpesa_receipt_number if target == COMPLETED else None,
        result_code=outcome.result_code,
        failure_reason=None if target == COMPLETED else (outcome.result_description or f"ResultCode {outcome.result_code}"),
        completed_at=_utcnow() if target == COMPLETED else None,
        metadata=outcome.to_dict(),
    )


def apply_outcome(repo: PaymentRepository, outcome: PaymentOutcome, *, source: str) -> ReconcileResult:
    """
    Apply a terminal outcome (from a callback or a status query) to the
    payment it belongs to. Safe under duplicate and out-of-order delivery:
    the first terminal write wins, a repeat is ignored and a contradicting
    one is recorded as an anomaly without touching the payment.
    """
    target = status_for_result_code(outcome.result_code)
    payment = None

    for _ in range(MAX_CAS_ATTEMPTS):
        payment = repo.get_payment_by_checkout_id(outcome.checkout_request_id)
        if payment is None:
            logger.warning(
                "reconcile payment not found source=%s checkout_request_id=%s",
                source,
                outcome.checkout_request_id,
            )
            return ReconcileResult(payment_id=None, applied=False, reason="PAYMENT_NOT_FOUND")

        decision = classify_outcome(payment.status, target)

        if decision == "duplicate":
            return ReconcileResult(
                payment_id=payment.id,
                applied=False,
                status_before=payment.status,
                status_after=payment.status,
                reason=f"ALREADY_{payment.status.upper()}",
            )

        if decision == "conflict":
            logger.warning(
                "reconcile conflicting outcome source=%s payment_id=%s stored=%s reported=%s result_code=%s",
                source,
                payment.id,
                payment.status,
                target,
                outcome.result_code,
            )
            repo.record_anomaly(
                payment_id=payment.id,
                checkout_request_id=outcome.checkout_request_id,
                stored_status=payment.status,
                reported_status=target,
                source=source,
                details=outcome.to_dict(),
            )
            increment_payment_anomaly(source)
            return ReconcileResult(
                payment_id=payment.id,
                applied=False,
                status_before=payment.status,
                status_after=payment.status,
                reason="CONFLICTING_OUTCOME",
            )

        if decision == "invalid":
            return ReconcileResult(
                payment_id=payment.id,
                applied=False,
                status_before=payment.status,
                status_after=payment.status,
                reason="INVALID_TRANSITION",
            )

        if repo.transition_status(
            payment.id,
            expected_status=payment.status,
            new_status=target,
            update=_update_for(outcome, target),
        ):
            logger.info(
                "reconcile applied source=%s payment_id=%s %s -> %s",
                source,
                payment.id,
                payment.status,
                target,
            )
            return ReconcileResult(
                payment_id=payment.id,
                applied=True,
                status_before=payment.status,
                status_after=target,
            )
        # lost the race; re-read and decide again

    logger.warning(
        "reconcile gave up after %s attempts source=%s payment_id=%s",
        MAX_CAS_ATTEMPTS,
        source,
        payment.id,
    )
    return ReconcileResult(
        payment_id=payment.id,
        applied=False,
        status_before=payment.status,
        reason="CONCURRENT_UPDATE",
    )


def apply_early_callback(repo: PaymentRepository, checkout_request_id: str) -> Optional[ReconcileResult]:
    """
    Replay a callback that arrived before the payment carried its checkout id.
    Such callbacks are stored with reason PAYMENT_NOT_FOUND; once the id is
    written they can be matched and applied like any other delivery.
    """
    body = repo.find_unmatched_callback(checkout_request_id)
    if body is None:
        return None

    try:
        outcome = process_callback(body)
    except MalformedCallback as exc:
        logger.warning("early callback unreadable checkout_request_id=%s err=%s", checkout_request_id, exc)
        return None

    logger.info("replaying early callback checkout_request_id=%s", checkout_request_id)
    return apply_outcome(repo, outcome, source="callback")


def reconcile_payment(
    repo: PaymentRepository,
    provider: MpesaProvider,
    checkout_request_id: str,
) -> tuple[Any, Optional[ReconcileResult]]:
    """One status query for a checkout id; a terminal answer is applied."""
    answer = provider.query_stk_push(checkout_request_id)
    if isinstance(answer, ProviderFailure):
        increment_stk_query("pending" if is_still_processing(answer) else "failed")
        return answer, None

    outcome = outcome_from_query(checkout_request_id, answer)
    if outcome is None:
        increment_stk_query("pending")
        return answer, None

    increment_stk_query("terminal")
    return answer, apply_outcome(repo, outcome, source="query")


def reconcile_stale_payments(
    repo: PaymentRepository,
    provider: MpesaProvider,
    *,
    stale_minutes: int = 2,
    limit: int = 50,
) -> dict[str, Any]:
    """
    Single pass over processing payments whose callback has not arrived
    within the window. One query per payment, no retries in the pass.
    """
    older_than = _utcnow() - timedelta(minutes=max(0, stale_minutes))
    payments = repo.list_stale_processing(older_than=older_than, limit=limit)

    summary = {
        "checked": 0,
        "applied": 0,
        "still_pending": 0,
        "query_failed": 0,
        "anomalies": 0,
    }
    items: list[dict[str, Any]] = []

    for payment in payments:
        summary["checked"] += 1
        answer, result = reconcile_payment(repo, provider, payment.checkout_request_id)

        if isinstance(answer, ProviderFailure) and not is_still_processing(answer):
            summary["query_failed"] += 1
            items.append({"payment_id": str(payment.id), "outcome": "query_failed", "error": answer.error})
            continue
        if result is None:
            summary["still_pending"] += 1
            items.append({"payment_id": str(payment.id), "outcome": "pending"})
            continue
        if result.applied:
            summary["applied"] += 1
        if result.reason == "CONFLICTING_OUTCOME":
            summary["anomalies"] += 1
        items.append(
            {
                "payment_id": str(payment.id),
                "outcome": "applied" if result.applied else "ignored",
                "status": result.status_after,
                "reason": result.reason,
            }
        )

    logger.info(
        "reconcile pass checked=%s applied=%s still_pending=%s query_failed=%s anomalies=%s",
        summary["checked"],
        summary["applied"],
        summary["still_pending"],
        summary["query_failed"],
        summary["anomalies"],
    )
    return {"run_at": _utcnow().isoformat(), "summary": summary, "items": items}
