# app/payments/repository.py
from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional, Protocol
from uuid import UUID

from psycopg2.extras import Json, RealDictCursor

from app.payments.model import Fee, Payment, PaymentFilters, PaymentUpdate, Student
from app.payments.state_machine import (
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    assert_processing_invariant,
    assert_transition,
)

PAYMENT_COLUMNS = """
  id, student_id, fee_id, amount, currency, payment_method, phone_number,
  status, checkout_request_id, merchant_request_id, mpesa_receipt_number,
  result_code, failure_reason, metadata, initiated_by,
  created_at, updated_at, completed_at
"""


class PaymentRepository(Protocol):
    def get_student_by_user(self, user_id: UUID) -> Optional[Student]: ...
    def get_fee(self, student_id: UUID, fee_id: UUID) -> Optional[Fee]: ...
    def create_payment(
        self,
        *,
        student_id: UUID,
        fee_id: UUID,
        amount: Decimal,
        currency: str,
        phone_number: str,
        initiated_by: Optional[UUID],
    ) -> Payment: ...
    def get_payment(self, payment_id: UUID) -> Optional[Payment]: ...
    def get_payment_by_checkout_id(self, checkout_request_id: str) -> Optional[Payment]: ...
    def transition_status(
        self,
        payment_id: UUID,
        *,
        expected_status: str,
        new_status: str,
        update: PaymentUpdate,
    ) -> bool: ...
    def record_anomaly(
        self,
        *,
        payment_id: UUID,
        checkout_request_id: str,
        stored_status: str,
        reported_status: str,
        source: str,
        details: dict[str, Any],
    ) -> None: ...
    def record_callback_event(
        self,
        *,
        checkout_request_id: Optional[str],
        valid: bool,
        applied: bool,
        ignore_reason: Optional[str],
        body: Any,
        request_id: Optional[str],
    ) -> None: ...
    def list_payments(self, filters: PaymentFilters, *, page: int, limit: int) -> tuple[list[Payment], int]: ...
    def payment_stats(self, *, start_date: Optional[datetime], end_date: Optional[datetime]) -> dict[str, Any]: ...
    def find_unmatched_callback(self, checkout_request_id: str) -> Optional[dict[str, Any]]: ...
    def list_stale_processing(self, *, older_than: datetime, limit: int) -> list[Payment]: ...


def _row_to_payment(row: dict[str, Any]) -> Payment:
    return Payment(**{k: row[k] for k in row.keys()})


def _filters_sql(filters: PaymentFilters) -> tuple[str, dict[str, Any]]:
    where = []
    params: dict[str, Any] = {}

    if filters.status:
        where.append("status = %(status)s")
        params["status"] = filters.status
    if filters.student_id:
        where.append("student_id = %(student_id)s::uuid")
        params["student_id"] = str(filters.student_id)
    if filters.start_date:
        where.append("created_at >= %(start_date)s")
        params["start_date"] = filters.start_date
    if filters.end_date:
        where.append("created_at <= %(end_date)s")
        params["end_date"] = filters.end_date

    return (("WHERE " + " AND ".join(where)) if where else ""), params


class PgPaymentRepository:
    """
    PostgreSQL-backed payment store. Every method opens its own transaction
    via the connection factory; status changes are compare-and-swap on the
    current status so callback and query paths can race safely.
    """

    def __init__(self, conn_factory: Callable[[], AbstractContextManager]):
        self._conn = conn_factory

    # -----------------------
    # Students / fees
    # -----------------------
    def get_student_by_user(self, user_id: UUID) -> Optional[Student]:
        with self._conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT id, user_id, admission_no
                    FROM school.students
                    WHERE user_id = %s::uuid
                    LIMIT 1
                    """,
                    (str(user_id),),
                )
                row = cur.fetchone()
        return Student(**row) if row else None

    def get_fee(self, student_id: UUID, fee_id: UUID) -> Optional[Fee]:
        with self._conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT id, student_id, description, amount, status, paid_date
                    FROM school.student_fees
                    WHERE id = %s::uuid AND student_id = %s::uuid
                    """,
                    (str(fee_id), str(student_id)),
                )
                row = cur.fetchone()
        return Fee(**row) if row else None

    # -----------------------
    # Payments
    # -----------------------
    def create_payment(
        self,
        *,
        student_id: UUID,
        fee_id: UUID,
        amount: Decimal,
        currency: str,
        phone_number: str,
        initiated_by: Optional[UUID],
    ) -> Payment:
        with self._conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    INSERT INTO school.payments (
                      student_id, fee_id, amount, currency, phone_number, status, initiated_by
                    )
                    VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s, %s::uuid)
                    RETURNING {PAYMENT_COLUMNS}
                    """,
                    (
                        str(student_id),
                        str(fee_id),
                        amount,
                        currency,
                        phone_number,
                        PENDING,
                        str(initiated_by) if initiated_by else None,
                    ),
                )
                row = cur.fetchone()
        return _row_to_payment(row)

    def get_payment(self, payment_id: UUID) -> Optional[Payment]:
        with self._conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {PAYMENT_COLUMNS} FROM school.payments WHERE id = %s::uuid",
                    (str(payment_id),),
                )
                row = cur.fetchone()
        return _row_to_payment(row) if row else None

    def get_payment_by_checkout_id(self, checkout_request_id: str) -> Optional[Payment]:
        with self._conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {PAYMENT_COLUMNS} FROM school.payments WHERE checkout_request_id = %s",
                    (checkout_request_id,),
                )
                row = cur.fetchone()
        return _row_to_payment(row) if row else None

    def transition_status(
        self,
        payment_id: UUID,
        *,
        expected_status: str,
        new_status: str,
        update: PaymentUpdate,
    ) -> bool:
        assert_transition(expected_status, new_status)
        assert_processing_invariant(new_status, update.checkout_request_id)

        metadata = Json(update.metadata) if update.metadata is not None else None

        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE school.payments
                    SET
                      status = %s,
                      checkout_request_id = COALESCE(%s, checkout_request_id),
                      merchant_request_id = COALESCE(%s, merchant_request_id),
                      mpesa_receipt_number = COALESCE(%s, mpesa_receipt_number),
                      result_code = COALESCE(%s, result_code),
                      failure_reason = COALESCE(%s, failure_reason),
                      completed_at = COALESCE(%s, completed_at),
                      metadata = COALESCE(%s::jsonb, metadata),
                      updated_at = now()
                    WHERE id = %s::uuid
                      AND status = %s
                    RETURNING fee_id
                    """,
                    (
                        new_status,
                        update.checkout_request_id,
                        update.merchant_request_id,
                        update.mpesa_receipt_number,
                        update.result_code,
                        update.failure_reason,
                        update.completed_at,
                        metadata,
                        str(payment_id),
                        expected_status,
                    ),
                )
                row = cur.fetchone()
                if not row:
                    return False

                if new_status == COMPLETED:
                    cur.execute(
                        """
                        UPDATE school.student_fees
                        SET status = 'paid', paid_date = COALESCE(%s, now())
                        WHERE id = %s::uuid
                        """,
                        (update.completed_at, str(row[0])),
                    )
        return True

    # -----------------------
    # Audit
    # -----------------------
    def record_anomaly(
        self,
        *,
        payment_id: UUID,
        checkout_request_id: str,
        stored_status: str,
        reported_status: str,
        source: str,
        details: dict[str, Any],
    ) -> None:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO school.payment_anomalies (
                      payment_id, checkout_request_id, stored_status, reported_status, source, details
                    )
                    VALUES (%s::uuid, %s, %s, %s, %s, %s::jsonb)
                    """,
                    (str(payment_id), checkout_request_id, stored_status, reported_status, source, Json(details)),
                )

    def record_callback_event(
        self,
        *,
        checkout_request_id: Optional[str],
        valid: bool,
        applied: bool,
        ignore_reason: Optional[str],
        body: Any,
        request_id: Optional[str],
    ) -> None:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO school.mpesa_callback_events (
                      checkout_request_id, valid, applied, ignore_reason, body, request_id
                    )
                    VALUES (%s, %s, %s, %s, %s::jsonb, %s)
                    """,
                    (
                        checkout_request_id,
                        bool(valid),
                        bool(applied),
                        ignore_reason,
                        Json(body) if body is not None else None,
                        request_id,
                    ),
                )

    def find_unmatched_callback(self, checkout_request_id: str) -> Optional[dict[str, Any]]:
        """Latest valid callback for this checkout id that found no payment when it arrived."""
        with self._conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT body
                    FROM school.mpesa_callback_events
                    WHERE checkout_request_id = %s
                      AND valid
                      AND NOT applied
                      AND ignore_reason = 'PAYMENT_NOT_FOUND'
                      AND body IS NOT NULL
                    ORDER BY received_at DESC
                    LIMIT 1
                    """,
                    (checkout_request_id,),
                )
                row = cur.fetchone()
        return row["body"] if row else None

    # -----------------------
    # Listing / reporting
    # -----------------------
    def list_payments(self, filters: PaymentFilters, *, page: int, limit: int) -> tuple[list[Payment], int]:
        limit = max(1, min(int(limit or 20), 200))
        page = max(1, int(page or 1))
        where_sql, params = _filters_sql(filters)
        params.update({"limit": limit, "offset": (page - 1) * limit})

        with self._conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {PAYMENT_COLUMNS}
                    FROM school.payments
                    {where_sql}
                    ORDER BY created_at DESC
                    LIMIT %(limit)s OFFSET %(offset)s
                    """,
                    params,
                )
                rows = cur.fetchall()
                cur.execute(f"SELECT COUNT(*) AS total FROM school.payments {where_sql}", params)
                total = int(cur.fetchone()["total"])

        return [_row_to_payment(r) for r in rows], total

    def payment_stats(self, *, start_date: Optional[datetime], end_date: Optional[datetime]) -> dict[str, Any]:
        where_sql, params = _filters_sql(PaymentFilters(start_date=start_date, end_date=end_date))
        params.update({"pending": PENDING, "processing": PROCESSING, "completed": COMPLETED, "failed": FAILED})

        with self._conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT
                      COUNT(*)::int AS total_payments,
                      COUNT(*) FILTER (WHERE status = %(completed)s)::int AS completed_payments,
                      COUNT(*) FILTER (WHERE status IN (%(pending)s, %(processing)s))::int AS pending_payments,
                      COUNT(*) FILTER (WHERE status = %(failed)s)::int AS failed_payments,
                      COALESCE(SUM(amount), 0) AS total_amount,
                      COALESCE(SUM(amount) FILTER (WHERE status = %(completed)s), 0) AS completed_amount
                    FROM school.payments
                    {where_sql}
                    """,
                    params,
                )
                row = cur.fetchone()
        return dict(row)

    def list_stale_processing(self, *, older_than: datetime, limit: int) -> list[Payment]:
        with self._conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {PAYMENT_COLUMNS}
                    FROM school.payments
                    WHERE status = %s
                      AND checkout_request_id IS NOT NULL
                      AND updated_at <= %s
                    ORDER BY updated_at ASC
                    LIMIT %s
                    """,
                    (PROCESSING, older_than, limit),
                )
                rows = cur.fetchall()
        return [_row_to_payment(r) for r in rows]
