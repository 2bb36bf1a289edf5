from __future__ import annotations

import uuid
from decimal import Decimal

import httpx

from app.payments.state_machine import COMPLETED, FAILED, PENDING, PROCESSING
from fakes import STK_ACK, auth_headers, callback_body, json_response
from services.metrics import get_counter

PUSH = "/mpesa/stkpush/v1/processrequest"
QUERY = "/mpesa/stkpushquery/v1/query"
ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _student_with_fee(repo, amount=Decimal("1000.00"), **fee_kwargs):
    student = repo.add_student(admission_no="2024-001")
    fee = repo.add_fee(student, amount=amount, **fee_kwargs)
    return student, fee, auth_headers(student.user_id)


def _initiate(client, fee, headers, phone="0712345678", **extra):
    return client.post(
        "/api/payments/mpesa/initiate",
        json={"fee_id": str(fee.id), "phone_number": phone, **extra},
        headers=headers,
    )


# -----------------------
# Initiate
# -----------------------
def test_initiate_then_callback_completes_fee(client, repo, fake_http):
    student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))

    r = _initiate(client, fee, headers)
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["status"] == PROCESSING
    assert data["checkout_request_id"] == "ws_CO_1"
    assert data["customer_message"] == "Success. Request accepted."

    body = fake_http.last_post_body(PUSH)
    assert body["PhoneNumber"] == "254712345678"
    assert body["Amount"] == 1000
    assert body["AccountReference"] == "FEE-2024-001"
    assert body["TransactionDesc"] == "Fee payment for Term 1 tuition"

    payment_id = uuid.UUID(data["payment_id"])
    stored = repo.get_payment(payment_id)
    assert stored.status == PROCESSING
    assert stored.initiated_by == student.user_id
    assert stored.phone_number == "254712345678"

    cb = client.post("/api/payments/mpesa/callback", json=callback_body("ws_CO_1", 0))
    assert cb.status_code == 200
    assert cb.json() == ACK

    assert repo.get_payment(payment_id).status == COMPLETED
    assert repo.fees[fee.id].status == "paid"

    status = client.get(f"/api/payments/status/{payment_id}", headers=headers)
    assert status.status_code == 200, status.text
    detail = status.json()
    assert detail["status"] == COMPLETED
    assert detail["mpesa_receipt_number"] == "NLJ7RT61SV"
    assert detail["phone_number"] == "254712****78"

    assert get_counter("mpesa_stk_push_total", {"result": "accepted"}) == 1
    assert get_counter("mpesa_callbacks_total", {"valid": "true", "applied": "true"}) == 1


def test_initiate_partial_amount(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))

    r = _initiate(client, fee, headers, amount="250.40")
    assert r.status_code == 200, r.text
    assert fake_http.last_post_body(PUSH)["Amount"] == 250


def test_fractional_fee_is_stored_as_the_pushed_amount(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo, amount=Decimal("499.60"))
    fake_http.on_post(PUSH, json_response(200, STK_ACK))

    r = _initiate(client, fee, headers)
    assert r.status_code == 200, r.text

    pushed = fake_http.last_post_body(PUSH)["Amount"]
    assert pushed == 500
    stored = repo.get_payment(uuid.UUID(r.json()["payment_id"]))
    assert stored.amount == Decimal(pushed)
    assert stored.currency == "KES"
    assert Decimal(r.json()["amount"]) == Decimal("500")


def test_amount_rounding_below_one_is_rejected_before_any_push(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)

    r = _initiate(client, fee, headers, amount="0.40")

    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "INVALID_AMOUNT"
    assert repo.payments == {}
    assert fake_http.count("POST", PUSH) == 0


def test_callback_arriving_before_checkout_id_is_applied_on_accept(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))

    early = client.post("/api/payments/mpesa/callback", json=callback_body("ws_CO_1", 0))
    assert early.json() == ACK
    assert repo.callback_events[-1]["ignore_reason"] == "PAYMENT_NOT_FOUND"

    r = _initiate(client, fee, headers)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == COMPLETED

    payment = repo.get_payment(uuid.UUID(r.json()["payment_id"]))
    assert payment.status == COMPLETED
    assert payment.mpesa_receipt_number == "NLJ7RT61SV"
    assert repo.fees[fee.id].status == "paid"


def test_early_failure_callback_fails_payment_on_accept(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))
    client.post("/api/payments/mpesa/callback", json=callback_body("ws_CO_1", 1032, with_metadata=False))

    r = _initiate(client, fee, headers)
    assert r.json()["status"] == FAILED
    assert repo.fees[fee.id].status != "paid"


def test_initiate_provider_failure_marks_payment_failed(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(500, {"errorCode": "500.001.1001", "errorMessage": "Unable to lock subscriber"}))

    r = _initiate(client, fee, headers)

    assert r.status_code == 400
    detail = r.json()["detail"]
    assert detail["error"] == "STK_PUSH_FAILED"
    assert detail["message"] == "Unable to lock subscriber"
    payment = repo.get_payment(uuid.UUID(detail["payment_id"]))
    assert payment.status == FAILED
    assert payment.failure_reason == "Unable to lock subscriber"
    assert payment.checkout_request_id is None
    assert get_counter("mpesa_stk_push_total", {"result": "failed"}) == 1


def test_initiate_transport_error_is_400_not_500(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, httpx.ConnectError("connection refused"))

    r = _initiate(client, fee, headers)
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "STK_PUSH_FAILED"


def test_initiate_rejects_bad_phone(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    r = _initiate(client, fee, headers, phone="0812 345 678")
    assert r.status_code == 422
    assert r.json()["detail"] == "INVALID_PHONE_NUMBER"
    assert repo.payments == {}
    assert fake_http.calls == []


def test_initiate_rejects_paid_fee(client, repo):
    _student, fee, headers = _student_with_fee(repo, status="paid")
    r = _initiate(client, fee, headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "FEE_ALREADY_PAID"


def test_initiate_fee_of_another_student_is_404(client, repo):
    _owner, fee, _ = _student_with_fee(repo)
    other = repo.add_student(admission_no="2024-002")
    r = _initiate(client, fee, auth_headers(other.user_id))
    assert r.status_code == 404
    assert r.json()["detail"] == "FEE_NOT_FOUND"


def test_initiate_requires_student_record(client, repo):
    _student, fee, _ = _student_with_fee(repo)
    r = _initiate(client, fee, auth_headers(uuid.uuid4()))
    assert r.status_code == 404
    assert r.json()["detail"] == "STUDENT_NOT_FOUND"


def test_initiate_requires_auth(client, repo):
    _student, fee, _ = _student_with_fee(repo)
    assert _initiate(client, fee, {}).status_code == 401
    assert _initiate(client, fee, {"Authorization": "Bearer not-a-jwt"}).status_code == 401


# -----------------------
# Callback
# -----------------------
def test_callback_acks_malformed_payloads(client, repo):
    for payload in ({}, {"Body": {}}, {"Body": {"stkCallback": {"ResultCode": 0}}}):
        r = client.post("/api/payments/mpesa/callback", json=payload)
        assert r.status_code == 200
        assert r.json() == ACK

    r = client.post(
        "/api/payments/mpesa/callback",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 200
    assert r.json() == ACK

    assert len(repo.callback_events) == 4
    assert all(e["valid"] is False for e in repo.callback_events)
    assert repo.callback_events[0]["ignore_reason"] == "INVALID_PAYLOAD"
    assert repo.callback_events[2]["ignore_reason"] == "MALFORMED_CALLBACK"
    assert get_counter("mpesa_callbacks_total", {"valid": "false", "applied": "false"}) == 4


def test_callback_for_unknown_checkout_is_acked(client, repo):
    r = client.post("/api/payments/mpesa/callback", json=callback_body("ws_CO_unknown", 0))
    assert r.json() == ACK
    assert repo.callback_events[-1]["ignore_reason"] == "PAYMENT_NOT_FOUND"


def test_duplicate_and_conflicting_callbacks(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))
    payment_id = uuid.UUID(_initiate(client, fee, headers).json()["payment_id"])

    client.post("/api/payments/mpesa/callback", json=callback_body("ws_CO_1", 0))
    dup = client.post("/api/payments/mpesa/callback", json=callback_body("ws_CO_1", 0))
    late = client.post("/api/payments/mpesa/callback", json=callback_body("ws_CO_1", 1032))

    assert dup.json() == ACK
    assert late.json() == ACK
    assert repo.get_payment(payment_id).status == COMPLETED
    reasons = [e["ignore_reason"] for e in repo.callback_events]
    assert reasons == [None, "ALREADY_COMPLETED", "CONFLICTING_OUTCOME"]
    assert len(repo.anomalies) == 1


def test_callback_audit_masks_phone(client, repo):
    client.post("/api/payments/mpesa/callback", json=callback_body("ws_CO_unknown", 0))
    stored = repo.callback_events[-1]["body"]
    items = stored["Body"]["stkCallback"]["CallbackMetadata"]["Item"]
    phone = next(i for i in items if i["Name"] == "PhoneNumber")["Value"]
    assert phone == "254712****78"


def test_callback_needs_no_auth(client):
    r = client.post("/api/payments/mpesa/callback", json=callback_body("ws_CO_x", 1032))
    assert r.status_code == 200


# -----------------------
# Query
# -----------------------
def test_query_applies_terminal_answer(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))
    fake_http.on_post(
        QUERY,
        json_response(200, {"ResponseCode": "0", "ResultCode": "1032", "ResultDesc": "Request cancelled by user"}),
    )
    payment_id = _initiate(client, fee, headers).json()["payment_id"]

    r = client.post(f"/api/payments/mpesa/query/{payment_id}", headers=headers)

    assert r.status_code == 200, r.text
    data = r.json()
    assert data["status"] == FAILED
    assert data["result_code"] == 1032
    assert data["applied"] is True


def test_query_still_processing(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))
    fake_http.on_post(QUERY, json_response(500, {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}))
    payment_id = _initiate(client, fee, headers).json()["payment_id"]

    r = client.post(f"/api/payments/mpesa/query/{payment_id}", headers=headers)

    assert r.status_code == 200, r.text
    assert r.json()["status"] == PROCESSING
    assert r.json()["reason"] == "STILL_PROCESSING"


def test_query_provider_down_is_502(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))
    fake_http.on_post(QUERY, json_response(503, {"errorMessage": "Service unavailable"}))
    payment_id = _initiate(client, fee, headers).json()["payment_id"]

    r = client.post(f"/api/payments/mpesa/query/{payment_id}", headers=headers)
    assert r.status_code == 502
    assert r.json()["detail"]["error"] == "STK_QUERY_FAILED"


def test_query_on_terminal_payment_skips_provider(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))
    payment_id = _initiate(client, fee, headers).json()["payment_id"]
    client.post("/api/payments/mpesa/callback", json=callback_body("ws_CO_1", 0))

    r = client.post(f"/api/payments/mpesa/query/{payment_id}", headers=headers)

    assert r.json()["reason"] == "ALREADY_COMPLETED"
    assert fake_http.count("POST", QUERY) == 0


# -----------------------
# Reads
# -----------------------
def test_student_cannot_see_other_students_payment(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))
    payment_id = _initiate(client, fee, headers).json()["payment_id"]

    other = repo.add_student(admission_no="2024-002")
    r = client.get(f"/api/payments/status/{payment_id}", headers=auth_headers(other.user_id))
    assert r.status_code == 403

    r = client.get(f"/api/payments/status/{payment_id}", headers=auth_headers(uuid.uuid4(), role="teacher"))
    assert r.status_code == 200


def test_status_unknown_payment_404(client, admin_headers):
    r = client.get(f"/api/payments/status/{uuid.uuid4()}", headers=admin_headers)
    assert r.status_code == 404


def test_history_scopes_students_to_themselves(client, repo, fake_http):
    student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))
    _initiate(client, fee, headers)

    other = repo.add_student(admission_no="2024-002")
    other_fee = repo.add_fee(other)
    fake_http.on_post(PUSH, json_response(200, {**STK_ACK, "CheckoutRequestID": "ws_CO_2"}))
    _initiate(client, other_fee, auth_headers(other.user_id))

    # student_id is ignored for students
    r = client.get(f"/api/payments/history?student_id={other.id}", headers=headers)
    assert r.status_code == 200, r.text
    payments = r.json()["payments"]
    assert len(payments) == 1
    assert payments[0]["student_id"] == str(student.id)

    teacher = auth_headers(uuid.uuid4(), role="teacher")
    assert client.get("/api/payments/history", headers=teacher).status_code == 400
    r = client.get(f"/api/payments/history?student_id={other.id}", headers=teacher)
    assert r.json()["pagination"]["total"] == 1


def test_admin_list_filters_and_paginates(client, repo, fake_http, admin_headers):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK), json_response(500, {"errorMessage": "down"}), json_response(500, {"errorMessage": "down"}))
    for _ in range(3):
        _initiate(client, fee, headers)

    r = client.get("/api/payments?limit=2", headers=admin_headers)
    assert r.status_code == 200, r.text
    body = r.json()
    assert len(body["payments"]) == 2
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}

    r = client.get("/api/payments?status=failed", headers=admin_headers)
    assert r.json()["pagination"]["total"] == 2

    assert client.get("/api/payments?status=bogus", headers=admin_headers).status_code == 400


def test_admin_routes_forbidden_for_students(client, repo):
    _student, _fee, headers = _student_with_fee(repo)
    r = client.get("/api/payments", headers=headers)
    assert r.status_code == 403
    assert r.json()["detail"] == "ADMIN_REQUIRED"
    assert client.get("/api/payments/stats", headers=headers).status_code == 403


def test_admin_stats(client, repo, fake_http, admin_headers):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK), json_response(400, {"errorMessage": "Invalid PhoneNumber"}))
    _initiate(client, fee, headers)
    _initiate(client, fee, headers)
    client.post("/api/payments/mpesa/callback", json=callback_body("ws_CO_1", 0))

    r = client.get("/api/payments/stats", headers=admin_headers)

    assert r.status_code == 200, r.text
    stats = r.json()
    assert stats["total_payments"] == 2
    assert stats["completed_payments"] == 1
    assert stats["failed_payments"] == 1
    assert stats["pending_payments"] == 0
    assert Decimal(stats["total_amount"]) == Decimal("2000")
    assert Decimal(stats["completed_amount"]) == Decimal("1000")
    assert Decimal(stats["pending_amount"]) == Decimal("1000")
    assert stats["success_rate"] == 50.0


def test_unexpected_error_is_json_500(client, repo, monkeypatch):
    _student, fee, headers = _student_with_fee(repo)

    def boom(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(repo, "create_payment", boom)
    r = _initiate(client, fee, headers)
    assert r.status_code == 500
    assert r.json() == {"detail": "Internal server error"}


def test_pending_is_never_left_behind_on_accept(client, repo, fake_http):
    _student, fee, headers = _student_with_fee(repo)
    fake_http.on_post(PUSH, json_response(200, STK_ACK))
    _initiate(client, fee, headers)
    assert all(p.status != PENDING for p in repo.payments.values())
