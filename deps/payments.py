# deps/payments.py
from app.payments.repository import PaymentRepository, PgPaymentRepository
from app.providers.mobile_money.factory import get_mpesa_provider
from app.providers.mobile_money.mpesa import MpesaProvider
from db import get_conn


def get_payment_repository() -> PaymentRepository:
    return PgPaymentRepository(get_conn)


def get_provider() -> MpesaProvider:
    return get_mpesa_provider()
