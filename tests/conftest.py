# tests/conftest.py

import uuid
from datetime import datetime, timezone
from typing import Dict

import pytest
from fastapi.testclient import TestClient

from app.providers.mobile_money.config import MpesaConfig
from app.providers.mobile_money.mpesa import MpesaProvider
from deps.payments import get_payment_repository, get_provider
from fakes import FakeHttp, InMemoryPaymentRepository, auth_headers
from main import app
from services.metrics import reset_counters


FIXED_NOW = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_counters()
    yield
    reset_counters()


@pytest.fixture
def mpesa_config() -> MpesaConfig:
    return MpesaConfig(
        mode="sandbox",
        base_url="https://sandbox.safaricom.test",
        consumer_key="ck-123",
        consumer_secret="cs-456",
        shortcode="174379",
        passkey="pk-789",
        callback_url="https://school.test/api/payments/mpesa/callback",
    )


@pytest.fixture
def fake_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def provider(mpesa_config, fake_http) -> MpesaProvider:
    return MpesaProvider(mpesa_config, http=fake_http, clock=lambda: FIXED_NOW)


@pytest.fixture
def repo() -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository()


# ---------------------------
# Client + Auth Helpers
# ---------------------------

@pytest.fixture
def client(repo, provider) -> TestClient:
    app.dependency_overrides[get_payment_repository] = lambda: repo
    app.dependency_overrides[get_provider] = lambda: provider
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return auth_headers(uuid.uuid4(), role="admin")
