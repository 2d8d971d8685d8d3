import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from quotepay.main import app as fastapi_app
from quotepay.database import Base
from quotepay.gateway import ChargeResult, ChargeStatus, SubscriptionResult
from quotepay.models import Quote
import quotepay.routes
import quotepay.auth

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_integration.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

PAYMENT_CAPTURED = "net.authorize.payment.authcapture.created"


@pytest.fixture(autouse=True)
def setup_db():
    # Setup: Create the tables
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def client(monkeypatch):
    # Point every session the application opens at the test database
    monkeypatch.setattr("quotepay.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("quotepay.main.SessionLocal", TestingSessionLocal)

    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[quotepay.auth.verify_token] = lambda: {"sub": "ops"}

    with TestClient(fastapi_app) as c:
        yield c

    # Cleanup dependencies
    fastapi_app.dependency_overrides.clear()


def webhook(client, event_type, payload, notification_id=None):
    response = client.post("/webhook", json={
        "notificationId": notification_id or f"n-{event_type}-{payload.get('id')}",
        "eventType": event_type,
        "eventDate": "2026-10-17T12:00:00.000Z",
        "payload": payload,
    })
    assert response.status_code == 200
    assert response.json()["success"] is True
    return response.json()


def test_full_payment_plan_lifecycle_integration(client, mocker):
    """
    Test the full lifecycle of a 3-payment plan:
    1. Checkout charges the first payment and schedules the subscription
    2. The gateway confirms the subscription
    3. Two recurring captures arrive, one of them delivered twice
    4. The plan ends completed and the quote paid
    """
    # --- 1. CHECKOUT ---
    mocker.patch("quotepay.gateway.GatewayClient.charge", return_value=ChargeResult(
        status=ChargeStatus.APPROVED, transaction_id="TX-1", auth_code="AUTH1"))
    mocker.patch("quotepay.gateway.GatewayClient.create_subscription", return_value=SubscriptionResult(
        status=ChargeStatus.APPROVED, subscription_id="SUB-9"))
    sync = mocker.patch("quotepay.crm.CrmClient.sync_payment", return_value="C-1")

    response = client.post("/payments", json={
        "reference_id": "REF-INT-001",
        "card_number": "4111111111111111",
        "expiration_date": "12/30",
        "card_code": "123",
        "first_name": "Jane",
        "last_name": "Doe",
        "address1": "1 Main St",
        "city": "Austin",
        "state": "TX",
        "zip": "78701",
        "email": "jane@example.com",
        "amount": "100.01",
        "line_items": [{"name": "Roof repair", "unit_price": "100.01"}],
        "is_payment_plan": True,
        "installments": 3,
    })
    assert response.status_code == 200
    quote_id = response.json()["quoteId"]
    assert response.json()["amount"] == 33.33
    assert response.json()["paymentPlan"]["recurringAmount"] == 33.34

    # --- 2. SUBSCRIPTION CONFIRMED ---
    result = webhook(client, "net.authorize.customer.subscription.created", {"id": "SUB-9"})
    assert result["action"] == "plan_activated"

    # --- 3. RECURRING CAPTURES ---
    second = {"id": "TX-2", "authAmount": 33.34, "subscription": {"id": "SUB-9", "payNum": 1}}
    assert webhook(client, PAYMENT_CAPTURED, second)["paymentNumber"] == 2
    assert webhook(client, PAYMENT_CAPTURED, second)["action"] == "duplicate"

    third = {"id": "TX-3", "authAmount": 33.34, "subscription": {"id": "SUB-9", "payNum": 2}}
    result = webhook(client, PAYMENT_CAPTURED, third)
    assert result["isComplete"] is True
    assert result["crmSynced"] is True

    # --- 4. FINAL STATE ---
    status = client.get(f"/payment-plans/{quote_id}").json()["paymentPlan"]
    assert status["status"] == "completed"
    assert status["completedPayments"] == 3
    assert [p["transactionId"] for p in status["payments"]] == ["TX-1", "TX-2", "TX-3"]
    assert sum(p["amount"] for p in status["payments"]) == pytest.approx(100.01)

    db = TestingSessionLocal()
    quote = db.get(Quote, quote_id)
    assert quote.payment_status == "paid"
    assert quote.status == "paid"
    db.close()

    assert client.post("/quotes/payment-status", json={"email": "jane@example.com"}).json()["isPaid"] is True
    assert sync.call_count == 2


def test_one_time_checkout_then_capture_webhook(client, mocker):
    mocker.patch("quotepay.gateway.GatewayClient.charge", return_value=ChargeResult(
        status=ChargeStatus.APPROVED, transaction_id="TX-50", auth_code="AUTH1"))
    sync = mocker.patch("quotepay.crm.CrmClient.sync_payment", return_value="C-1")

    response = client.post("/payments", json={
        "reference_id": "REF-INT-002",
        "card_number": "4111111111111111",
        "expiration_date": "12/30",
        "card_code": "123",
        "first_name": "Sam",
        "last_name": "Lee",
        "address1": "9 Elm St",
        "city": "Dallas",
        "state": "TX",
        "zip": "75201",
        "email": "sam@example.com",
        "amount": "450.00",
    })
    quote_id = response.json()["quoteId"]

    payload = {"id": "TX-50", "authAmount": 450.0, "customer": {"email": "sam@example.com"}}
    assert webhook(client, PAYMENT_CAPTURED, payload)["action"] == "quote_paid"
    assert webhook(client, PAYMENT_CAPTURED, payload)["action"] == "duplicate"

    db = TestingSessionLocal()
    quote = db.get(Quote, quote_id)
    assert quote.payment_status == "paid"
    assert quote.payment_paid_at is not None
    db.close()
    assert sync.call_count == 1


def test_webhook_for_unknown_subscription(client):
    """Events that reference nothing we know are acknowledged and dropped."""
    result = webhook(client, PAYMENT_CAPTURED, {"id": "TX-404", "subscription": {"id": "SUB-404"}})
    assert result["action"] == "skipped"
