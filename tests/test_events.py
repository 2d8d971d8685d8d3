from decimal import Decimal

from quotepay import events
from quotepay.events import WebhookEvent, normalize_payment


def test_from_body_rejects_unknown_shapes():
    assert WebhookEvent.from_body(None) is None
    assert WebhookEvent.from_body([1, 2]) is None
    assert WebhookEvent.from_body({"payload": {}}) is None
    assert WebhookEvent.from_body({"eventType": "  "}) is None


def test_from_body():
    event = WebhookEvent.from_body({
        "notificationId": "n-1",
        "eventType": events.PAYMENT_CAPTURED,
        "eventDate": "2026-10-17T12:00:00Z",
        "payload": {"id": "TX-1"},
    })
    assert event.event_id == "n-1"
    assert event.payload == {"id": "TX-1"}
    assert event.subscription_id is None


def test_subscription_id_comes_from_nested_block_or_subscription_event():
    payment = WebhookEvent(events.PAYMENT_CAPTURED, {"id": "TX-1", "subscription": {"id": 42, "payNum": 3}})
    assert payment.subscription_id == "42"
    created = WebhookEvent(events.SUBSCRIPTION_CREATED, {"id": "SUB-1"})
    assert created.subscription_id == "SUB-1"


def test_normalize_payment():
    event = WebhookEvent(events.PAYMENT_CAPTURED, {
        "id": "TX-1",
        "authAmount": 99.5,
        "billTo": {"firstName": "Jane", "email": "jane@example.com"},
        "shipTo": {"lastName": "Doe"},
        "subscription": {"id": "SUB-1", "payNum": "2"},
        "submitTimeUTC": "2026-10-17T12:00:00",
        "lineItems": [{"itemId": "1", "name": "Gutter cleaning", "unitPrice": "99.50", "quantity": "1"}],
    })

    n = normalize_payment(event)

    assert n.transaction_id == "TX-1"
    assert n.amount == Decimal("99.5")
    assert n.email == "jane@example.com"
    assert (n.first_name, n.last_name) == ("Jane", "Doe")
    assert n.subscription_payment_id == "SUB-1-2"
    assert n.sale_date.tzinfo is not None
    assert n.primary_product_name == "Gutter cleaning"


def test_normalize_payment_tolerates_garbage():
    n = normalize_payment(WebhookEvent(events.PAYMENT_CAPTURED, {"authAmount": "n/a", "customer": "x"}))
    assert n.transaction_id is None
    assert n.amount == Decimal("0")
    assert n.email is None
    assert n.primary_product_name == "Authorize.net Sale"


def test_fill_from_transaction_keeps_known_values():
    n = normalize_payment(WebhookEvent(events.PAYMENT_CAPTURED, {"id": "TX-1", "billTo": {"firstName": "Jane"}}))
    n.fill_from_transaction({
        "customer": {"email": "jane@example.com"},
        "billTo": {"firstName": "Janet", "lastName": "Doe"},
        "order": {"invoiceNumber": "Q-2026-0009"},
    })
    assert n.email == "jane@example.com"
    assert n.first_name == "Jane"
    assert n.last_name == "Doe"
    assert n.invoice_number == "Q-2026-0009"
