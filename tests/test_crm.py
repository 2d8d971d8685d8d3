import json
from decimal import Decimal

import httpx
import pytest

from quotepay.config import CrmConfig
from quotepay.crm import CrmClient, CrmError, format_currency, resolve_contact_id
from quotepay.events import PAYMENT_CAPTURED, WebhookEvent, normalize_payment

CONFIG = CrmConfig(
    base_url="https://crm.test/v1",
    api_key="ghl-key",
    location_id="LOC-1",
    timeout=5,
    base_tags=("authorize.net",),
)


def notification():
    return normalize_payment(WebhookEvent(PAYMENT_CAPTURED, {
        "id": "TX-1",
        "authAmount": "1234.50",
        "customer": {"email": "Jane@Example.com"},
        "billTo": {"firstName": "Jane", "lastName": "Doe", "address": "1 Main St", "city": "Austin", "zip": "78701"},
        "order": {
            "invoiceNumber": "Q-2026-0001",
            "lineItems": {"lineItem": {"name": "Roof Repair", "description": "Tear-off", "unitPrice": "1234.50"}},
        },
    }))


class FakeCrm:
    def __init__(self, existing=None, status_code=200):
        self.calls = []
        self.existing = existing
        self.status_code = status_code

    def __call__(self, request):
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, request.url.path, body))
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"message": "boom"})
        if request.url.path.endswith("/contacts/search"):
            return httpx.Response(200, json={"contacts": [self.existing] if self.existing else []})
        if request.method == "POST" and request.url.path.endswith("/contacts/"):
            return httpx.Response(200, json={"contact": {"id": "C-NEW"}})
        return httpx.Response(200, json={})

    def client(self, config=CONFIG):
        return CrmClient(config, http_client=httpx.Client(transport=httpx.MockTransport(self)))


def test_sync_creates_contact_then_notes_and_tags():
    fake = FakeCrm()
    contact_id = fake.client().sync_payment(notification())

    assert contact_id == "C-NEW"
    methods = [(m, p) for m, p, _ in fake.calls]
    assert methods == [
        ("GET", "/v1/contacts/search"),
        ("POST", "/v1/contacts/"),
        ("POST", "/v1/contacts/C-NEW/notes/"),
        ("POST", "/v1/contacts/C-NEW/tags/"),
    ]
    created = fake.calls[1][2]
    assert created["email"] == "jane@example.com"
    assert created["locationId"] == "LOC-1"
    assert created["postalCode"] == "78701"
    assert fake.calls[3][2] == {"tags": ["authorize.net", "roof-repair"]}


def test_sync_updates_existing_contact():
    fake = FakeCrm(existing={"id": "C-7", "email": "jane@example.com"})
    assert fake.client().sync_payment(notification()) == "C-7"
    assert ("PUT", "/v1/contacts/C-7") in [(m, p) for m, p, _ in fake.calls]


def test_completed_plan_gets_tagged_and_noted():
    fake = FakeCrm(existing={"id": "C-7", "email": "jane@example.com"})
    progress = {"payment_number": 3, "total_payments": 3, "status": "completed"}

    fake.client().sync_payment(notification(), progress)

    note = fake.calls[-2][2]["body"]
    assert "Amount: $1,234.50" in note
    assert "Payment plan: payment 3 of 3 (completed)" in note
    assert "payment-plan-completed" in fake.calls[-1][2]["tags"]


def test_disabled_without_api_key():
    fake = FakeCrm()
    config = CrmConfig(base_url="https://crm.test/v1", api_key=None, location_id=None, timeout=5, base_tags=())
    assert fake.client(config).sync_payment(notification()) is None
    assert fake.calls == []


def test_missing_email_is_not_synced():
    fake = FakeCrm()
    n = notification()
    n.email = None
    assert fake.client().sync_payment(n) is None
    assert fake.calls == []


def test_api_errors_raise():
    with pytest.raises(CrmError):
        FakeCrm(status_code=500).client().sync_payment(notification())


def test_helpers():
    assert format_currency(Decimal("5")) == "$5.00"
    assert resolve_contact_id({"contact": {"id": "A"}}) == "A"
    assert resolve_contact_id({"contacts": [{"id": "B"}]}) == "B"
    assert resolve_contact_id(None) is None
