from datetime import date
from decimal import Decimal

from quotepay.gateway import BillingAddress, CardData, ChargeStatus, SubscriptionResult
from quotepay.models import Quote
from quotepay.payment_plan import split
from quotepay.subscriptions import SubscriptionManager

CARD = CardData(number="4111111111111111", expiration="12/30", code="123")
BILLING = BillingAddress(
    first_name="Jane", last_name="Doe", address="1 Main St", city="Austin",
    state="TX", zip="78701", email="jane@example.com",
)


def quote():
    return Quote(quote_number="Q-2026-0001", customer_first_name="Jane", customer_last_name="Doe",
                 customer_email="jane@example.com", payment_reference_id="REF-1")


def test_plan_schedules_remaining_installments(mocker):
    gateway = mocker.Mock()
    gateway.create_subscription.return_value = SubscriptionResult(ChargeStatus.APPROVED, subscription_id="SUB-1")
    manager = SubscriptionManager(gateway)
    q = quote()
    amounts = split(Decimal("100.01"), 3)

    manager.record_first_payment(q, amounts, "TX-1")
    manager.create_plan(q, amounts, CARD, BILLING, today=date(2026, 10, 17))

    request = gateway.create_subscription.call_args[0][0]
    assert request.amount == Decimal("33.34")
    assert request.total_occurrences == 2
    assert request.interval_days == 14
    assert request.start_date == date(2026, 10, 31)
    assert request.invoice_number == "Q-2026-0001"
    assert request.ref_id == "REF-1"

    assert q.payment_plan_subscription_id == "SUB-1"
    assert q.payment_plan_completed_payments == 1
    assert [(p.payment_number, p.amount, p.status) for p in q.payments] == [
        (1, Decimal("33.33"), "paid"),
        (2, Decimal("33.34"), "pending"),
        (3, Decimal("33.34"), "pending"),
    ]


def test_failed_subscription_keeps_first_payment_and_warns(mocker):
    gateway = mocker.Mock()
    gateway.create_subscription.return_value = SubscriptionResult(
        ChargeStatus.DECLINED, reason_text="Duplicate subscription.")
    manager = SubscriptionManager(gateway)
    q = quote()
    amounts = split(Decimal("300"), 3)

    manager.record_first_payment(q, amounts, "TX-1")
    result = manager.create_plan(q, amounts, CARD, BILLING)

    assert not result.approved
    assert q.payment_plan_subscription_id is None
    assert [p.payment_number for p in q.payments] == [1]
    assert "Duplicate subscription." in q.meta["plan_warnings"][0]


def test_cancel_and_suspend_are_idempotent():
    manager = SubscriptionManager()
    q = quote()
    q.payment_plan_status = "active"

    assert manager.suspend(q) is True
    assert manager.suspend(q) is False
    assert manager.cancel(q) is True
    assert manager.cancel(q) is False
    assert q.payment_plan_status == "cancelled"


def test_completed_plan_cannot_be_cancelled():
    q = quote()
    q.payment_plan_status = "completed"
    assert SubscriptionManager().cancel(q) is False
    assert q.payment_plan_status == "completed"
