import logging
from typing import Optional

from sqlalchemy import func

from quotepay.events import PaymentNotification
from quotepay.gateway import GatewayClient
from quotepay.models import InstallmentStatus, PaymentStatus, Quote, utcnow

logger = logging.getLogger(__name__)


def _money(value):
    return float(value) if value is not None else 0.0


def _timestamp(value):
    return value.isoformat() if value is not None else None


def _select_quote(db, lock):
    query = db.query(Quote)
    return query.with_for_update() if lock else query


def find_quote_by_subscription(db, subscription_id, lock=True) -> Optional[Quote]:
    if not subscription_id:
        return None
    return (
        _select_quote(db, lock)
        .filter(Quote.payment_plan_subscription_id == subscription_id)
        .first()
    )


def find_quote_for_payment(db, notification: PaymentNotification, lock=True) -> Optional[Quote]:
    """Match a one-time capture to its quote: transaction id, then invoice number, then email."""
    if notification.transaction_id:
        quote = (
            _select_quote(db, lock)
            .filter(Quote.payment_transaction_id == notification.transaction_id)
            .first()
        )
        if quote:
            return quote

    if notification.invoice_number:
        quote = (
            _select_quote(db, lock)
            .filter(Quote.quote_number == notification.invoice_number)
            .first()
        )
        if quote:
            return quote

    if notification.email:
        return (
            _select_quote(db, lock)
            .filter(func.lower(Quote.customer_email) == notification.email.strip().lower())
            .filter(Quote.payment_status == PaymentStatus.PENDING)
            .order_by(Quote.created_at.desc())
            .first()
        )
    return None


def resolve_customer_identity(notification: PaymentNotification, gateway: Optional[GatewayClient]) -> bool:
    """Make sure the notification carries a customer email.

    Falls back to a gateway transaction lookup when the webhook left it out.
    """
    if notification.email:
        return True
    if gateway is not None and notification.transaction_id:
        details = gateway.get_transaction_details(notification.transaction_id)
        if details:
            notification.fill_from_transaction(details)
    if not notification.email:
        logger.warning(
            "Payment notification without customer email after detail lookup "
            "(transaction %s, invoice %s, amount %s); skipping update",
            notification.transaction_id, notification.invoice_number, notification.amount,
        )
        return False
    return True


def mark_quote_paid(quote: Quote, notification: PaymentNotification) -> bool:
    if quote.payment_status == PaymentStatus.PAID and quote.payment_transaction_id == notification.transaction_id:
        return False
    quote.payment_status = PaymentStatus.PAID
    quote.status = "paid"
    quote.payment_transaction_id = notification.transaction_id or quote.payment_transaction_id
    quote.payment_paid_at = notification.sale_date or utcnow()
    if notification.amount:
        quote.payment_amount = notification.amount
    quote.payment_method = quote.payment_method or "credit_card"
    quote.updated_at = utcnow()
    return True


def next_unpaid_payment(quote: Quote):
    return next((p for p in quote.payments if p.status in InstallmentStatus.UNPAID), None)


def find_recorded_payment(quote: Quote, transaction_id, subscription_payment_id):
    for payment in quote.payments:
        if payment.status != InstallmentStatus.PAID:
            continue
        if transaction_id and payment.transaction_id == transaction_id:
            return payment
        if subscription_payment_id and payment.subscription_payment_id == subscription_payment_id:
            return payment
    return None


def serialize_payment(payment):
    return {
        "number": payment.payment_number,
        "total": payment.total_payments,
        "amount": _money(payment.amount),
        "status": payment.status,
        "paidAt": _timestamp(payment.paid_at),
        "failedAt": _timestamp(payment.failed_at),
        "transactionId": payment.transaction_id,
        "retryCount": payment.retry_count or 0,
    }


def payment_plan_status(quote: Quote):
    return {
        "quoteId": quote.id,
        "quoteNumber": quote.quote_number,
        "customerEmail": quote.customer_email,
        "customerName": quote.customer_name,
        "totalAmount": _money(quote.payment_plan_total_amount),
        "installments": quote.payment_plan_installments or 0,
        "installmentAmount": _money(quote.payment_plan_installment_amount),
        "completedPayments": quote.payment_plan_completed_payments or 0,
        "status": quote.payment_plan_status or "pending",
        "subscriptionId": quote.payment_plan_subscription_id,
        "warnings": list((quote.meta or {}).get("plan_warnings", [])),
        "payments": [serialize_payment(p) for p in quote.payments],
    }


def check_quote_paid(db, email):
    normalized = (email or "").strip().lower()
    quote = (
        db.query(Quote)
        .filter(func.lower(Quote.customer_email) == normalized)
        .filter(Quote.payment_status == PaymentStatus.PAID)
        .order_by(Quote.created_at.desc())
        .first()
    )
    if not quote:
        return {"isPaid": False, "quoteId": None, "message": "No paid quote found for this email"}
    return {
        "isPaid": True,
        "quoteId": quote.id,
        "quoteNumber": quote.quote_number,
        "paidAt": _timestamp(quote.payment_paid_at),
        "transactionId": quote.payment_transaction_id,
        "amount": _money(quote.payment_amount),
    }
