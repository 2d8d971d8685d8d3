"""Reconcile gateway webhook notifications into quote and installment state.

Delivery is at-least-once, so every handler is a state transition keyed by
the gateway's own identifiers (transaction id, occurrence id, subscription
id) and replays fall through as no-ops. Each event runs in its own session
with the quote row locked; a concurrent writer on the same quote surfaces as
a version conflict and the handler is re-run from a fresh read.

The CRM is told about a payment only after the state change has committed,
and nothing it does can fail the event.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm.exc import StaleDataError
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt

from quotepay import events
from quotepay.crm import CrmClient
from quotepay.events import PaymentNotification, WebhookEvent, normalize_payment
from quotepay.gateway import GatewayClient
from quotepay.models import InstallmentStatus, PaymentStatus, PlanStatus, utcnow
from quotepay.projection import (
    find_quote_by_subscription, find_quote_for_payment, find_recorded_payment,
    mark_quote_paid, next_unpaid_payment, resolve_customer_identity,
)
from quotepay.subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


def verify_signature(body: bytes, header: Optional[str], key: str) -> bool:
    if not header:
        return False
    received = header.split("=", 1)[1] if "=" in header else header
    expected = hmac.new(key.encode(), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected.upper(), received.strip().upper())


@dataclass
class Outcome:
    result: Dict[str, Any]
    notification: Optional[PaymentNotification] = None
    progress: Optional[Dict[str, Any]] = None


def skipped(reason, **details):
    return Outcome(dict(details, action="skipped", reason=reason))


def _fill_identity_from_quote(notification, quote):
    notification.email = notification.email or quote.customer_email
    notification.first_name = notification.first_name or quote.customer_first_name or ""
    notification.last_name = notification.last_name or quote.customer_last_name or ""
    notification.phone = notification.phone or quote.customer_phone or ""
    notification.company = notification.company or quote.customer_company_name or ""
    notification.invoice_number = notification.invoice_number or quote.quote_number
    if not notification.line_items:
        notification.line_items = [
            {
                "item_id": None,
                "name": item.get("name") or "Service",
                "description": item.get("description") or "",
                "quantity": item.get("quantity") or 1,
                "unit_price": item.get("unit_price") or 0,
                "total_amount": item.get("unit_price") or 0,
            }
            for item in quote.services or []
            if isinstance(item, dict)
        ]


class WebhookReconciler:

    def __init__(self, session_factory, gateway: Optional[GatewayClient] = None,
                 crm: Optional[CrmClient] = None, subscriptions: Optional[SubscriptionManager] = None):
        self.session_factory = session_factory
        self.gateway = gateway
        self.crm = crm
        self.subscriptions = subscriptions or SubscriptionManager(gateway)
        self._handlers = {
            events.PAYMENT_CAPTURED: self._payment_captured,
            events.PAYMENT_PRIOR_AUTH_CAPTURED: self._payment_captured,
            events.PAYMENT_FAILED: self._payment_failed,
            events.REFUND_CREATED: self._refund_created,
            events.SUBSCRIPTION_CREATED: self._subscription_created,
            events.SUBSCRIPTION_CANCELLED: self._subscription_cancelled,
            events.SUBSCRIPTION_TERMINATED: self._subscription_cancelled,
            events.SUBSCRIPTION_SUSPENDED: self._subscription_suspended,
        }

    def process(self, event: WebhookEvent) -> Dict[str, Any]:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info("Unknown webhook event type: %s", event.event_type)
            return {"action": "ignored", "reason": "Unrecognized event type"}

        outcome = self._run(handler, event)
        result = dict(outcome.result)
        if outcome.notification is not None:
            result["crmSynced"] = self._sync_crm(outcome)
        return result

    @retry(
        stop=stop_after_attempt(MAX_ATTEMPTS),
        retry=retry_if_exception_type(StaleDataError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _run(self, handler, event) -> Outcome:
        db = self.session_factory()
        try:
            outcome = handler(db, event)
            db.commit()
            return outcome
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _sync_crm(self, outcome: Outcome) -> bool:
        if self.crm is None:
            return False
        try:
            return self.crm.sync_payment(outcome.notification, outcome.progress) is not None
        except Exception:
            # never allowed to fail the webhook
            logger.exception("CRM sync failed for transaction %s", outcome.notification.transaction_id)
            return False

    def _payment_captured(self, db, event):
        notification = normalize_payment(event)
        if notification.subscription_id:
            return self._installment_captured(db, notification)
        return self._one_time_captured(db, notification)

    def _one_time_captured(self, db, notification):
        identified = resolve_customer_identity(notification, self.gateway)
        quote = find_quote_for_payment(db, notification)

        if quote is None:
            if not identified:
                return skipped("Missing customer email", transactionId=notification.transaction_id)
            logger.warning(
                "No quote matches transaction %s (invoice %s, email %s)",
                notification.transaction_id, notification.invoice_number, notification.email,
            )
            # still an external sale worth recording in the CRM
            outcome = skipped("No matching quote", transactionId=notification.transaction_id)
            outcome.notification = notification
            return outcome

        _fill_identity_from_quote(notification, quote)
        base = {"quoteId": quote.id, "quoteNumber": quote.quote_number, "transactionId": notification.transaction_id}

        if quote.is_payment_plan:
            return self._first_installment_confirmed(quote, notification, base)

        if not mark_quote_paid(quote, notification):
            logger.info("Quote %s already paid with transaction %s", quote.quote_number, notification.transaction_id)
            return Outcome(dict(base, action="duplicate"))

        logger.info("Quote %s marked paid by transaction %s", quote.quote_number, notification.transaction_id)
        return Outcome(dict(base, action="quote_paid"), notification=notification)

    def _first_installment_confirmed(self, quote, notification, base):
        meta = dict(quote.meta or {})
        confirmed = list(meta.get("confirmed_transactions", []))
        if notification.transaction_id in confirmed:
            return Outcome(dict(base, action="duplicate"))

        first = next((p for p in quote.payments if p.payment_number == 1), None)
        if first is None or first.transaction_id != notification.transaction_id:
            logger.warning(
                "Capture %s on payment-plan quote %s does not match its first installment",
                notification.transaction_id, quote.quote_number,
            )
            return Outcome(dict(base, action="skipped", reason="Transaction does not match first installment"))

        meta["confirmed_transactions"] = confirmed + [notification.transaction_id]
        quote.meta = meta
        quote.updated_at = utcnow()
        progress = {
            "payment_number": 1,
            "total_payments": quote.payment_plan_installments,
            "status": quote.payment_plan_status,
        }
        return Outcome(dict(base, action="first_installment_confirmed"), notification=notification, progress=progress)

    def _installment_captured(self, db, notification):
        quote = find_quote_by_subscription(db, notification.subscription_id)
        if quote is None:
            logger.warning("No quote found for subscription %s", notification.subscription_id)
            return skipped("No quote found for subscription ID", subscriptionId=notification.subscription_id)
        if not quote.is_payment_plan:
            return skipped("Quote is not a payment plan", quoteId=quote.id)

        base = {
            "quoteId": quote.id,
            "quoteNumber": quote.quote_number,
            "subscriptionId": notification.subscription_id,
            "transactionId": notification.transaction_id,
        }
        recorded = find_recorded_payment(quote, notification.transaction_id, notification.subscription_payment_id)
        if recorded is not None:
            logger.info(
                "Installment %s of quote %s already recorded for transaction %s",
                recorded.payment_number, quote.quote_number, notification.transaction_id,
            )
            return Outcome(dict(base, action="duplicate", paymentNumber=recorded.payment_number))

        payment = next_unpaid_payment(quote)
        if payment is None:
            logger.warning(
                "Installment capture %s for quote %s but every installment is already paid",
                notification.transaction_id, quote.quote_number,
            )
            return Outcome(dict(base, action="skipped", reason="All installments already paid"))

        now = utcnow()
        payment.status = InstallmentStatus.PAID
        payment.transaction_id = notification.transaction_id
        payment.subscription_payment_id = notification.subscription_payment_id
        payment.paid_at = notification.sale_date or now

        quote.payment_plan_completed_payments = (quote.payment_plan_completed_payments or 0) + 1
        is_complete = quote.payment_plan_completed_payments >= quote.payment_plan_installments
        if is_complete:
            quote.payment_plan_status = PlanStatus.COMPLETED
            quote.payment_status = PaymentStatus.PAID
            quote.status = "paid"
            quote.payment_paid_at = now
        elif quote.payment_plan_status != PlanStatus.CANCELLED:
            quote.payment_plan_status = PlanStatus.ACTIVE
        quote.updated_at = now

        logger.info(
            "Processed installment %s/%s for quote %s",
            payment.payment_number, quote.payment_plan_installments, quote.quote_number,
        )
        _fill_identity_from_quote(notification, quote)
        progress = {
            "payment_number": payment.payment_number,
            "total_payments": quote.payment_plan_installments,
            "status": quote.payment_plan_status,
        }
        result = dict(
            base,
            action="installment_paid",
            paymentNumber=payment.payment_number,
            totalPayments=quote.payment_plan_installments,
            completedPayments=quote.payment_plan_completed_payments,
            isComplete=is_complete,
        )
        return Outcome(result, notification=notification, progress=progress)

    def _payment_failed(self, db, event):
        notification = normalize_payment(event)
        if not notification.subscription_id:
            logger.info(
                "One-time payment failed: transaction %s, amount %s, invoice %s",
                notification.transaction_id, notification.amount, notification.invoice_number,
            )
            return Outcome({"action": "logged", "transactionId": notification.transaction_id})

        quote = find_quote_by_subscription(db, notification.subscription_id)
        if quote is None or not quote.is_payment_plan:
            logger.warning("Installment failure for unknown subscription %s", notification.subscription_id)
            return skipped("No quote found for subscription ID", subscriptionId=notification.subscription_id)

        base = {"quoteId": quote.id, "quoteNumber": quote.quote_number, "subscriptionId": notification.subscription_id}
        for payment in quote.payments:
            if payment.seen_failure(notification.transaction_id):
                return Outcome(dict(base, action="duplicate", paymentNumber=payment.payment_number))

        payment = next_unpaid_payment(quote)
        if payment is None:
            logger.warning("Installment failure for quote %s but every installment is paid", quote.quote_number)
            return Outcome(dict(base, action="skipped", reason="All installments already paid"))

        if payment.status == InstallmentStatus.PENDING:
            payment.status = InstallmentStatus.FAILED
        else:
            payment.status = InstallmentStatus.RETRYING
        payment.retry_count = (payment.retry_count or 0) + 1
        payment.failed_at = utcnow()
        payment.record_failure(notification.transaction_id)
        quote.updated_at = utcnow()

        logger.warning(
            "Installment %s for quote %s failed (attempt %s)",
            payment.payment_number, quote.quote_number, payment.retry_count,
        )
        return Outcome(dict(
            base, action="installment_failed", paymentNumber=payment.payment_number,
            retryCount=payment.retry_count,
        ))

    def _refund_created(self, db, event):
        notification = normalize_payment(event)
        logger.info("Refund created: transaction %s, amount %s", notification.transaction_id, notification.amount)
        return Outcome({"action": "logged", "transactionId": notification.transaction_id})

    def _subscription_quote(self, db, event):
        subscription_id = event.subscription_id
        if not subscription_id:
            return None, skipped("No subscription ID in event")
        quote = find_quote_by_subscription(db, subscription_id)
        if quote is None:
            logger.warning("%s for unknown subscription %s", event.event_type, subscription_id)
            return None, skipped("No quote found for subscription ID", subscriptionId=subscription_id)
        if not quote.is_payment_plan:
            return None, skipped("Quote is not a payment plan", quoteId=quote.id)
        return quote, None

    def _plan_result(self, quote, action, changed):
        return Outcome({
            "action": action if changed else "unchanged",
            "quoteId": quote.id,
            "quoteNumber": quote.quote_number,
            "subscriptionId": quote.payment_plan_subscription_id,
            "status": quote.payment_plan_status,
        })

    def _subscription_created(self, db, event):
        quote, skip = self._subscription_quote(db, event)
        if skip:
            return skip
        changed = quote.payment_plan_status in (None, PlanStatus.PENDING)
        if changed:
            quote.payment_plan_status = PlanStatus.ACTIVE
            quote.updated_at = utcnow()
            logger.info("Payment plan for quote %s is active", quote.quote_number)
        return self._plan_result(quote, "plan_activated", changed)

    def _subscription_cancelled(self, db, event):
        quote, skip = self._subscription_quote(db, event)
        if skip:
            return skip
        return self._plan_result(quote, "plan_cancelled", self.subscriptions.cancel(quote))

    def _subscription_suspended(self, db, event):
        quote, skip = self._subscription_quote(db, event)
        if skip:
            return skip
        return self._plan_result(quote, "plan_suspended", self.subscriptions.suspend(quote))
