import logging
from datetime import date
from typing import Optional

from quotepay.config import PlanSettings, get_plan_settings
from quotepay.gateway import (
    BillingAddress, CardData, GatewayClient, SubscriptionRequest, SubscriptionResult,
)
from quotepay.models import (
    InstallmentStatus, PaymentPlanPayment, PlanStatus, Quote, utcnow,
)
from quotepay.payment_plan import PaymentPlanAmounts, first_run_date

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Owns the recurring-billing side of a payment plan.

    Callers own the session transaction; nothing here commits.
    """

    def __init__(self, gateway: Optional[GatewayClient] = None, settings: Optional[PlanSettings] = None):
        self.gateway = gateway
        self.settings = settings or get_plan_settings()

    def record_first_payment(self, quote: Quote, amounts: PaymentPlanAmounts, transaction_id: str):
        quote.is_payment_plan = True
        quote.payment_plan_total_amount = amounts.total
        quote.payment_plan_installments = amounts.installments
        quote.payment_plan_installment_amount = amounts.recurring_amount
        quote.payment_plan_completed_payments = 1
        quote.payment_plan_status = quote.payment_plan_status or PlanStatus.PENDING

        payment = PaymentPlanPayment(
            payment_number=1,
            total_payments=amounts.installments,
            amount=amounts.first_payment,
            status=InstallmentStatus.PAID,
            transaction_id=transaction_id,
            paid_at=utcnow(),
        )
        quote.payments.append(payment)
        return payment

    def create_plan(self, quote: Quote, amounts: PaymentPlanAmounts, card: CardData,
                    billing: BillingAddress, today: Optional[date] = None) -> SubscriptionResult:
        start_date = first_run_date(today, self.settings)
        request = SubscriptionRequest(
            name=f"Payment plan {quote.quote_number}",
            amount=amounts.recurring_amount,
            start_date=start_date,
            total_occurrences=amounts.total_occurrences,
            interval_days=self.settings.interval_days,
            invoice_number=quote.quote_number,
            description=f"{amounts.installments}-payment plan for quote {quote.quote_number}",
            ref_id=quote.payment_reference_id,
        )
        result = self.gateway.create_subscription(request, card, billing)

        if not result.approved:
            # The first charge stands; an operator sets up the remaining schedule.
            message = (
                f"Recurring subscription not created for quote {quote.quote_number}: "
                f"{result.reason_text or result.status.value}"
            )
            logger.warning(message)
            quote.add_warning(message)
            return result

        quote.payment_plan_subscription_id = result.subscription_id
        for number in range(2, amounts.installments + 1):
            quote.payments.append(PaymentPlanPayment(
                payment_number=number,
                total_payments=amounts.installments,
                amount=amounts.recurring_amount,
                status=InstallmentStatus.PENDING,
            ))
        quote.updated_at = utcnow()
        logger.info(
            "Payment plan for quote %s scheduled: subscription %s, %s x %s starting %s",
            quote.quote_number, result.subscription_id, amounts.total_occurrences,
            amounts.recurring_amount, start_date.isoformat(),
        )
        return result

    def cancel(self, quote: Quote) -> bool:
        if quote.payment_plan_status in (PlanStatus.COMPLETED, PlanStatus.CANCELLED):
            logger.info("Quote %s plan already %s, cancellation ignored",
                        quote.quote_number, quote.payment_plan_status)
            return False
        quote.payment_plan_status = PlanStatus.CANCELLED
        quote.updated_at = utcnow()
        logger.info("Payment plan cancelled for quote %s", quote.quote_number)
        return True

    def suspend(self, quote: Quote) -> bool:
        if quote.payment_plan_status in (PlanStatus.COMPLETED, PlanStatus.CANCELLED, PlanStatus.SUSPENDED):
            logger.info("Quote %s plan already %s, suspension ignored",
                        quote.quote_number, quote.payment_plan_status)
            return False
        quote.payment_plan_status = PlanStatus.SUSPENDED
        quote.updated_at = utcnow()

        current = next((p for p in quote.payments if p.status in InstallmentStatus.UNPAID), None)
        if current is not None:
            current.status = InstallmentStatus.FAILED
            current.failed_at = utcnow()
        logger.warning("Payment plan suspended for quote %s", quote.quote_number)
        return True
