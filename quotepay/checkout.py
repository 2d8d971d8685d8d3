import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt

from quotepay.gateway import (
    BillingAddress, CardData, ChargeStatus, GatewayClient,
    LineItem, REF_ID_LIMIT, truncate_line_items, validate_card,
)
from quotepay.models import PlanStatus, Quote
from quotepay.payment_plan import PaymentPlanAmounts, first_run_date, split, to_cents
from quotepay.subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)

QUOTE_NUMBER_ATTEMPTS = 3

REQUIRED_FIELDS = (
    "reference_id", "card_number", "expiration_date", "card_code", "first_name",
    "last_name", "address1", "city", "state", "zip", "email",
)


class CheckoutValidationError(ValueError):
    pass


class LineItemIn(BaseModel):
    name: str
    unit_price: Decimal
    quantity: int = 1
    description: str = ""
    item_id: Optional[str] = None
    taxable: bool = False


class CheckoutRequest(BaseModel):
    reference_id: str = ""
    card_number: str = ""
    expiration_date: str = ""
    card_code: str = ""
    first_name: str = ""
    last_name: str = ""
    company_name: str = ""
    address1: str = ""
    address2: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = "US"
    phone: str = ""
    email: str = ""
    amount: Optional[Decimal] = None
    line_items: List[LineItemIn] = []
    subscription_monthly_total: Decimal = Decimal("0")
    is_payment_plan: bool = False
    installments: Optional[int] = None


@dataclass
class CheckoutResult:
    status_code: int
    body: Dict[str, Any]


def _money(value):
    return float(value) if value is not None else None


def validate_request(request: CheckoutRequest) -> Optional[PaymentPlanAmounts]:
    missing = [name for name in REQUIRED_FIELDS if not str(getattr(request, name) or "").strip()]
    if missing or request.amount is None:
        raise CheckoutValidationError("Missing required payment or customer information.")
    if len(request.reference_id) > REF_ID_LIMIT:
        raise CheckoutValidationError(f"reference_id must be at most {REF_ID_LIMIT} characters.")
    if request.amount <= 0 or request.amount != to_cents(request.amount):
        raise CheckoutValidationError("Amount must be a positive value with at most two decimals.")
    if request.is_payment_plan:
        return split(request.amount, request.installments)
    return None


def next_quote_number(db, today: Optional[date] = None) -> str:
    prefix = f"Q-{(today or date.today()).year}-"
    numbers = db.query(Quote.quote_number).filter(Quote.quote_number.like(prefix + "%")).all()
    highest = max(
        (int(number[len(prefix):]) for (number,) in numbers if number[len(prefix):].isdigit()),
        default=0,
    )
    return f"{prefix}{highest + 1:04d}"


def _line_items(request: CheckoutRequest) -> List[LineItem]:
    return truncate_line_items([
        LineItem(
            name=item.name,
            description=item.description,
            unit_price=item.unit_price,
            quantity=item.quantity,
            item_id=item.item_id,
            taxable=item.taxable,
        )
        for item in request.line_items
    ])


@retry(
    stop=stop_after_attempt(QUOTE_NUMBER_ATTEMPTS),
    retry=retry_if_exception_type(IntegrityError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def create_quote(db, request: CheckoutRequest, amounts: Optional[PaymentPlanAmounts]) -> Quote:
    """Insert a quote under the next free quote number.

    A concurrent checkout can take the same number first; the insert is then
    retried with a fresh one. A concurrent insert for the same reference id
    wins and its quote is returned instead.
    """
    quote = Quote(
        quote_number=next_quote_number(db),
        customer_first_name=request.first_name.strip(),
        customer_last_name=request.last_name.strip(),
        customer_email=request.email.strip(),
        customer_phone=request.phone or None,
        customer_company_name=request.company_name or None,
        customer_address1=request.address1,
        customer_address2=request.address2 or None,
        customer_city=request.city,
        customer_state=request.state,
        customer_zip=request.zip,
        customer_country=request.country or "US",
        services=[
            {
                "name": item.name,
                "description": item.description,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
            }
            for item in _line_items(request)
        ],
        one_time_total=request.amount,
        subscription_monthly_total=request.subscription_monthly_total,
        payment_reference_id=request.reference_id,
        is_payment_plan=amounts is not None,
    )
    if amounts is not None:
        quote.payment_plan_total_amount = amounts.total
        quote.payment_plan_installments = amounts.installments
        quote.payment_plan_installment_amount = amounts.recurring_amount
        quote.payment_plan_completed_payments = 0
        quote.payment_plan_status = PlanStatus.PENDING
    db.add(quote)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.query(Quote).filter_by(payment_reference_id=request.reference_id).first()
        if existing is not None:
            return existing
        raise
    logger.info("Created quote %s for reference %s", quote.quote_number, request.reference_id)
    return quote


def process_checkout(db, request: CheckoutRequest, gateway: GatewayClient,
                     subscriptions: Optional[SubscriptionManager] = None) -> CheckoutResult:
    """Charge a checkout and, for payment plans, schedule the remaining installments.

    Validation errors raise before anything reaches the gateway. Declines and
    transport failures come back as results with an explicit reason.
    """
    amounts = validate_request(request)
    card = CardData(number=request.card_number, expiration=request.expiration_date, code=request.card_code)
    if gateway.config.is_production:
        validate_card(card)

    if not gateway.config.has_credentials:
        logger.error("Gateway %s credentials not configured", gateway.environment)
        return CheckoutResult(500, {
            "success": False,
            "error": f"Authorize.net {gateway.environment} credentials not configured.",
        })

    quote = db.query(Quote).filter_by(payment_reference_id=request.reference_id).first()
    if quote is None:
        quote = create_quote(db, request, amounts)
    if quote.payment_transaction_id:
        logger.info("Reference %s already charged as %s", request.reference_id, quote.payment_transaction_id)
        return CheckoutResult(200, {
            "success": True,
            "alreadyProcessed": True,
            "quoteId": quote.id,
            "quoteNumber": quote.quote_number,
            "transactionId": quote.payment_transaction_id,
            "amount": _money(quote.payment_amount),
        })

    billing = BillingAddress(
        first_name=request.first_name,
        last_name=request.last_name,
        company=request.company_name,
        address=request.address1,
        city=request.city,
        state=request.state,
        zip=request.zip,
        country=request.country or "US",
        phone=request.phone,
        email=request.email,
    )
    charge_amount = amounts.first_payment if amounts else request.amount

    result = gateway.charge(
        card, billing, charge_amount,
        line_items=_line_items(request),
        invoice_number=quote.quote_number,
        ref_id=request.reference_id,
    )

    if result.status == ChargeStatus.TRANSPORT_ERROR:
        return CheckoutResult(502, {
            "success": False,
            "error": "Payment gateway unreachable; the charge may still have gone through. "
                     "Check the quote before resubmitting with the same reference_id.",
            "details": result.reason_text,
            "quoteId": quote.id,
            "quoteNumber": quote.quote_number,
        })
    if result.status == ChargeStatus.DECLINED:
        return CheckoutResult(402, {
            "success": False,
            "error": result.reason_text,
            "reasonCode": result.reason_code,
            "quoteId": quote.id,
            "quoteNumber": quote.quote_number,
            "environment": gateway.environment,
        })

    quote.payment_transaction_id = result.transaction_id
    quote.payment_amount = charge_amount
    quote.payment_method = "credit_card"
    quote.payment_last4 = card.last4 or None
    manager = None
    if amounts is not None:
        manager = subscriptions or SubscriptionManager(gateway)
        manager.record_first_payment(quote, amounts, result.transaction_id)
    # charge and payment 1 are committed before the subscription call
    db.commit()

    body = {
        "success": True,
        "quoteId": quote.id,
        "quoteNumber": quote.quote_number,
        "transactionId": result.transaction_id,
        "authCode": result.auth_code,
        "amount": _money(charge_amount),
        "environment": gateway.environment,
    }

    if manager is not None:
        subscription = manager.create_plan(quote, amounts, card, billing)
        plan = {
            "installments": amounts.installments,
            "firstPayment": _money(amounts.first_payment),
            "recurringAmount": _money(amounts.recurring_amount),
            "totalOccurrences": amounts.total_occurrences,
            "startDate": first_run_date(settings=manager.settings).isoformat(),
            "subscriptionId": subscription.subscription_id if subscription.approved else None,
        }
        if not subscription.approved:
            plan["warning"] = "Recurring payments could not be scheduled; our team will follow up."
        body["paymentPlan"] = plan
        db.commit()

    return CheckoutResult(200, body)

