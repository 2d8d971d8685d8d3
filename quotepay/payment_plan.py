"""Split a quote total into a first payment plus equal recurring installments.

The recurring amount is the total divided by the installment count, rounded
to the cent. Whatever that rounding leaves over (or takes away) lands on the
first payment, which is charged immediately at checkout, so the installments
always add back up to the total exactly.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from quotepay.config import PlanSettings, get_plan_settings

CENT = Decimal("0.01")


class PlanValidationError(ValueError):
    pass


@dataclass(frozen=True)
class PaymentPlanAmounts:
    first_payment: Decimal
    recurring_amount: Decimal
    total_occurrences: int

    @property
    def installments(self) -> int:
        return self.total_occurrences + 1

    @property
    def total(self) -> Decimal:
        return self.first_payment + self.recurring_amount * self.total_occurrences


def to_cents(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _as_decimal(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise PlanValidationError("Invalid total amount")
    if not amount.is_finite():
        raise PlanValidationError("Invalid total amount")
    return amount


def split(total, installments, settings: Optional[PlanSettings] = None) -> PaymentPlanAmounts:
    settings = settings or get_plan_settings()
    total = _as_decimal(total)

    if total <= 0:
        raise PlanValidationError("Total amount must be greater than 0")
    if total != to_cents(total):
        raise PlanValidationError("Total amount must not have fractional cents")
    if isinstance(installments, bool) or not isinstance(installments, int):
        raise PlanValidationError("Invalid number of installments")
    if not settings.min_installments <= installments <= settings.max_installments:
        raise PlanValidationError(
            f"Installments must be between {settings.min_installments} and {settings.max_installments}"
        )

    if total / installments < settings.min_installment_amount:
        raise PlanValidationError(
            f"Minimum payment would be ${to_cents(total / installments)}. "
            f"Each payment must be at least ${settings.min_installment_amount}"
        )

    recurring = to_cents(total / installments)
    first = total - recurring * (installments - 1)

    return PaymentPlanAmounts(
        first_payment=first,
        recurring_amount=recurring,
        total_occurrences=installments - 1,
    )


def first_run_date(today: Optional[date] = None, settings: Optional[PlanSettings] = None) -> date:
    """Date the gateway runs the first recurring occurrence."""
    settings = settings or get_plan_settings()
    today = today or date.today()
    return today + timedelta(days=settings.start_offset_days)
