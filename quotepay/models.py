import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from quotepay.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PlanStatus:
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class InstallmentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    RETRYING = "retrying"

    UNPAID = (PENDING, FAILED, RETRYING)


class Quote(Base):
    __tablename__ = "quotes"

    id = Column(String, primary_key=True, default=lambda: uuid.uuid4().hex)
    quote_number = Column(String, unique=True, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending")

    # Customer snapshot, copied at creation
    customer_first_name = Column(String, nullable=False)
    customer_last_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False, index=True)
    customer_phone = Column(String)
    customer_company_name = Column(String)
    customer_address1 = Column(String)
    customer_address2 = Column(String)
    customer_city = Column(String)
    customer_state = Column(String)
    customer_zip = Column(String)
    customer_country = Column(String, default="US")

    services = Column(JSON, nullable=False, default=list)
    one_time_total = Column(Numeric(10, 2), nullable=False, default=0)
    subscription_monthly_total = Column(Numeric(10, 2), nullable=False, default=0)

    payment_reference_id = Column(String, unique=True, index=True)
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_transaction_id = Column(String, index=True)
    payment_paid_at = Column(DateTime(timezone=True))
    payment_amount = Column(Numeric(10, 2))
    payment_method = Column(String)
    payment_last4 = Column(String)

    is_payment_plan = Column(Boolean, nullable=False, default=False)
    payment_plan_total_amount = Column(Numeric(10, 2))
    payment_plan_installments = Column(Integer)
    payment_plan_installment_amount = Column(Numeric(10, 2))
    payment_plan_completed_payments = Column(Integer, default=0)
    payment_plan_subscription_id = Column(String, index=True)
    payment_plan_status = Column(String)

    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    payments = relationship(
        "PaymentPlanPayment",
        back_populates="quote",
        order_by="PaymentPlanPayment.payment_number",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def customer_name(self):
        return f"{self.customer_first_name} {self.customer_last_name}".strip()

    def add_warning(self, message):
        # JSON columns only detect reassignment
        meta = dict(self.meta or {})
        meta["plan_warnings"] = list(meta.get("plan_warnings", [])) + [message]
        self.meta = meta


class PaymentPlanPayment(Base):
    __tablename__ = "payment_plan_payments"
    __table_args__ = (
        UniqueConstraint("quote_id", "payment_number", name="payment_plan_payments_unique_payment"),
    )

    id = Column(String, primary_key=True, default=lambda: uuid.uuid4().hex)
    quote_id = Column(String, ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_number = Column(Integer, nullable=False)
    total_payments = Column(Integer, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String, nullable=False, default=InstallmentStatus.PENDING, index=True)
    transaction_id = Column(String, index=True)
    subscription_payment_id = Column(String, index=True)
    paid_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    retry_count = Column(Integer, nullable=False, default=0)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    quote = relationship("Quote", back_populates="payments")

    def seen_failure(self, transaction_id):
        return bool(transaction_id) and transaction_id in (self.meta or {}).get("failed_transaction_ids", [])

    def record_failure(self, transaction_id):
        meta = dict(self.meta or {})
        if transaction_id:
            meta["failed_transaction_ids"] = list(meta.get("failed_transaction_ids", [])) + [transaction_id]
        self.meta = meta
