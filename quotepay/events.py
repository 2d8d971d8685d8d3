"""Gateway webhook event types and payload normalisation.

Webhook bodies are untrusted and often partially populated, so every field is
read defensively and missing values come back as ``None`` or empty.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

PAYMENT_CAPTURED = "net.authorize.payment.authcapture.created"
PAYMENT_PRIOR_AUTH_CAPTURED = "net.authorize.payment.capture.created"
PAYMENT_FAILED = "net.authorize.payment.authcapture.failed"
REFUND_CREATED = "net.authorize.payment.refund.created"
SUBSCRIPTION_CREATED = "net.authorize.customer.subscription.created"
SUBSCRIPTION_CANCELLED = "net.authorize.customer.subscription.cancelled"
SUBSCRIPTION_SUSPENDED = "net.authorize.customer.subscription.suspended"
SUBSCRIPTION_TERMINATED = "net.authorize.customer.subscription.terminated"

CAPTURE_EVENTS = {PAYMENT_CAPTURED, PAYMENT_PRIOR_AUTH_CAPTURED}


def dig(data, *keys):
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def first_present(*values):
    for value in values:
        if value is not None and str(value).strip() != "":
            return value
    return None


def as_text(value) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def parse_amount(value) -> Decimal:
    if value is None or value == "" or isinstance(value, bool):
        return Decimal("0")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return amount if amount.is_finite() else Decimal("0")


def slugify(name) -> Optional[str]:
    if not name:
        return None
    slug = re.sub(r"[^a-z0-9]+", "-", str(name).strip().lower()).strip("-")
    return slug or None


@dataclass
class WebhookEvent:
    event_type: str
    payload: Dict[str, Any]
    event_id: Optional[str] = None
    event_date: Optional[str] = None

    @classmethod
    def from_body(cls, body) -> Optional["WebhookEvent"]:
        """Build an event from a decoded JSON body, or None for unknown shapes."""
        if not isinstance(body, dict):
            return None
        event_type = body.get("eventType")
        if not isinstance(event_type, str) or not event_type.strip():
            return None
        payload = body.get("payload")
        return cls(
            event_type=event_type.strip(),
            payload=payload if isinstance(payload, dict) else {},
            event_id=as_text(first_present(body.get("notificationId"), body.get("id"))),
            event_date=as_text(body.get("eventDate")),
        )

    @property
    def subscription_id(self) -> Optional[str]:
        nested = as_text(dig(self.payload, "subscription", "id"))
        if nested:
            return nested
        if self.event_type.startswith("net.authorize.customer.subscription."):
            return as_text(self.payload.get("id"))
        return None


def _normalize_line_items(data) -> List[Dict[str, Any]]:
    if not data:
        return []
    if isinstance(data, list):
        raw = data
    elif isinstance(data, dict) and isinstance(data.get("lineItem"), list):
        raw = data["lineItem"]
    elif isinstance(data, dict) and data.get("lineItem"):
        raw = [data["lineItem"]]
    else:
        raw = [data]

    items = []
    for index, item in enumerate(i for i in raw if isinstance(i, dict)):
        unit_price = parse_amount(first_present(item.get("unitPrice"), item.get("price")))
        items.append({
            "item_id": as_text(first_present(item.get("itemId"), item.get("id"))),
            "name": as_text(first_present(item.get("name"), item.get("itemName"), item.get("description")))
            or f"Line Item {index + 1}",
            "description": as_text(item.get("description")) or "",
            "quantity": parse_amount(item.get("quantity")) or Decimal("1"),
            "unit_price": unit_price,
            "total_amount": parse_amount(first_present(item.get("totalAmount"), item.get("unitPrice"))),
        })
    return items


def _normalize_address(data) -> Dict[str, str]:
    if not isinstance(data, dict):
        return {}
    return {
        "first_name": as_text(data.get("firstName")) or "",
        "last_name": as_text(data.get("lastName")) or "",
        "company": as_text(data.get("company")) or "",
        "line1": as_text(data.get("address")) or "",
        "city": as_text(data.get("city")) or "",
        "state": as_text(data.get("state")) or "",
        "postal_code": as_text(data.get("zip")) or "",
        "country": as_text(data.get("country")) or "US",
        "phone": as_text(data.get("phoneNumber")) or "",
    }


@dataclass
class PaymentNotification:
    event_type: str
    transaction_id: Optional[str]
    amount: Decimal
    event_id: Optional[str] = None
    auth_code: Optional[str] = None
    invoice_number: Optional[str] = None
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    phone: str = ""
    billing: Dict[str, str] = field(default_factory=dict)
    shipping: Dict[str, str] = field(default_factory=dict)
    line_items: List[Dict[str, Any]] = field(default_factory=list)
    subscription_id: Optional[str] = None
    pay_num: Optional[str] = None
    sale_date: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def primary_product_name(self) -> str:
        if self.line_items:
            return self.line_items[0]["name"]
        return as_text(dig(self.raw, "order", "description")) or "Authorize.net Sale"

    @property
    def subscription_payment_id(self) -> Optional[str]:
        """Correlation id for a single recurring occurrence."""
        if not self.subscription_id:
            return None
        if self.pay_num:
            return f"{self.subscription_id}-{self.pay_num}"
        return self.transaction_id

    def fill_from_transaction(self, details: Dict[str, Any]):
        """Fill missing customer identity from a gateway transaction lookup."""
        self.email = self.email or as_text(dig(details, "customer", "email")) or as_text(dig(details, "billTo", "email"))
        bill_to = dig(details, "billTo") or {}
        self.first_name = self.first_name or as_text(dig(bill_to, "firstName")) or ""
        self.last_name = self.last_name or as_text(dig(bill_to, "lastName")) or ""
        self.company = self.company or as_text(dig(bill_to, "company")) or ""
        self.phone = self.phone or as_text(dig(bill_to, "phoneNumber")) or ""
        self.billing = self.billing or _normalize_address(bill_to)
        self.shipping = self.shipping or _normalize_address(dig(details, "shipTo"))
        self.invoice_number = self.invoice_number or as_text(dig(details, "order", "invoiceNumber"))
        if not self.line_items:
            self.line_items = _normalize_line_items(dig(details, "lineItems"))


def _parse_timestamp(value) -> Optional[datetime]:
    text = as_text(value)
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def normalize_payment(event: WebhookEvent) -> PaymentNotification:
    payload = event.payload
    customer = payload.get("customer") if isinstance(payload.get("customer"), dict) else {}
    bill_to = payload.get("billTo") if isinstance(payload.get("billTo"), dict) else {}
    ship_to = payload.get("shipTo") if isinstance(payload.get("shipTo"), dict) else {}

    def pick(key):
        return as_text(first_present(customer.get(key), bill_to.get(key), ship_to.get(key))) or ""

    return PaymentNotification(
        event_type=event.event_type,
        event_id=event.event_id,
        transaction_id=as_text(first_present(
            payload.get("id"), payload.get("transId"), payload.get("transactionId"),
            dig(payload, "transaction", "transId"),
        )),
        auth_code=as_text(payload.get("authCode")),
        amount=parse_amount(first_present(
            payload.get("authAmount"), payload.get("settleAmount"),
            payload.get("subscriptionAmount"), dig(payload, "order", "amount"),
        )),
        invoice_number=as_text(first_present(dig(payload, "order", "invoiceNumber"), payload.get("invoiceNumber"))),
        email=as_text(first_present(customer.get("email"), bill_to.get("email"), ship_to.get("email"))),
        first_name=pick("firstName"),
        last_name=pick("lastName"),
        company=pick("company"),
        phone=pick("phoneNumber"),
        billing=_normalize_address(bill_to),
        shipping=_normalize_address(ship_to),
        line_items=_normalize_line_items(first_present(dig(payload, "order", "lineItems"), payload.get("lineItems"))),
        subscription_id=event.subscription_id,
        pay_num=as_text(dig(payload, "subscription", "payNum")),
        sale_date=_parse_timestamp(first_present(payload.get("submitTimeUTC"), event.event_date)),
        raw=payload,
    )
