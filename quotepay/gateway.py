"""Authorize.Net XML API client.

Builds charge, recurring-billing and transaction-detail requests and turns the
gateway's replies into plain result objects. The gateway is not consistent
about how it reports success, so responses are classified from several weak
signals instead of one canonical field:

* ``messages/resultCode`` is ``Ok`` and ``transactionResponse/responseCode`` is ``1``
* a transaction id is present (``0`` counts, it marks a test-mode transaction)
  and there is no ``errors`` block
* the error text itself says "successful"

The last rule is fragile and should go once the gateway documents a stricter
contract. Nothing here writes to the database.
"""
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from quotepay.config import GatewayConfig, get_gateway_config

logger = logging.getLogger(__name__)

ANET_NAMESPACE = "AnetApi/xml/v1/schema/AnetApiSchema.xsd"

LINE_ITEM_NAME_LIMIT = 31
LINE_ITEM_DESCRIPTION_LIMIT = 255
REF_ID_LIMIT = 20

# "unsuccessful" must not match
SUCCESS_TEXT = re.compile(r"\bsuccessful\b", re.IGNORECASE)


class ChargeStatus(str, Enum):
    APPROVED = "approved"
    DECLINED = "declined"
    TRANSPORT_ERROR = "transport_error"


class CardValidationError(ValueError):
    pass


class GatewayTransportError(Exception):
    pass


@dataclass
class CardData:
    number: str
    expiration: str
    code: str

    @property
    def digits(self) -> str:
        return re.sub(r"\D", "", self.number or "")

    @property
    def last4(self) -> str:
        return self.digits[-4:]


@dataclass
class BillingAddress:
    first_name: str
    last_name: str
    address: str
    city: str
    state: str
    zip: str
    email: str
    company: str = ""
    country: str = "US"
    phone: str = ""


@dataclass
class LineItem:
    name: str
    unit_price: Decimal
    quantity: int = 1
    description: str = ""
    item_id: Optional[str] = None
    taxable: bool = False


@dataclass
class ChargeResult:
    status: ChargeStatus
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None
    reason_text: Optional[str] = None
    reason_code: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.status == ChargeStatus.APPROVED


@dataclass
class SubscriptionResult:
    status: ChargeStatus
    subscription_id: Optional[str] = None
    reason_text: Optional[str] = None
    reason_code: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.status == ChargeStatus.APPROVED


@dataclass
class SubscriptionRequest:
    name: str
    amount: Decimal
    start_date: date
    total_occurrences: int
    interval_days: int
    invoice_number: Optional[str] = None
    description: Optional[str] = None
    ref_id: Optional[str] = None


def luhn_valid(number: str) -> bool:
    digits = re.sub(r"\D", "", number or "")
    if not 13 <= len(digits) <= 19:
        return False
    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def parse_expiration(expiration: str):
    match = re.fullmatch(r"\s*(0[1-9]|1[0-2])\s*/\s*(\d{2}|\d{4})\s*", expiration or "")
    if not match:
        return None
    month, year = match.groups()
    full_year = 2000 + int(year) if len(year) == 2 else int(year)
    return full_year, int(month)


def expiration_valid(expiration: str, today: Optional[date] = None) -> bool:
    parsed = parse_expiration(expiration)
    if not parsed:
        return False
    today = today or date.today()
    return parsed >= (today.year, today.month)


def cvv_valid(code: str) -> bool:
    return bool(re.fullmatch(r"\d{3,4}", code or ""))


def validate_card(card: CardData, today: Optional[date] = None):
    if not luhn_valid(card.number):
        raise CardValidationError("Invalid card number format.")
    if not expiration_valid(card.expiration, today):
        raise CardValidationError("Invalid expiration date format.")
    if not cvv_valid(card.code):
        raise CardValidationError("Invalid CVV format.")


def gateway_expiration(expiration: str) -> str:
    parsed = parse_expiration(expiration)
    if not parsed:
        # test environment passes synthetic values straight through
        return expiration
    year, month = parsed
    return f"{year:04d}-{month:02d}"


def truncate_line_items(items: List[LineItem]) -> List[LineItem]:
    return [
        LineItem(
            name=(item.name or "")[:LINE_ITEM_NAME_LIMIT],
            description=(item.description or "")[:LINE_ITEM_DESCRIPTION_LIMIT],
            unit_price=item.unit_price,
            quantity=max(1, int(item.quantity or 1)),
            item_id=item.item_id,
            taxable=item.taxable,
        )
        for item in items or []
    ]


def format_amount(amount) -> str:
    return f"{Decimal(str(amount)).quantize(Decimal('0.01'))}"


def _add(parent, tag, text=None):
    element = ET.SubElement(parent, tag)
    if text is not None:
        element.text = str(text)
    return element


def _strip_namespaces(root):
    for element in root.iter():
        if isinstance(element.tag, str) and "}" in element.tag:
            element.tag = element.tag.split("}", 1)[1]
    return root


def parse_xml(text: str):
    text = (text or "").lstrip("\ufeff").strip()
    if not text:
        raise GatewayTransportError("Empty response from gateway")
    try:
        return _strip_namespaces(ET.fromstring(text))
    except ET.ParseError as exc:
        raise GatewayTransportError(f"Invalid XML response from gateway: {exc}")


def _text(root, path) -> Optional[str]:
    element = root.find(path)
    if element is None or element.text is None:
        return None
    value = element.text.strip()
    return value if value != "" else None


def element_to_dict(element):
    children = list(element)
    if not children:
        return (element.text or "").strip() or None
    result: Dict[str, Any] = {}
    for child in children:
        value = element_to_dict(child)
        if child.tag in result:
            if not isinstance(result[child.tag], list):
                result[child.tag] = [result[child.tag]]
            result[child.tag].append(value)
        else:
            result[child.tag] = value
    return result


def classify_transaction_response(root) -> ChargeResult:
    result_code = _text(root, "messages/resultCode")
    response_code = _text(root, "transactionResponse/responseCode")
    transaction_id = _text(root, "transactionResponse/transId")
    auth_code = _text(root, "transactionResponse/authCode")
    has_errors = root.find("transactionResponse/errors") is not None

    error_text = (
        _text(root, "transactionResponse/errors/error/errorText")
        or _text(root, "messages/message/text")
    )
    error_code = (
        _text(root, "transactionResponse/errors/error/errorCode")
        or _text(root, "messages/message/code")
    )

    approved = (
        (result_code == "Ok" and response_code == "1")
        or (transaction_id is not None and not has_errors)
        or (error_text is not None and SUCCESS_TEXT.search(error_text) is not None)
    )
    if approved:
        return ChargeResult(
            status=ChargeStatus.APPROVED,
            transaction_id=transaction_id,
            auth_code=auth_code,
        )
    return ChargeResult(
        status=ChargeStatus.DECLINED,
        transaction_id=transaction_id,
        reason_text=error_text or "Transaction failed",
        reason_code=error_code or response_code,
    )


class GatewayClient:

    def __init__(self, config: Optional[GatewayConfig] = None, http_client: Optional[httpx.Client] = None):
        self.config = config or get_gateway_config()
        self._http = http_client

    @property
    def environment(self) -> str:
        return self.config.environment

    def _document(self, request_name, ref_id=None):
        root = ET.Element(request_name, {"xmlns": ANET_NAMESPACE})
        auth = _add(root, "merchantAuthentication")
        _add(auth, "name", self.config.login_id)
        _add(auth, "transactionKey", self.config.transaction_key)
        if ref_id:
            _add(root, "refId", ref_id[:REF_ID_LIMIT])
        return root

    def _post(self, document):
        body = ET.tostring(document, encoding="utf-8", xml_declaration=True)
        headers = {"Content-Type": "text/xml", "Accept": "application/xml"}
        try:
            if self._http is not None:
                response = self._http.post(self.config.endpoint, content=body, headers=headers)
            else:
                with httpx.Client(timeout=self.config.timeout) as client:
                    response = client.post(self.config.endpoint, content=body, headers=headers)
        except httpx.HTTPError as exc:
            raise GatewayTransportError(f"Gateway request failed: {exc}")

        logger.info("Gateway %s response status: %s", self.environment.upper(), response.status_code)
        if response.status_code >= 400:
            raise GatewayTransportError(f"Gateway returned HTTP {response.status_code}")
        return parse_xml(response.text)

    @staticmethod
    def _bill_to(parent, billing: BillingAddress, include_phone=True):
        bill_to = _add(parent, "billTo")
        _add(bill_to, "firstName", billing.first_name)
        _add(bill_to, "lastName", billing.last_name)
        _add(bill_to, "company", billing.company or "")
        _add(bill_to, "address", billing.address)
        _add(bill_to, "city", billing.city)
        _add(bill_to, "state", billing.state)
        _add(bill_to, "zip", billing.zip)
        _add(bill_to, "country", billing.country or "US")
        # ARB billTo is nameAndAddressType, which has no phoneNumber
        if include_phone and billing.phone:
            _add(bill_to, "phoneNumber", billing.phone)

    @staticmethod
    def _credit_card(parent, card: CardData):
        payment = _add(parent, "payment")
        credit_card = _add(payment, "creditCard")
        _add(credit_card, "cardNumber", card.digits or card.number)
        _add(credit_card, "expirationDate", gateway_expiration(card.expiration))
        _add(credit_card, "cardCode", card.code)

    def build_charge_request(self, card, billing, amount, line_items=None, invoice_number=None, ref_id=None):
        root = self._document("createTransactionRequest", ref_id)
        txn = _add(root, "transactionRequest")
        _add(txn, "transactionType", "authCaptureTransaction")
        _add(txn, "amount", format_amount(amount))
        self._credit_card(txn, card)

        if invoice_number:
            order = _add(txn, "order")
            _add(order, "invoiceNumber", invoice_number[:20])

        items = truncate_line_items(line_items)
        if items:
            container = _add(txn, "lineItems")
            for index, item in enumerate(items, start=1):
                line = _add(container, "lineItem")
                _add(line, "itemId", (item.item_id or str(index))[:31])
                _add(line, "name", item.name)
                _add(line, "description", item.description)
                _add(line, "quantity", item.quantity)
                _add(line, "unitPrice", format_amount(item.unit_price))
                _add(line, "taxable", str(bool(item.taxable)).lower())

        if billing.email:
            customer = _add(txn, "customer")
            _add(customer, "email", billing.email)
        self._bill_to(txn, billing)

        settings = _add(txn, "transactionSettings")
        for name, value in (
            ("duplicateWindow", self.config.duplicate_window),
            ("testRequest", "false" if self.config.is_production else "true"),
        ):
            setting = _add(settings, "setting")
            _add(setting, "settingName", name)
            _add(setting, "settingValue", value)
        return root

    def build_subscription_request(self, request: SubscriptionRequest, card, billing):
        root = self._document("ARBCreateSubscriptionRequest", request.ref_id)
        subscription = _add(root, "subscription")
        _add(subscription, "name", request.name[:50])

        schedule = _add(subscription, "paymentSchedule")
        interval = _add(schedule, "interval")
        _add(interval, "length", request.interval_days)
        _add(interval, "unit", "days")
        _add(schedule, "startDate", request.start_date.isoformat())
        _add(schedule, "totalOccurrences", request.total_occurrences)

        _add(subscription, "amount", format_amount(request.amount))
        self._credit_card(subscription, card)

        if request.invoice_number or request.description:
            order = _add(subscription, "order")
            if request.invoice_number:
                _add(order, "invoiceNumber", request.invoice_number[:20])
            if request.description:
                _add(order, "description", request.description[:255])

        if billing.email:
            customer = _add(subscription, "customer")
            _add(customer, "email", billing.email)
        self._bill_to(subscription, billing, include_phone=False)
        return root

    def charge(self, card: CardData, billing: BillingAddress, amount, line_items=None,
               invoice_number=None, ref_id=None) -> ChargeResult:
        if self.config.is_production:
            validate_card(card)

        logger.info(
            "Submitting %s charge of %s (login %s)",
            self.environment.upper(), format_amount(amount), self.config.masked_login_id,
        )
        document = self.build_charge_request(card, billing, amount, line_items, invoice_number, ref_id)
        try:
            root = self._post(document)
        except GatewayTransportError as exc:
            logger.error("Gateway charge transport failure: %s", exc)
            return ChargeResult(status=ChargeStatus.TRANSPORT_ERROR, reason_text=str(exc))

        result = classify_transaction_response(root)
        if result.approved:
            logger.info(
                "%s transaction approved: id=%s auth=%s",
                self.environment.upper(), result.transaction_id, result.auth_code,
            )
        else:
            logger.info(
                "%s transaction declined: %s (%s)",
                self.environment.upper(), result.reason_text, result.reason_code,
            )
        return result

    def create_subscription(self, request: SubscriptionRequest, card: CardData,
                            billing: BillingAddress) -> SubscriptionResult:
        document = self.build_subscription_request(request, card, billing)
        try:
            root = self._post(document)
        except GatewayTransportError as exc:
            logger.error("Gateway subscription transport failure: %s", exc)
            return SubscriptionResult(status=ChargeStatus.TRANSPORT_ERROR, reason_text=str(exc))

        subscription_id = _text(root, "subscriptionId")
        result_code = _text(root, "messages/resultCode")
        if result_code == "Ok" and subscription_id:
            logger.info("Recurring subscription %s created for %s occurrences", subscription_id,
                        request.total_occurrences)
            return SubscriptionResult(status=ChargeStatus.APPROVED, subscription_id=subscription_id)

        return SubscriptionResult(
            status=ChargeStatus.DECLINED,
            subscription_id=subscription_id,
            reason_text=_text(root, "messages/message/text") or "Subscription creation failed",
            reason_code=_text(root, "messages/message/code"),
        )

    def get_transaction_details(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a transaction from the gateway, or None when it cannot be retrieved."""
        if not transaction_id:
            return None
        root = self._document("getTransactionDetailsRequest")
        _add(root, "transId", transaction_id)
        try:
            response = self._post(root)
        except GatewayTransportError as exc:
            logger.warning("Transaction detail lookup failed for %s: %s", transaction_id, exc)
            return None

        transaction = response.find("transaction")
        if _text(response, "messages/resultCode") != "Ok" or transaction is None:
            logger.warning(
                "Transaction detail lookup returned no transaction for %s: %s",
                transaction_id, _text(response, "messages/message/text"),
            )
            return None
        return element_to_dict(transaction)
