"""GoHighLevel contact sync.

Payment outcomes are mirrored onto a CRM contact: find or create the contact
by email, append a note describing the payment, then apply product tags.
Callers treat every failure here as non-fatal.
"""
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from quotepay.config import CrmConfig, get_crm_config
from quotepay.events import PaymentNotification, slugify

logger = logging.getLogger(__name__)

PLAN_COMPLETED_TAG = "payment-plan-completed"


class CrmError(Exception):
    pass


def _prune(payload):
    return {k: v for k, v in payload.items() if v not in (None, "")}


def format_currency(amount) -> str:
    return f"${Decimal(str(amount or 0)).quantize(Decimal('0.01')):,}"


def resolve_contact_id(response) -> Optional[str]:
    if not isinstance(response, dict):
        return None
    if response.get("id"):
        return response["id"]
    contact = response.get("contact")
    if isinstance(contact, dict) and contact.get("id"):
        return contact["id"]
    contacts = response.get("contacts")
    if isinstance(contacts, list) and contacts and isinstance(contacts[0], dict):
        return contacts[0].get("id")
    return response.get("contactId")


class CrmClient:

    def __init__(self, config: Optional[CrmConfig] = None, http_client: Optional[httpx.Client] = None):
        self.config = config or get_crm_config()
        self._http = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.config.api_key)

    def _request(self, method, path, params=None, body=None):
        if not self.enabled:
            raise CrmError("GoHighLevel API key is required. Set GHL_API_KEY in the environment.")

        url = f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            if self._http is not None:
                response = self._http.request(method, url, params=params, json=body, headers=headers)
            else:
                with httpx.Client(timeout=self.config.timeout) as client:
                    response = client.request(method, url, params=params, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise CrmError(f"GoHighLevel request to {path} failed: {exc}")

        if response.status_code >= 400:
            logger.error("GoHighLevel API error %s on %s: %s", response.status_code, path, response.text[:500])
            raise CrmError(f"GoHighLevel API request failed with status {response.status_code}")
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    def search_contact(self, email: str):
        response = self._request("GET", "/contacts/search", params={"email": email})
        contacts = response.get("contacts") if isinstance(response, dict) else None
        for contact in contacts or []:
            if isinstance(contact, dict) and (contact.get("email") or "").lower() == email.lower():
                return contact
        return None

    def find_or_create_contact(self, contact: Dict[str, Any]):
        email = (contact.get("email") or "").strip().lower()
        if not email:
            raise CrmError("Contact email is required to find or create a GoHighLevel contact.")

        payload = _prune({
            "firstName": contact.get("first_name"),
            "lastName": contact.get("last_name"),
            "name": " ".join(p for p in (contact.get("first_name"), contact.get("last_name")) if p) or None,
            "phone": contact.get("phone"),
            "companyName": contact.get("company"),
            "address1": contact.get("address1"),
            "city": contact.get("city"),
            "state": contact.get("state"),
            "postalCode": contact.get("postal_code"),
            "country": contact.get("country"),
            "locationId": self.config.location_id,
        })

        existing = self.search_contact(email)
        if existing:
            self._request("PUT", f"/contacts/{existing['id']}", body=payload)
            return existing

        if not self.config.location_id:
            raise CrmError("GHL_LOCATION_ID is required to create new contacts.")
        response = self._request("POST", "/contacts/", body=dict(payload, email=email))
        if isinstance(response, dict) and isinstance(response.get("contact"), dict):
            return response["contact"]
        return response

    def append_note(self, contact_id: str, body: str):
        return self._request("POST", f"/contacts/{contact_id}/notes/", body={"body": body})

    def add_tags(self, contact_id: str, tags: List[str]):
        if not tags:
            return None
        return self._request("POST", f"/contacts/{contact_id}/tags/", body={"tags": tags})

    def build_tags(self, notification: PaymentNotification, plan_completed=False) -> List[str]:
        tags = list(self.config.base_tags)
        names = [notification.primary_product_name] + [item["name"] for item in notification.line_items]
        for name in names:
            slug = slugify(name)
            if slug and slug not in tags:
                tags.append(slug)
        if plan_completed:
            tags.append(PLAN_COMPLETED_TAG)
        return tags

    @staticmethod
    def build_note(notification: PaymentNotification, progress: Optional[Dict[str, Any]] = None) -> str:
        lines = ["External Sale (Authorize.net)", f"Amount: {format_currency(notification.amount)}"]
        if notification.transaction_id:
            lines.append(f"Transaction ID: {notification.transaction_id}")
        if notification.invoice_number:
            lines.append(f"Invoice: {notification.invoice_number}")
        lines.append(f"Product: {notification.primary_product_name}")
        if notification.sale_date:
            lines.append(f"Sale Date: {notification.sale_date.isoformat()}")
        if progress:
            lines.append(
                f"Payment plan: payment {progress['payment_number']} of {progress['total_payments']}"
                f" ({progress['status']})"
            )
        if notification.line_items:
            lines.append("Line Items:")
            for item in notification.line_items:
                lines.append(f" - {item['name']} ({format_currency(item['total_amount'] or item['unit_price'])})")
                if item["description"]:
                    lines.append(f"   Description: {item['description']}")
        lines += ["", "Raw Payload:", json.dumps(notification.raw, default=str)]
        return "\n".join(lines)

    def sync_payment(self, notification: PaymentNotification, progress: Optional[Dict[str, Any]] = None):
        if not self.enabled:
            logger.info("GoHighLevel not configured; skipping CRM sync for %s", notification.transaction_id)
            return None
        if not notification.email:
            logger.warning("Skipping CRM sync for %s: missing customer email", notification.transaction_id)
            return None

        address = notification.shipping if notification.shipping.get("line1") else notification.billing
        contact = self.find_or_create_contact({
            "email": notification.email,
            "first_name": notification.first_name,
            "last_name": notification.last_name,
            "phone": notification.phone,
            "company": notification.company,
            "address1": address.get("line1"),
            "city": address.get("city"),
            "state": address.get("state"),
            "postal_code": address.get("postal_code"),
            "country": address.get("country"),
        })
        contact_id = resolve_contact_id(contact)
        if not contact_id:
            raise CrmError("Unable to determine GoHighLevel contact ID from response")

        self.append_note(contact_id, self.build_note(notification, progress))
        plan_completed = bool(progress and progress.get("status") == "completed")
        self.add_tags(contact_id, self.build_tags(notification, plan_completed))
        logger.info("Synced transaction %s to GoHighLevel contact %s", notification.transaction_id, contact_id)
        return contact_id
