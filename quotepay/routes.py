import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from quotepay.auth import require_admin, verify_token
from quotepay.checkout import CheckoutRequest, CheckoutValidationError, process_checkout
from quotepay.crm import CrmClient
from quotepay.database import SessionLocal
from quotepay.events import PAYMENT_CAPTURED, WebhookEvent
from quotepay.gateway import CardValidationError, GatewayClient
from quotepay.models import Quote
from quotepay.payment_plan import PlanValidationError
from quotepay.projection import check_quote_paid, payment_plan_status
from quotepay.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


class PaymentStatusRequest(BaseModel):
    email: str


class ManualSyncRequest(BaseModel):
    transaction_id: str = Field(..., alias="transactionId")


@router.post("/payments")
def checkout(request: CheckoutRequest):
    db = SessionLocal()
    try:
        result = process_checkout(db, request, GatewayClient())
    except (CheckoutValidationError, PlanValidationError, CardValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    finally:
        db.close()

    return JSONResponse(status_code=result.status_code, content=result.body)


@router.get("/payment-plans/{quote_id}")
def get_payment_plan(quote_id: str, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        quote = db.get(Quote, quote_id)
        if not quote:
            raise HTTPException(status_code=404, detail="Quote not found")
        if not quote.is_payment_plan:
            raise HTTPException(status_code=400, detail="Quote is not a payment plan")
        return {"success": True, "paymentPlan": payment_plan_status(quote)}
    finally:
        db.close()


@router.post("/quotes/payment-status")
def quote_payment_status(request: PaymentStatusRequest):
    if not request.email.strip():
        raise HTTPException(status_code=400, detail="Email is required")
    db = SessionLocal()
    try:
        return check_quote_paid(db, request.email)
    finally:
        db.close()


@router.post("/sync/transactions")
def sync_transaction(request: ManualSyncRequest, auth=Depends(require_admin)):
    gateway = GatewayClient()
    details = gateway.get_transaction_details(request.transaction_id)
    if not details:
        raise HTTPException(status_code=404, detail="Transaction not found at the gateway")

    logger.info("Manual sync of transaction %s requested by %s", request.transaction_id, auth.get("sub"))
    event = WebhookEvent(
        event_type=PAYMENT_CAPTURED,
        payload=details,
        event_id=f"manual-{request.transaction_id}",
        event_date=details.get("submitTimeUTC"),
    )
    result = WebhookReconciler(SessionLocal, gateway=gateway, crm=CrmClient()).process(event)
    return {"success": result.get("action") != "skipped", "result": result}
