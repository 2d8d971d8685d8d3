import json
import logging
import os
from datetime import datetime, timezone

from fastapi import FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool

from quotepay.config import get_webhook_signature_key
from quotepay.crm import CrmClient
from quotepay.database import Base, engine, SessionLocal
from quotepay.events import WebhookEvent
from quotepay.gateway import GatewayClient
from quotepay.routes import router
from quotepay.webhooks import WebhookReconciler, verify_signature

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Quote Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


def _now():
    return datetime.now(timezone.utc).isoformat()


@app.post("/webhook")
async def gateway_webhook(request: Request, x_anet_signature: str = Header(None)):
    # Never answer non-200, the gateway would redeliver
    payload = await request.body()
    try:
        body = json.loads(payload) if payload else None
    except ValueError:
        body = None
    event_type = body.get("eventType") if isinstance(body, dict) else None
    if not isinstance(event_type, str):
        event_type = None

    signature_key = get_webhook_signature_key()
    if signature_key and not verify_signature(payload, x_anet_signature, signature_key):
        logger.warning("Webhook signature mismatch for %s; event not processed", event_type)
        return {"success": False, "error": "Invalid signature", "eventType": event_type, "timestamp": _now()}

    event = WebhookEvent.from_body(body)
    if event is None:
        logger.info("Webhook received (unknown format)")
        return {
            "success": True,
            "message": "Webhook received and acknowledged",
            "eventType": event_type,
            "timestamp": _now(),
        }

    logger.info("Processing webhook event %s (%s)", event.event_type, event.event_id)
    reconciler = WebhookReconciler(SessionLocal, gateway=GatewayClient(), crm=CrmClient())
    try:
        result = await run_in_threadpool(reconciler.process, event)
    except Exception as exc:
        logger.exception("Webhook processing error for %s", event.event_type)
        return {
            "success": False,
            "error": "Webhook processed with errors",
            "message": str(exc),
            "eventType": event.event_type,
            "timestamp": _now(),
        }

    return {
        **result,
        "success": True,
        "message": "Webhook processed successfully",
        "eventType": event.event_type,
        "timestamp": _now(),
    }
