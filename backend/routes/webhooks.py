"""Webhook Routes - Square webhooks.

POST /api/webhooks/square - Square subscription/invoice/payment events

Responses:
- 200 once signature and parse succeed (handler failures are logged, not surfaced)
- 401 missing or invalid x-square-hmacsha256-signature
- 400 unreadable or malformed body
- 500 webhook signature key not configured
"""
from fastapi import APIRouter, Depends, HTTPException, Request, Header
from services.billing_services import BillingServices, get_billing_services
from services.square_webhook_service import SIGNATURE_HEADER
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/square")
async def square_webhook(
    request: Request,
    x_square_hmacsha256_signature: str = Header(None, alias=SIGNATURE_HEADER),
    billing: BillingServices = Depends(get_billing_services),
):
    try:
        payload = await request.body()
    except Exception as e:
        logger.error(f"Failed to read Square webhook body: {e}")
        payload = None

    result = await billing.webhooks.process(payload, x_square_hmacsha256_signature)

    if not result.ok:
        raise HTTPException(status_code=result.http_status, detail=result.outcome.value)

    return {
        "received": True,
        "event_id": result.event.event_id if result.event else None,
        "duplicate": result.duplicate,
    }
