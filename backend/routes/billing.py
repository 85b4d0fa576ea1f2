"""Billing Routes - Plans, subscriptions and one-time purchases.

Endpoints:
- GET /api/billing/plans - Plan catalog for the current environment
- POST /api/billing/subscribe - Subscribe (or switch plans) with a card nonce or card on file
- POST /api/billing/purchase - Buy a one-time pass
- POST /api/billing/cancel - Cancel the recurring subscription at period end
- GET /api/billing/status/{owner_id} - Current subscription and access decision
- GET /api/billing/catalog/unconfigured - Plans/variations missing Square ids
- POST /api/billing/catalog/sync - Create missing Square catalog objects
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from typing import Optional, NoReturn
from services.billing_errors import (
    BillingError,
    PaymentError,
    PlanConfigurationError,
    ProviderUnavailableError,
    SubscriptionNotFoundError,
)
from services.billing_services import BillingServices, get_billing_services
from services.subscription_store import to_document
from services.subscription_sync_service import has_premium
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


class SubscribeRequest(BaseModel):
    """Request to subscribe or switch plans."""
    owner_id: str
    customer_id: str
    plan_id: str  # plan_variation key, e.g. premium_monthly
    payment_method: str  # card on file id or one-time nonce (cnon:...)
    refund_unused: bool = False


class PurchaseRequest(BaseModel):
    """Request to buy a one-time pass."""
    owner_id: str
    purchase_key: str  # e.g. week_pass
    source_id: str
    customer_id: Optional[str] = None


class CancelRequest(BaseModel):
    owner_id: str


def _raise_http(e: BillingError) -> NoReturn:
    if isinstance(e, PlanConfigurationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(e, PaymentError):
        code = status.HTTP_402_PAYMENT_REQUIRED
    elif isinstance(e, SubscriptionNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, ProviderUnavailableError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_502_BAD_GATEWAY
    raise HTTPException(status_code=code, detail={"error": e.code, "message": e.message})


@router.get("/plans")
async def list_plans(billing: BillingServices = Depends(get_billing_services)):
    catalog = billing.catalog
    plans = {}
    for plan_key, plan in catalog.get_plans().items():
        plan = dict(plan)
        if "variations" in plan:
            plan["variations"] = catalog.active_variations(plan_key)
        plans[plan_key] = plan

    one_time = {
        key: purchase
        for key, purchase in catalog.get_one_time_purchases().items()
        if purchase.get("active", True)
    }
    return {
        "environment": catalog.environment.value,
        "plans": plans,
        "one_time_purchases": one_time,
    }


@router.post("/subscribe")
async def subscribe(body: SubscribeRequest, billing: BillingServices = Depends(get_billing_services)):
    try:
        record, refund = await billing.subscriptions.subscribe(
            owner_id=body.owner_id,
            customer_id=body.customer_id,
            plan_variation_key=body.plan_id,
            payment_method=body.payment_method,
            refund_unused=body.refund_unused,
        )
    except BillingError as e:
        logger.warning(f"Subscribe failed for owner {body.owner_id}: {e.code} {e.message}")
        _raise_http(e)

    return {
        "subscription": to_document(record),
        "refund": refund.model_dump(mode="json") if refund else None,
    }


@router.post("/purchase")
async def purchase(body: PurchaseRequest, billing: BillingServices = Depends(get_billing_services)):
    try:
        record = await billing.subscriptions.purchase_one_time(
            owner_id=body.owner_id,
            customer_id=body.customer_id,
            purchase_key=body.purchase_key,
            source_id=body.source_id,
        )
    except BillingError as e:
        logger.warning(f"One-time purchase failed for owner {body.owner_id}: {e.code} {e.message}")
        _raise_http(e)

    return {"subscription": to_document(record)}


@router.post("/cancel")
async def cancel(body: CancelRequest, billing: BillingServices = Depends(get_billing_services)):
    try:
        record = await billing.subscriptions.cancel_for_owner(body.owner_id)
    except BillingError as e:
        logger.warning(f"Cancel failed for owner {body.owner_id}: {e.code} {e.message}")
        _raise_http(e)

    return {
        "subscription": to_document(record),
        "message": "Subscription will end at the close of the current billing period",
    }


@router.get("/status/{owner_id}")
async def subscription_status(owner_id: str, billing: BillingServices = Depends(get_billing_services)):
    record = await billing.sync.get_active_for_owner(owner_id)
    if record is not None:
        record = await billing.sync.refresh(record)

    premium = has_premium(record)
    return {
        "owner_id": owner_id,
        "has_premium": premium,
        "subscription": to_document(record) if record else None,
        "features": billing.catalog.get_plan_features(record.plan_id) if record and premium else [],
    }


@router.get("/catalog/unconfigured")
async def unconfigured_catalog_items(billing: BillingServices = Depends(get_billing_services)):
    return {
        "environment": billing.catalog.environment.value,
        **billing.catalog.unconfigured_items(),
    }


@router.post("/catalog/sync")
async def sync_catalog(billing: BillingServices = Depends(get_billing_services)):
    return await billing.catalog_sync.sync()
