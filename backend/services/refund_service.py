"""Prorated refunds for one-time products replaced before they run out.

refund = round_half_up(price_cents * remaining_days / period_days)

Refunds are only issued automatically when the record carries the Square
payment id of the original charge; otherwise the computed amount is
reported and the refund is left for manual handling.
"""
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from models import Subscription, SubscriptionStatus, RefundInfo, RefundStatus, Cadence, CADENCE_DAYS, AuditAction, UserRole
from services.billing_errors import BillingError
from services.plan_catalog import PlanCatalog
from services.square_client import SquareClient
from utils.audit import create_audit_log
from utils.dates import utc_now, ensure_utc

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
DEFAULT_REFUND_REASON = "Prorated refund for subscription upgrade"


def calculate_remaining_days(record: Optional[Subscription], now: Optional[datetime] = None) -> int:
    """Whole days (truncated) of paid access left on an ACTIVE record."""
    if record is None or record.status != SubscriptionStatus.ACTIVE or record.next_billing_at is None:
        return 0
    now = ensure_utc(now) or utc_now()
    seconds_left = (ensure_utc(record.next_billing_at) - now).total_seconds()
    if seconds_left <= 0:
        return 0
    return int(seconds_left // SECONDS_PER_DAY)


def calculate_prorated_refund(price_cents: int, remaining_days: int, total_days: int) -> int:
    """Linear share of price_cents for the unused days, rounded half up."""
    if price_cents <= 0 or remaining_days <= 0 or total_days <= 0:
        return 0
    remaining_days = min(remaining_days, total_days)
    share = Decimal(price_cents) * Decimal(remaining_days) / Decimal(total_days)
    return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def pricing_for_plan(catalog: PlanCatalog, plan_id: str) -> Optional[Tuple[int, int, str]]:
    """(price_cents, period_days, currency) for a one-time purchase or plan_variation key."""
    one_time = catalog.get_one_time_purchase(plan_id)
    if one_time is not None:
        if one_time.duration_days <= 0:
            return None
        return one_time.price_cents, one_time.duration_days, one_time.currency

    plan_key, _, variation_key = plan_id.partition("_")
    variation = catalog.get_variation(plan_key, variation_key or "default")
    if not variation or not variation.get("cadence"):
        return None
    try:
        days = CADENCE_DAYS[Cadence(variation["cadence"])]
    except ValueError:
        return None
    return int(variation.get("amount") or 0), days, variation.get("currency", "USD")


def build_refund_info(amount: int, remaining_days: int, processed: bool) -> Optional[RefundInfo]:
    if amount <= 0 or remaining_days <= 0:
        return None
    return RefundInfo(
        amount=amount,
        remaining_days=remaining_days,
        message=f"You'll receive a ${amount / 100:.2f} refund for your remaining {remaining_days} days.",
        status=RefundStatus.PROCESSED if processed else RefundStatus.PENDING,
    )


class RefundService:
    def __init__(self, catalog: PlanCatalog, client: SquareClient):
        self.catalog = catalog
        self.client = client

    async def process_automatic_refund(
        self,
        record: Subscription,
        amount: int,
        currency: str = "USD",
        reason: str = DEFAULT_REFUND_REASON,
    ) -> bool:
        """Refund the original payment. Returns True when Square accepted the refund; never raises."""
        if amount <= 0:
            return False
        if not record.payment_id:
            logger.info(
                f"No payment_id on subscription {record.subscription_id}; "
                f"refund of {amount} cents requires manual handling"
            )
            return False

        try:
            refund = await self.client.refund_payment(record.payment_id, amount, currency, reason=reason)
        except BillingError as e:
            logger.error(f"Failed to process automatic refund for {record.subscription_id}: {e.message}")
            await create_audit_log(
                action=AuditAction.REFUND_FAILED,
                actor_role=UserRole.SYSTEM,
                owner_id=record.owner_id,
                resource_type="subscription",
                resource_id=record.subscription_id,
                metadata={"amount": amount, "payment_id": record.payment_id, "error": e.message},
            )
            return False

        logger.info(f"Processed automatic refund of {amount} cents for subscription {record.subscription_id}")
        await create_audit_log(
            action=AuditAction.REFUND_ISSUED,
            actor_role=UserRole.SYSTEM,
            owner_id=record.owner_id,
            resource_type="subscription",
            resource_id=record.subscription_id,
            metadata={"amount": amount, "payment_id": record.payment_id, "refund_id": refund.get("id")},
        )
        return True

    async def refund_unused_time(self, record: Subscription, now: Optional[datetime] = None) -> Optional[RefundInfo]:
        """Compute and (when possible) issue the prorated refund for a record being replaced."""
        remaining_days = calculate_remaining_days(record, now)
        if remaining_days <= 0:
            return None
        pricing = pricing_for_plan(self.catalog, record.plan_id)
        if pricing is None:
            logger.warning(f"No refund pricing found for plan: {record.plan_id}")
            return None

        price_cents, total_days, currency = pricing
        amount = calculate_prorated_refund(price_cents, remaining_days, total_days)
        processed = await self.process_automatic_refund(record, amount, currency)
        return build_refund_info(amount, remaining_days, processed)
