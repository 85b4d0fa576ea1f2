"""Subscription Sync Service - keep local subscription records in step with Square.

- sync_from_provider: merge a Square subscription object into a local record
- should_sync / refresh: only call Square when the billing boundary is
  unknown or close
- has_premium: the access decision for one record
- SubscriptionWebhookHandler: applies Square webhook events to local records

Status transitions are one-directional (PENDING -> ACTIVE -> DELINQUENT /
PAUSED -> CANCELED) except DELINQUENT -> ACTIVE and PAUSED -> ACTIVE.
CANCELED is terminal.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from models import Subscription, SubscriptionStatus, WebhookEvent, Cadence, CADENCE_DAYS, AuditAction, UserRole
from services import subscription_store
from services.billing_errors import BillingError, SubscriptionNotFoundError
from services.plan_catalog import PlanCatalog
from services.square_client import SquareClient
from services.square_webhook_service import subscription_id_of
from utils.audit import create_audit_log
from utils.dates import utc_now, ensure_utc, parse_provider_date

logger = logging.getLogger(__name__)

SYNC_WINDOW_DAYS = 3

ALLOWED_TRANSITIONS = {
    SubscriptionStatus.PENDING: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.DELINQUENT,
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.DELINQUENT,
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.DELINQUENT: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.PAUSED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.CANCELED: set(),
}


def can_transition(old: SubscriptionStatus, new: SubscriptionStatus) -> bool:
    return old == new or new in ALLOWED_TRANSITIONS[old]


def cadence_days_for_plan(catalog: PlanCatalog, plan_id: str) -> Optional[int]:
    plan_key, _, variation_key = plan_id.partition("_")
    variation = catalog.get_variation(plan_key, variation_key or "default") or {}
    try:
        return CADENCE_DAYS[Cadence(variation.get("cadence"))]
    except ValueError:
        return None


def sync_from_provider(
    record: Subscription,
    provider_subscription: Dict[str, Any],
    now: Optional[datetime] = None,
    cadence_days: Optional[int] = None,
) -> Subscription:
    """Return a copy of record with Square's status and billing dates merged in.

    One-time purchases (no square_subscription_id) are returned unchanged.
    When Square has not reported charged_through_date yet, next_billing_at
    falls back to started_at + cadence_days.
    """
    if not record.square_subscription_id:
        return record

    now = ensure_utc(now) or utc_now()
    updated = record.model_copy(deep=True)

    raw_status = provider_subscription.get("status")
    if raw_status:
        try:
            new_status = SubscriptionStatus(raw_status)
        except ValueError:
            logger.warning(f"Unknown Square subscription status {raw_status!r} for {record.square_subscription_id}")
            new_status = None
        if new_status is not None:
            if can_transition(updated.status, new_status):
                updated.status = new_status
            else:
                logger.warning(
                    "Ignoring status transition %s -> %s for subscription %s",
                    updated.status.value, new_status.value, record.subscription_id,
                )

    started_at = parse_provider_date(provider_subscription.get("start_date"))
    if started_at:
        updated.started_at = started_at

    charged_through = parse_provider_date(provider_subscription.get("charged_through_date"))
    if charged_through:
        updated.next_billing_at = charged_through
    elif updated.next_billing_at is None and updated.started_at and cadence_days:
        updated.next_billing_at = ensure_utc(updated.started_at) + timedelta(days=cadence_days)

    canceled_at = parse_provider_date(provider_subscription.get("canceled_date"))
    if canceled_at:
        updated.canceled_at = canceled_at
    if updated.status == SubscriptionStatus.CANCELED and updated.canceled_at is None:
        updated.canceled_at = now

    return updated


def should_sync(record: Subscription, now: Optional[datetime] = None, window_days: int = SYNC_WINDOW_DAYS) -> bool:
    """Fetch from Square only when the billing boundary is unknown or within the window.

    The distance is counted in whole days truncated toward zero, so a boundary
    3 days and 23 hours away is still inside a 3-day window.
    """
    if record.next_billing_at is None:
        return True
    now = ensure_utc(now) or utc_now()
    days_until = int((ensure_utc(record.next_billing_at) - now) / timedelta(days=1))
    return days_until <= window_days


def has_premium(record: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    """Whether this record currently grants paid access.

    Recurring subscriptions grant access while ACTIVE regardless of the
    billing date. One-time purchases grant access strictly before
    next_billing_at (ending exactly now means expired).
    """
    if record is None or record.status != SubscriptionStatus.ACTIVE:
        return False
    if record.square_subscription_id:
        return True
    if record.next_billing_at is None:
        return False
    now = ensure_utc(now) or utc_now()
    return now < ensure_utc(record.next_billing_at)


class SubscriptionSyncService:
    def __init__(self, catalog: PlanCatalog, client: SquareClient):
        self.catalog = catalog
        self.client = client

    async def apply_provider_subscription(
        self,
        record: Subscription,
        provider_subscription: Dict[str, Any],
        now: Optional[datetime] = None,
        source: str = "refresh",
    ) -> Subscription:
        updated = sync_from_provider(
            record,
            provider_subscription,
            now=now,
            cadence_days=cadence_days_for_plan(self.catalog, record.plan_id),
        )
        before = subscription_store.to_document(record)
        after = subscription_store.to_document(updated)
        before.pop("updated_at", None)
        after.pop("updated_at", None)
        if before == after:
            return record

        await subscription_store.save(updated)
        if updated.status != record.status:
            logger.info(
                "SUBSCRIPTION_STATUS_CHANGED subscription_id=%s square_subscription_id=%s from=%s to=%s source=%s",
                updated.subscription_id, updated.square_subscription_id,
                record.status.value, updated.status.value, source,
            )
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_STATUS_CHANGED,
                actor_role=UserRole.SYSTEM,
                owner_id=updated.owner_id,
                resource_type="subscription",
                resource_id=updated.subscription_id,
                before_state=before,
                after_state=after,
                metadata={"source": source},
            )
        return updated

    async def refresh(self, record: Subscription, now: Optional[datetime] = None, force: bool = False) -> Subscription:
        """Re-read the subscription from Square when due.

        A subscription Square no longer knows is marked CANCELED; any other
        failure leaves the record as it was.
        """
        if not record.square_subscription_id:
            return record
        if not force and not should_sync(record, now):
            return record

        try:
            provider_subscription = await self.client.get_subscription(record.square_subscription_id)
        except SubscriptionNotFoundError:
            logger.warning(
                f"Square subscription {record.square_subscription_id} not found; marking local record canceled"
            )
            return await self.apply_provider_subscription(
                record,
                {"status": SubscriptionStatus.CANCELED.value},
                now=now,
                source="refresh_not_found",
            )
        except BillingError as e:
            logger.warning(f"Could not refresh subscription {record.square_subscription_id}: {e.message}")
            return record

        return await self.apply_provider_subscription(record, provider_subscription, now=now)

    async def get_active_for_owner(self, owner_id: str) -> Optional[Subscription]:
        return await subscription_store.get_active_for_owner(owner_id)

    async def owner_has_premium(self, owner_id: str, now: Optional[datetime] = None) -> bool:
        record = await self.get_active_for_owner(owner_id)
        if record is None:
            return False
        record = await self.refresh(record, now=now)
        return has_premium(record, now)


class SubscriptionWebhookHandler:
    """Default webhook handler: applies subscription and invoice events to local records."""

    SUBSCRIPTION_EVENTS = {"subscription.created", "subscription.updated"}
    INVOICE_EVENTS = {"invoice.payment.made", "invoice.payment.failed"}

    def __init__(self, sync_service: SubscriptionSyncService):
        self.sync_service = sync_service

    async def handle_event(self, event: WebhookEvent) -> None:
        if event.event_type not in self.SUBSCRIPTION_EVENTS | self.INVOICE_EVENTS:
            logger.debug(f"Ignoring Square event type {event.event_type}")
            return

        square_subscription_id = subscription_id_of(event)
        if not square_subscription_id:
            logger.warning(f"Square event {event.event_id} ({event.event_type}) carries no subscription id")
            return

        record = await subscription_store.get_by_square_id(square_subscription_id)
        if record is None:
            logger.info(f"No local subscription for Square subscription {square_subscription_id}; ignoring {event.event_type}")
            return

        if event.event_type in self.SUBSCRIPTION_EVENTS:
            provider_subscription = (event.data.get("object") or {}).get("subscription") or {}
            await self.sync_service.apply_provider_subscription(
                record, provider_subscription, source=event.event_type,
            )
        else:
            await self.sync_service.refresh(record, force=True)
