"""Subscription Service - Square subscription lifecycle.

Handles:
- Creating subscriptions (immediately or with a deferred start date)
- Upgrades/downgrades that preserve already-paid access
- Cancellation
- One-time (time-boxed) purchases
- Recording local subscription state and audit entries

Payment methods are either a card on file id or a one-time card nonce
("cnon:..."); nonces are exchanged for a card on file before the
subscription is created.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Tuple

from models import Subscription, SubscriptionStatus, RefundInfo, AuditAction, UserRole
from services import subscription_store
from services.billing_config import BillingConfig
from services.billing_errors import (
    CardSaveFailedError,
    PlanNotFoundError,
    SubscriptionFailedError,
    SubscriptionNotFoundError,
    BillingError,
)
from services.plan_catalog import PlanCatalog
from services.refund_service import RefundService
from services.square_client import SquareClient
from services.subscription_sync_service import sync_from_provider, cadence_days_for_plan
from utils.audit import create_audit_log
from utils.dates import utc_now, ensure_utc, parse_provider_date

logger = logging.getLogger(__name__)

CARD_NONCE_PREFIX = "cnon:"
DEFAULT_VARIATION_KEY = "default"


def parse_plan_variation_key(key: str) -> Tuple[str, str]:
    """Split "premium_monthly" into ("premium", "monthly"); "basic" -> ("basic", "default")."""
    plan_key, sep, variation_key = key.partition("_")
    if not sep:
        return key, DEFAULT_VARIATION_KEY
    return plan_key, variation_key


def calculate_deferred_start_date(
    access_ends_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Start date (YYYY-MM-DD) for a subscription that must not overlap paid access.

    Returns the day after access_ends_at when it is strictly in the future,
    otherwise None (start immediately). Access ending exactly now counts as
    already ended.
    """
    if access_ends_at is None:
        return None
    access_ends_at = ensure_utc(access_ends_at)
    now = ensure_utc(now) or utc_now()
    if access_ends_at <= now:
        return None
    return (access_ends_at + timedelta(days=1)).date().isoformat()


def _local_status(provider_subscription: Dict[str, Any], deferred: bool) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(provider_subscription.get("status"))
    except ValueError:
        return SubscriptionStatus.PENDING if deferred else SubscriptionStatus.ACTIVE


class SubscriptionService:
    def __init__(
        self,
        config: BillingConfig,
        catalog: PlanCatalog,
        client: SquareClient,
        refunds: Optional[RefundService] = None,
    ):
        self.config = config
        self.catalog = catalog
        self.client = client
        self.refunds = refunds or RefundService(catalog, client)

    # =========================================================================
    # Provider operations
    # =========================================================================

    def resolve_variation_id(self, plan_key: str, variation_key: str) -> str:
        variation_id = self.catalog.get_variation_id(plan_key, variation_key)
        if not variation_id:
            raise PlanNotFoundError(
                f"No Square variation id configured for {plan_key}/{variation_key} "
                f"in {self.config.environment.value}",
                {"plan": plan_key, "variation": variation_key},
            )
        return variation_id

    async def create(
        self,
        customer_id: str,
        variation_id: str,
        payment_method: str,
        start_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a Square subscription; a future start_date holds it in PENDING until then."""
        card_id = payment_method
        if payment_method.startswith(CARD_NONCE_PREFIX):
            card = await self.client.create_card(customer_id, payment_method)
            card_id = card.get("id")
            if not card_id:
                raise CardSaveFailedError("Square did not return a card id")

        subscription = await self.client.create_subscription(customer_id, variation_id, card_id, start_date=start_date)
        logger.info(
            "SQUARE_SUBSCRIPTION_CREATED square_subscription_id=%s customer_id=%s variation_id=%s start_date=%s status=%s",
            subscription.get("id"), customer_id, variation_id, start_date, subscription.get("status"),
        )
        return subscription

    async def create_with_plan_lookup(
        self,
        customer_id: str,
        plan_variation_key: str,
        payment_method: str,
        start_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        plan_key, variation_key = parse_plan_variation_key(plan_variation_key)
        variation_id = self.resolve_variation_id(plan_key, variation_key)
        return await self.create(customer_id, variation_id, payment_method, start_date=start_date)

    async def upgrade_subscription(
        self,
        customer_id: str,
        new_plan_variation_key: str,
        payment_method: str,
        subscription_to_cancel: Optional[str] = None,
        current_access_ends_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Switch plans without giving up paid time.

        Cancelling the old subscription is best-effort: a failure is logged
        and the new subscription is still created.
        """
        if subscription_to_cancel:
            try:
                await self.cancel(subscription_to_cancel)
            except BillingError as e:
                logger.warning(
                    f"Could not cancel subscription {subscription_to_cancel} during upgrade: {e.message}"
                )

        start_date = calculate_deferred_start_date(current_access_ends_at, now)
        return await self.create_with_plan_lookup(
            customer_id,
            new_plan_variation_key,
            payment_method,
            start_date=start_date,
        )

    async def cancel(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self.client.cancel_subscription(subscription_id)
        logger.info(
            "SQUARE_SUBSCRIPTION_CANCELED square_subscription_id=%s status=%s canceled_date=%s",
            subscription_id, subscription.get("status"), subscription.get("canceled_date"),
        )
        return subscription

    async def get(self, subscription_id: str) -> Dict[str, Any]:
        return await self.client.get_subscription(subscription_id)

    # =========================================================================
    # Owner-level flows (persist local state)
    # =========================================================================

    async def subscribe(
        self,
        owner_id: str,
        customer_id: str,
        plan_variation_key: str,
        payment_method: str,
        refund_unused: bool = False,
        now: Optional[datetime] = None,
    ) -> Tuple[Subscription, Optional[RefundInfo]]:
        """Subscribe an owner, replacing whatever currently grants them access.

        A current recurring subscription is cancelled at Square and the new
        one starts after its paid period. A current one-time pass either
        defers the new start until it runs out or, with refund_unused, is
        ended now and its unused days refunded.
        """
        now = ensure_utc(now) or utc_now()
        current = await subscription_store.get_active_for_owner(owner_id)

        subscription_to_cancel = None
        access_ends_at = None
        replace_pass = False
        if current is not None and current.status == SubscriptionStatus.PENDING and current.square_subscription_id:
            subscription_to_cancel = current.square_subscription_id
        elif current is not None and current.status == SubscriptionStatus.ACTIVE:
            if current.square_subscription_id:
                subscription_to_cancel = current.square_subscription_id
                access_ends_at = current.next_billing_at
            elif refund_unused:
                replace_pass = True
            else:
                access_ends_at = current.next_billing_at

        provider_subscription = await self.upgrade_subscription(
            customer_id,
            plan_variation_key,
            payment_method,
            subscription_to_cancel=subscription_to_cancel,
            current_access_ends_at=access_ends_at,
            now=now,
        )
        start_date = calculate_deferred_start_date(access_ends_at, now)

        record = Subscription(
            owner_id=owner_id,
            plan_id=plan_variation_key,
            status=_local_status(provider_subscription, deferred=start_date is not None),
            square_subscription_id=provider_subscription.get("id"),
            square_customer_id=customer_id,
            card_id=provider_subscription.get("card_id"),
            started_at=parse_provider_date(provider_subscription.get("start_date")) or now,
            next_billing_at=parse_provider_date(provider_subscription.get("charged_through_date")),
        )
        await subscription_store.insert(record)

        refund_info = None
        if replace_pass:
            refund_info = await self.refunds.refund_unused_time(current, now)
            before = subscription_store.to_document(current)
            current.status = SubscriptionStatus.CANCELED
            current.canceled_at = now
            await subscription_store.save(current)
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_CANCELED,
                actor_role=UserRole.SYSTEM,
                owner_id=owner_id,
                resource_type="subscription",
                resource_id=current.subscription_id,
                before_state=before,
                after_state=subscription_store.to_document(current),
                metadata={"reason": "replaced_by_subscription", "replaced_by": record.subscription_id},
            )

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_UPGRADED if current else AuditAction.SUBSCRIPTION_CREATED,
            actor_role=UserRole.ROLE_CLIENT,
            actor_id=owner_id,
            owner_id=owner_id,
            resource_type="subscription",
            resource_id=record.subscription_id,
            metadata={
                "plan_id": plan_variation_key,
                "square_subscription_id": record.square_subscription_id,
                "start_date": start_date,
                "previous_subscription_id": current.subscription_id if current else None,
                "refund_amount": refund_info.amount if refund_info else None,
            },
        )
        return record, refund_info

    async def purchase_one_time(
        self,
        owner_id: str,
        customer_id: Optional[str],
        purchase_key: str,
        source_id: str,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Charge a one-time product and grant access for its duration."""
        purchase = self.catalog.get_one_time_purchase(purchase_key)
        if purchase is None or not purchase.active:
            raise PlanNotFoundError(f"Unknown one-time purchase: {purchase_key}", {"purchase": purchase_key})

        now = ensure_utc(now) or utc_now()
        payment = await self.client.create_payment(
            source_id,
            purchase.price_cents,
            purchase.currency,
            customer_id=customer_id,
            note=purchase.name or purchase_key,
        )

        record = Subscription(
            owner_id=owner_id,
            plan_id=purchase_key,
            status=SubscriptionStatus.ACTIVE,
            square_customer_id=customer_id,
            payment_id=payment.get("id"),
            started_at=now,
            next_billing_at=now + timedelta(days=purchase.duration_days),
        )
        await subscription_store.insert(record)
        await create_audit_log(
            action=AuditAction.ONE_TIME_PURCHASE,
            actor_role=UserRole.ROLE_CLIENT,
            actor_id=owner_id,
            owner_id=owner_id,
            resource_type="subscription",
            resource_id=record.subscription_id,
            metadata={
                "plan_id": purchase_key,
                "payment_id": record.payment_id,
                "amount": purchase.price_cents,
                "expires_at": record.next_billing_at.isoformat(),
            },
        )
        return record

    async def cancel_for_owner(self, owner_id: str, now: Optional[datetime] = None) -> Subscription:
        """Cancel the owner's recurring subscription at Square and record the result."""
        current = await subscription_store.get_active_for_owner(owner_id)
        if current is None:
            raise SubscriptionNotFoundError(f"No active subscription for owner {owner_id}")
        if not current.square_subscription_id:
            raise SubscriptionFailedError("One-time purchases do not renew and cannot be cancelled")

        provider_subscription = await self.cancel(current.square_subscription_id)
        before = subscription_store.to_document(current)
        updated = sync_from_provider(
            current,
            provider_subscription,
            now=now,
            cadence_days=cadence_days_for_plan(self.catalog, current.plan_id),
        )
        await subscription_store.save(updated)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCELED,
            actor_role=UserRole.ROLE_CLIENT,
            actor_id=owner_id,
            owner_id=owner_id,
            resource_type="subscription",
            resource_id=updated.subscription_id,
            before_state=before,
            after_state=subscription_store.to_document(updated),
        )
        return updated
