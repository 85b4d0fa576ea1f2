"""Billing service wiring.

Builds every billing component from one BillingConfig. The app builds the
instance at startup; routes receive it through get_billing_services.
"""
import logging
from typing import Optional

from services.billing_config import BillingConfig, load_billing_config
from services.catalog_snapshots import SnapshotProvider
from services.catalog_sync_service import CatalogSyncService
from services.plan_catalog import PlanCatalog
from services.refund_service import RefundService
from services.square_client import SquareClient
from services.square_webhook_service import SquareWebhookPipeline, WebhookEventHandler
from services.subscription_service import SubscriptionService
from services.subscription_sync_service import SubscriptionSyncService, SubscriptionWebhookHandler

logger = logging.getLogger(__name__)


class BillingServices:
    def __init__(
        self,
        config: BillingConfig,
        client: Optional[SquareClient] = None,
        snapshot_provider: Optional[SnapshotProvider] = None,
        webhook_handler: Optional[WebhookEventHandler] = None,
    ):
        self.config = config
        self.client = client or SquareClient(config)
        self.catalog = PlanCatalog(config, snapshot_provider)
        self.refunds = RefundService(self.catalog, self.client)
        self.subscriptions = SubscriptionService(config, self.catalog, self.client, self.refunds)
        self.sync = SubscriptionSyncService(self.catalog, self.client)
        self.catalog_sync = CatalogSyncService(self.catalog, self.client)
        self.webhooks = SquareWebhookPipeline(
            config,
            handler=webhook_handler or SubscriptionWebhookHandler(self.sync),
            dedupe_events=config.dedupe_webhook_events,
        )


_billing_services: Optional[BillingServices] = None


def configure_billing_services(services: BillingServices) -> BillingServices:
    global _billing_services
    _billing_services = services
    return services


def get_billing_services() -> BillingServices:
    """FastAPI dependency; builds from the environment on first use."""
    global _billing_services
    if _billing_services is None:
        _billing_services = BillingServices(load_billing_config())
    return _billing_services
