"""
HTTP surface: Square webhook endpoint and billing routes.
Billing services are injected through dependency_overrides; MongoDB is the
in-memory stand-in from conftest.
"""
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from models import Subscription, SubscriptionStatus
from server import app
from services import subscription_store
from services.billing_errors import CardDeclinedError
from services.billing_services import BillingServices, get_billing_services
from services.square_webhook_service import SIGNATURE_HEADER, compute_signature
from utils.dates import utc_now


def _square():
    square = MagicMock()
    for name in ("create_card", "create_subscription", "get_subscription", "cancel_subscription",
                 "create_payment", "refund_payment", "upsert_catalog_object"):
        setattr(square, name, AsyncMock())
    return square


@pytest.fixture
def square():
    return _square()


@pytest.fixture
def handler():
    handler = MagicMock()
    handler.handle_event = AsyncMock()
    return handler


@pytest.fixture
def billing(billing_config, square, client):
    services = BillingServices(billing_config, client=square)
    app.dependency_overrides[get_billing_services] = lambda: services
    return services


class TestSquareWebhookRoute:
    def _signed(self, body: bytes):
        return {SIGNATURE_HEADER: compute_signature(body, "test-signature-key"), "Content-Type": "application/json"}

    def test_valid_webhook_dispatched(self, billing_config, client, handler):
        services = BillingServices(billing_config, client=_square(), webhook_handler=handler)
        app.dependency_overrides[get_billing_services] = lambda: services
        body = json.dumps({
            "type": "subscription.updated",
            "event_id": "evt_42",
            "data": {"id": "SUB_1", "object": {"subscription": {"id": "SUB_1", "status": "ACTIVE"}}},
        }).encode("utf-8")

        response = client.post("/api/webhooks/square", content=body, headers=self._signed(body))

        assert response.status_code == 200
        assert response.json() == {"received": True, "event_id": "evt_42", "duplicate": False}
        handler.handle_event.assert_awaited_once()

    def test_missing_signature_rejected(self, billing, client):
        body = b'{"type": "subscription.updated", "data": {}}'
        response = client.post("/api/webhooks/square", content=body)
        assert response.status_code == 401
        assert response.json()["detail"] == "missing_signature"

    def test_invalid_signature_rejected(self, billing, client):
        body = b'{"type": "subscription.updated", "data": {}}'
        headers = {SIGNATURE_HEADER: compute_signature(body, "wrong-key")}
        response = client.post("/api/webhooks/square", content=body, headers=headers)
        assert response.status_code == 401
        assert response.json()["detail"] == "invalid_signature"

    def test_signed_malformed_body_rejected(self, billing, client):
        body = b'{"data": {}}'
        response = client.post("/api/webhooks/square", content=body, headers=self._signed(body))
        assert response.status_code == 400

    def test_unconfigured_signature_key(self, billing_config, client):
        config = billing_config.model_copy(update={"webhook_signature_key": None})
        services = BillingServices(config, client=_square())
        app.dependency_overrides[get_billing_services] = lambda: services
        body = b'{"type": "subscription.updated", "data": {}}'

        response = client.post("/api/webhooks/square", content=body, headers=self._signed(body))

        assert response.status_code == 500


class TestBillingRoutes:
    def test_plans_lists_active_offerings(self, billing, client):
        response = client.get("/api/billing/plans")
        assert response.status_code == 200
        data = response.json()
        assert data["environment"] == "sandbox"
        assert set(data["plans"]["premium"]["variations"]) == {"monthly", "yearly"}
        assert "week_pass" in data["one_time_purchases"]

    def test_status_without_subscription(self, billing, client, memory_db):
        response = client.get("/api/billing/status/owner-1")
        assert response.status_code == 200
        assert response.json()["has_premium"] is False
        assert response.json()["subscription"] is None

    def test_status_with_active_pass(self, billing, client, memory_db):
        memory_db.subscriptions.append(subscription_store.to_document(Subscription(
            owner_id="owner-1",
            plan_id="week_pass",
            status=SubscriptionStatus.ACTIVE,
            next_billing_at=utc_now() + timedelta(days=3),
        )))

        response = client.get("/api/billing/status/owner-1")

        data = response.json()
        assert data["has_premium"] is True
        assert data["subscription"]["plan_id"] == "week_pass"
        assert data["features"] == ["All premium features for 7 days"]

    def test_subscribe_unknown_plan_is_bad_request(self, billing, client, memory_db):
        response = client.post("/api/billing/subscribe", json={
            "owner_id": "owner-1",
            "customer_id": "CUST_1",
            "plan_id": "premium_monthly",
            "payment_method": "CARD_1",
        })
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "plan_not_found"

    def test_subscribe_declined_card(self, billing, square, client, memory_db):
        billing.catalog.update_variation_id("premium", "monthly", "VAR_MONTHLY")
        square.create_subscription.side_effect = CardDeclinedError("Card declined.")

        response = client.post("/api/billing/subscribe", json={
            "owner_id": "owner-1",
            "customer_id": "CUST_1",
            "plan_id": "premium_monthly",
            "payment_method": "CARD_1",
        })

        assert response.status_code == 402
        assert response.json()["detail"] == {"error": "card_declined", "message": "Card declined."}

    def test_subscribe_success(self, billing, square, client, memory_db):
        billing.catalog.update_variation_id("premium", "monthly", "VAR_MONTHLY")
        square.create_subscription.return_value = {
            "id": "SUB_NEW", "status": "ACTIVE", "start_date": "2025-03-10", "charged_through_date": "2025-04-10",
        }

        response = client.post("/api/billing/subscribe", json={
            "owner_id": "owner-1",
            "customer_id": "CUST_1",
            "plan_id": "premium_monthly",
            "payment_method": "CARD_1",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["subscription"]["square_subscription_id"] == "SUB_NEW"
        assert data["subscription"]["status"] == "ACTIVE"
        assert data["refund"] is None
        assert len(memory_db.by_owner("owner-1")) == 1

    def test_cancel_without_subscription_is_not_found(self, billing, client, memory_db):
        response = client.post("/api/billing/cancel", json={"owner_id": "owner-1"})
        assert response.status_code == 404

    def test_unconfigured_catalog_items(self, billing, client):
        data = client.get("/api/billing/catalog/unconfigured").json()
        assert [p["plan"] for p in data["base_plans"]] == ["premium"]
        assert len(data["variations"]) == 2
