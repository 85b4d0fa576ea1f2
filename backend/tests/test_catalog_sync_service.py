"""
Catalog sync: missing Square base plans and variations are created and their
ids written back to the catalog file.
"""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.billing_errors import BillingError
from services.catalog_sync_service import CatalogSyncService, build_base_plan_object, build_variation_object
from services.plan_catalog import PlanCatalog


def _square(fail_on=None):
    client = MagicMock()

    async def upsert(catalog_object):
        if fail_on and catalog_object["id"] == fail_on:
            raise BillingError("Catalog object creation failed")
        if catalog_object["type"] == "SUBSCRIPTION_PLAN":
            return {"id": "BASE_PREMIUM"}
        name = catalog_object["subscription_plan_variation_data"]["name"]
        return {"id": f"VAR_{name.upper()}"}

    client.upsert_catalog_object = AsyncMock(side_effect=upsert)
    return client


def test_base_plan_object_shape():
    obj = build_base_plan_object("premium", {"name": "Premium Plan", "description": "All features"})
    assert obj["type"] == "SUBSCRIPTION_PLAN"
    assert obj["id"] == "#Premium_Plan"
    assert obj["subscription_plan_data"] == {"name": "Premium Plan", "description": "All features"}


def test_variation_object_shape():
    obj = build_variation_object("monthly", {"amount": 999, "cadence": "MONTHLY", "currency": "USD"}, "BASE_1")
    data = obj["subscription_plan_variation_data"]
    assert obj["id"] == "#BASE_1_monthly"
    assert data["subscription_plan_id"] == "BASE_1"
    phase = data["phases"][0]
    assert phase["cadence"] == "MONTHLY"
    assert phase["pricing"]["price_money"] == {"amount": 999, "currency": "USD"}


@pytest.mark.asyncio
async def test_sync_creates_and_writes_back(billing_config, catalog_path):
    catalog = PlanCatalog(billing_config)

    summary = await CatalogSyncService(catalog, _square()).sync()

    assert summary["base_plans_created"] == [{"plan": "premium", "id": "BASE_PREMIUM"}]
    assert len(summary["variations_created"]) == 2
    assert summary["errors"] == []
    assert catalog.all_configured() is True
    raw = json.loads(catalog_path.read_text())
    assert raw["plans"]["premium"]["sandbox_base_plan_id"] == "BASE_PREMIUM"
    assert raw["plans"]["premium"]["variations"]["monthly"]["production_variation_id"] is None


@pytest.mark.asyncio
async def test_sync_skips_inactive_variations(billing_config, catalog_path):
    raw = json.loads(catalog_path.read_text())
    raw["plans"]["premium"]["variations"]["yearly"]["active"] = False
    catalog_path.write_text(json.dumps(raw))

    summary = await CatalogSyncService(PlanCatalog(billing_config), _square()).sync()

    assert [v["variation"] for v in summary["variations_created"]] == ["monthly"]
    assert summary["skipped"] == [{"plan": "premium", "variation": "yearly", "reason": "inactive"}]


@pytest.mark.asyncio
async def test_base_plan_failure_skips_its_variations(billing_config):
    catalog = PlanCatalog(billing_config)

    summary = await CatalogSyncService(catalog, _square(fail_on="#Premium")).sync()

    assert summary["errors"][0]["plan"] == "premium"
    assert summary["variations_created"] == []
    assert {s["reason"] for s in summary["skipped"]} == {"no base plan id"}
    assert catalog.get_base_plan_id("premium") is None


@pytest.mark.asyncio
async def test_nothing_to_do_when_configured(billing_config):
    catalog = PlanCatalog(billing_config)
    catalog.update_base_plan_id("premium", "BASE")
    catalog.update_variation_id("premium", "monthly", "VAR_M")
    catalog.update_variation_id("premium", "yearly", "VAR_Y")
    square = _square()

    summary = await CatalogSyncService(catalog, square).sync()

    square.upsert_catalog_object.assert_not_awaited()
    assert summary["base_plans_created"] == [] and summary["variations_created"] == []
