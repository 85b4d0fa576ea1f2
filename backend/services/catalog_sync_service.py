"""Catalog sync - create missing Square base plans and variations.

Walks the catalog's unconfigured items for the current environment, creates
the corresponding Square catalog objects and writes the assigned ids back
into the catalog file. Base plans are created before their variations.
Inactive variations are skipped. A failure on one item is recorded in the
summary and does not stop the others.
"""
import logging
from typing import Dict, Any

from services.billing_errors import BillingError
from services.plan_catalog import PlanCatalog
from services.square_client import SquareClient

logger = logging.getLogger(__name__)


def build_base_plan_object(plan_key: str, plan: Dict[str, Any]) -> Dict[str, Any]:
    name = plan.get("name") or plan_key
    data = {"name": name}
    if plan.get("description"):
        data["description"] = plan["description"]
    return {
        "type": "SUBSCRIPTION_PLAN",
        "id": f"#{name.replace(' ', '_')}",
        "subscription_plan_data": data,
    }


def build_variation_object(variation_key: str, variation: Dict[str, Any], base_plan_id: str) -> Dict[str, Any]:
    name = variation.get("name") or variation_key
    return {
        "type": "SUBSCRIPTION_PLAN_VARIATION",
        "id": f"#{base_plan_id}_{name.replace(' ', '_')}",
        "subscription_plan_variation_data": {
            "name": name,
            "phases": [
                {
                    "cadence": variation.get("cadence"),
                    "pricing": {
                        "type": "STATIC",
                        "price_money": {
                            "amount": variation.get("amount"),
                            "currency": variation.get("currency", "USD"),
                        },
                    },
                }
            ],
            "subscription_plan_id": base_plan_id,
        },
    }


class CatalogSyncService:
    def __init__(self, catalog: PlanCatalog, client: SquareClient):
        self.catalog = catalog
        self.client = client

    async def sync(self) -> Dict[str, Any]:
        env = self.catalog.environment.value
        summary = {
            "environment": env,
            "base_plans_created": [],
            "variations_created": [],
            "skipped": [],
            "errors": [],
        }

        for item in self.catalog.unconfigured_items()["base_plans"]:
            plan_key = item["plan"]
            plan = self.catalog.get_plan(plan_key) or {}
            try:
                created = await self.client.upsert_catalog_object(build_base_plan_object(plan_key, plan))
            except BillingError as e:
                logger.error(f"Failed to create base plan {plan_key} ({env}): {e.message}")
                summary["errors"].append({"plan": plan_key, "error": e.message})
                continue
            self.catalog.update_base_plan_id(plan_key, created["id"])
            summary["base_plans_created"].append({"plan": plan_key, "id": created["id"]})

        for item in self.catalog.unconfigured_items()["variations"]:
            plan_key, var_key = item["plan"], item["variation"]
            base_plan_id = item.get("base_plan_id")
            variation = self.catalog.get_variation(plan_key, var_key) or {}
            if not base_plan_id:
                summary["skipped"].append({"plan": plan_key, "variation": var_key, "reason": "no base plan id"})
                continue
            if not variation.get("active", True):
                summary["skipped"].append({"plan": plan_key, "variation": var_key, "reason": "inactive"})
                continue
            try:
                created = await self.client.upsert_catalog_object(
                    build_variation_object(var_key, variation, base_plan_id)
                )
            except BillingError as e:
                logger.error(f"Failed to create variation {plan_key}.{var_key} ({env}): {e.message}")
                summary["errors"].append({"plan": plan_key, "variation": var_key, "error": e.message})
                continue
            self.catalog.update_variation_id(plan_key, var_key, created["id"])
            summary["variations_created"].append({"plan": plan_key, "variation": var_key, "id": created["id"]})

        logger.info(
            "CATALOG_SYNC environment=%s base_plans_created=%s variations_created=%s skipped=%s errors=%s",
            env,
            len(summary["base_plans_created"]),
            len(summary["variations_created"]),
            len(summary["skipped"]),
            len(summary["errors"]),
        )
        return summary
