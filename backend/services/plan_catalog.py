"""Plan Catalog - JSON plan catalog with per-environment Square identifiers.

The catalog file is the single source of truth for plans, prices and
features. It is environment-agnostic: every subscription plan carries
`sandbox_base_plan_id` / `production_base_plan_id` and every variation
carries `sandbox_variation_id` / `production_variation_id`. Readers see the
resolved view with a single `base_plan_id` / `variation_id`, computed on
every read and never persisted.

The file is re-read on every call so edits apply without a restart.

Example:
    {
      "plans": {
        "free": {"name": "Free", "type": "free", "features": [...]},
        "premium": {
          "type": "subscription",
          "sandbox_base_plan_id": null,
          "production_base_plan_id": null,
          "variations": {
            "monthly": {"amount": 999, "currency": "USD", "cadence": "MONTHLY",
                        "sandbox_variation_id": null, "production_variation_id": null,
                        "active": true}
          }
        }
      },
      "one_time_purchases": {
        "week_pass": {"price_cents": 499, "duration_days": 7, ...}
      }
    }
"""
import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Dict, Any, List, Literal

from pydantic import BaseModel, Field

from models import Environment, PlanKind, PlanDefinition, OneTimePurchase
from services.billing_config import BillingConfig
from services.billing_errors import CatalogAlreadyExistsError
from services.catalog_snapshots import SnapshotProvider, SnapshotUnavailableError, GitSnapshotProvider

logger = logging.getLogger(__name__)

# Fields Square treats as immutable once a variation exists
IMMUTABLE_VARIATION_FIELDS = ("amount", "cadence", "currency")

ENV_BASE_PLAN_FIELDS = {
    Environment.SANDBOX: "sandbox_base_plan_id",
    Environment.PRODUCTION: "production_base_plan_id",
}
ENV_VARIATION_FIELDS = {
    Environment.SANDBOX: "sandbox_variation_id",
    Environment.PRODUCTION: "production_variation_id",
}


def empty_catalog() -> Dict[str, Any]:
    return {"plans": {}, "one_time_purchases": {}}


EXAMPLE_CATALOG: Dict[str, Any] = {
    "plans": {
        "free": {
            "name": "Free",
            "description": "Basic access",
            "type": "free",
            "active": True,
            "price": "$0",
            "price_cents": 0,
            "features": ["Basic features"],
        },
        "premium": {
            "name": "Premium",
            "description": "Full access to all features",
            "type": "subscription",
            "sandbox_base_plan_id": None,
            "production_base_plan_id": None,
            "variations": {
                "monthly": {
                    "name": "Monthly",
                    "amount": 999,
                    "currency": "USD",
                    "cadence": "MONTHLY",
                    "sandbox_variation_id": None,
                    "production_variation_id": None,
                    "active": True,
                    "price": "$9.99/mo",
                    "price_cents": 999,
                    "auto_renews": True,
                    "billing_notice": "Billed monthly. Cancel anytime.",
                    "features": ["All premium features", "Priority support"],
                },
                "yearly": {
                    "name": "Yearly",
                    "amount": 9900,
                    "currency": "USD",
                    "cadence": "ANNUAL",
                    "sandbox_variation_id": None,
                    "production_variation_id": None,
                    "active": True,
                    "price": "$99/yr",
                    "price_cents": 9900,
                    "auto_renews": True,
                    "billing_notice": "Billed annually. Save 17%.",
                    "features": ["All premium features", "Priority support"],
                },
            },
        },
    },
    "one_time_purchases": {
        "week_pass": {
            "active": True,
            "name": "7-Day Pass",
            "price": "$4.99",
            "price_cents": 499,
            "currency": "USD",
            "duration_days": 7,
            "auto_renews": False,
            "billing_notice": "One-time charge. Does not renew.",
            "features": ["All premium features for 7 days"],
        },
    },
}


# =============================================================================
# Load / save / resolve
# =============================================================================

def load(path: Path) -> Dict[str, Any]:
    """Read the catalog fresh. A missing or malformed file yields the empty catalog."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            catalog = json.load(f)
    except FileNotFoundError:
        return empty_catalog()
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Plan catalog at {path} could not be read: {e}")
        return empty_catalog()

    if not isinstance(catalog, dict):
        logger.warning(f"Plan catalog at {path} is not a JSON object")
        return empty_catalog()
    catalog.setdefault("plans", {})
    catalog.setdefault("one_time_purchases", {})
    return catalog


def save(path: Path, catalog: Dict[str, Any]) -> None:
    """Persist the whole catalog, replacing the file atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(catalog, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def init_catalog(path: Path) -> Path:
    """Write the example catalog. Refuses to overwrite an existing file."""
    path = Path(path)
    if path.exists():
        raise CatalogAlreadyExistsError(f"Plan catalog already exists at {path}")
    save(path, EXAMPLE_CATALOG)
    logger.info(f"Plan catalog initialized at {path}")
    return path


def environment(config: BillingConfig) -> Environment:
    return config.environment


def _is_free(plan: Dict[str, Any]) -> bool:
    return plan.get("type") == PlanKind.FREE.value


def _resolve_node(node: Dict[str, Any], candidates: Dict[Environment, str], target: str, env: Environment) -> Dict[str, Any]:
    if not any(field in node for field in candidates.values()):
        return node
    resolved = {k: v for k, v in node.items() if k not in candidates.values()}
    resolved[target] = node.get(candidates[env])
    return resolved


def resolve_for_environment(raw: Dict[str, Any], env: Environment) -> Dict[str, Any]:
    """Project the raw catalog onto one environment.

    Candidate identifier pairs collapse into `base_plan_id` / `variation_id`.
    Free plans and nodes already in resolved shape pass through unchanged.
    The input is not mutated.
    """
    resolved = copy.deepcopy(raw)
    plans = resolved.get("plans") or {}
    for plan_key, plan in list(plans.items()):
        if not isinstance(plan, dict) or _is_free(plan):
            continue
        plan = _resolve_node(plan, ENV_BASE_PLAN_FIELDS, "base_plan_id", env)
        variations = plan.get("variations")
        if isinstance(variations, dict):
            plan["variations"] = {
                var_key: _resolve_node(var, ENV_VARIATION_FIELDS, "variation_id", env) if isinstance(var, dict) else var
                for var_key, var in variations.items()
            }
        plans[plan_key] = plan
    return resolved


# =============================================================================
# Drift report
# =============================================================================

class ImmutableFieldChange(BaseModel):
    plan: str
    variation: str
    variation_id: Optional[str] = None
    field: str
    old_value: Any = None
    new_value: Any = None
    message: str


class ImmutableFieldReport(BaseModel):
    status: Literal["ok", "warning", "error"]
    changes: List[ImmutableFieldChange] = Field(default_factory=list)
    reason: Optional[str] = None


def _recorded_variation_id(variation: Dict[str, Any]) -> Optional[str]:
    return (
        variation.get("sandbox_variation_id")
        or variation.get("production_variation_id")
        or variation.get("variation_id")
    )


def diff_immutable_fields(previous: Dict[str, Any], current: Dict[str, Any]) -> List[ImmutableFieldChange]:
    """Changes to immutable fields of variations that already had a Square id in `previous`."""
    changes: List[ImmutableFieldChange] = []
    current_plans = current.get("plans") or {}

    for plan_key, old_plan in (previous.get("plans") or {}).items():
        if not isinstance(old_plan, dict):
            continue
        new_variations = (current_plans.get(plan_key) or {}).get("variations") or {}
        for var_key, old_var in (old_plan.get("variations") or {}).items():
            if not isinstance(old_var, dict):
                continue
            variation_id = _recorded_variation_id(old_var)
            if not variation_id:
                continue

            new_var = new_variations.get(var_key)
            if new_var is None:
                changes.append(ImmutableFieldChange(
                    plan=plan_key,
                    variation=var_key,
                    variation_id=variation_id,
                    field="variation",
                    message=(
                        f"Variation {plan_key}.{var_key} was removed; "
                        "set \"active\": false instead of deleting it"
                    ),
                ))
                continue

            for field in IMMUTABLE_VARIATION_FIELDS:
                old_value = old_var.get(field)
                new_value = new_var.get(field)
                if old_value != new_value:
                    changes.append(ImmutableFieldChange(
                        plan=plan_key,
                        variation=var_key,
                        variation_id=variation_id,
                        field=field,
                        old_value=old_value,
                        new_value=new_value,
                        message=f"{field} changed from {old_value!r} to {new_value!r}",
                    ))
    return changes


# =============================================================================
# Catalog service
# =============================================================================

class PlanCatalog:
    """Environment-aware access to the plan catalog file."""

    def __init__(self, config: BillingConfig, snapshot_provider: Optional[SnapshotProvider] = None):
        self.config = config
        self.path = Path(config.plans_path)
        self.snapshot_provider = snapshot_provider or GitSnapshotProvider()

    @property
    def environment(self) -> Environment:
        return environment(self.config)

    def load_raw(self) -> Dict[str, Any]:
        return load(self.path)

    def resolved(self) -> Dict[str, Any]:
        return resolve_for_environment(self.load_raw(), self.environment)

    # -------------------------------------------------------------------------
    # Getters (resolved view)
    # -------------------------------------------------------------------------

    def get_plans(self) -> Dict[str, Any]:
        return self.resolved().get("plans") or {}

    def get_plan(self, plan_key: str) -> Optional[Dict[str, Any]]:
        return self.get_plans().get(plan_key)

    def get_plan_definition(self, plan_key: str) -> Optional[PlanDefinition]:
        raw_plan = (self.load_raw().get("plans") or {}).get(plan_key)
        if raw_plan is None:
            return None
        return PlanDefinition.from_catalog(plan_key, raw_plan)

    def get_variation(self, plan_key: str, variation_key: str) -> Optional[Dict[str, Any]]:
        plan = self.get_plan(plan_key) or {}
        return (plan.get("variations") or {}).get(variation_key)

    def get_variation_id(self, plan_key: str, variation_key: str) -> Optional[str]:
        variation = self.get_variation(plan_key, variation_key) or {}
        return variation.get("variation_id")

    def get_base_plan_id(self, plan_key: str) -> Optional[str]:
        plan = self.get_plan(plan_key) or {}
        return plan.get("base_plan_id")

    def active_variations(self, plan_key: str) -> Dict[str, Any]:
        plan = self.get_plan(plan_key) or {}
        return {
            key: variation
            for key, variation in (plan.get("variations") or {}).items()
            if variation.get("active", True)
        }

    def get_one_time_purchases(self) -> Dict[str, Any]:
        return self.load_raw().get("one_time_purchases") or {}

    def get_one_time_purchase(self, purchase_key: str) -> Optional[OneTimePurchase]:
        raw = self.get_one_time_purchases().get(purchase_key)
        if raw is None:
            return None
        return OneTimePurchase(key=purchase_key, **raw)

    def get_plan_features(self, plan_id: str) -> List[str]:
        """Features for a plan, plan_variation key or one-time purchase key."""
        one_time = self.get_one_time_purchases().get(plan_id)
        if one_time is not None:
            return list(one_time.get("features") or [])

        plans = self.get_plans()
        if plan_id in plans:
            return list(plans[plan_id].get("features") or [])

        plan_key, _, variation_key = plan_id.partition("_")
        plan = plans.get(plan_key)
        if plan is None:
            return []
        variation = (plan.get("variations") or {}).get(variation_key) or {}
        return list(variation.get("features") or plan.get("features") or [])

    # -------------------------------------------------------------------------
    # Identifier write-back
    # -------------------------------------------------------------------------

    def update_base_plan_id(self, plan_key: str, base_plan_id: str) -> None:
        catalog = self.load_raw()
        plan = catalog["plans"].setdefault(plan_key, {})
        for field in ENV_BASE_PLAN_FIELDS.values():
            plan.setdefault(field, None)
        plan[ENV_BASE_PLAN_FIELDS[self.environment]] = base_plan_id
        save(self.path, catalog)
        logger.info(
            "CATALOG_BASE_PLAN_ID_SET plan=%s environment=%s base_plan_id=%s",
            plan_key, self.environment.value, base_plan_id,
        )

    def update_variation_id(self, plan_key: str, variation_key: str, variation_id: str) -> None:
        catalog = self.load_raw()
        plan = catalog["plans"].setdefault(plan_key, {})
        for field in ENV_BASE_PLAN_FIELDS.values():
            plan.setdefault(field, None)
        variation = plan.setdefault("variations", {}).setdefault(variation_key, {})
        for field in ENV_VARIATION_FIELDS.values():
            variation.setdefault(field, None)
        variation[ENV_VARIATION_FIELDS[self.environment]] = variation_id
        save(self.path, catalog)
        logger.info(
            "CATALOG_VARIATION_ID_SET plan=%s variation=%s environment=%s variation_id=%s",
            plan_key, variation_key, self.environment.value, variation_id,
        )

    # -------------------------------------------------------------------------
    # Configuration status
    # -------------------------------------------------------------------------

    def unconfigured_items(self) -> Dict[str, List[Dict[str, Any]]]:
        """Non-free plans without a base plan id and variations without a variation id."""
        items: Dict[str, List[Dict[str, Any]]] = {"base_plans": [], "variations": []}
        for plan_key, plan in self.get_plans().items():
            if not isinstance(plan, dict) or _is_free(plan):
                continue
            if not plan.get("base_plan_id"):
                items["base_plans"].append({"plan": plan_key, "name": plan.get("name")})
            for var_key, variation in (plan.get("variations") or {}).items():
                if not variation.get("variation_id"):
                    items["variations"].append({
                        "plan": plan_key,
                        "variation": var_key,
                        "base_plan_id": plan.get("base_plan_id"),
                    })
        return items

    def all_configured(self) -> bool:
        items = self.unconfigured_items()
        return not items["base_plans"] and not items["variations"]

    def validate_immutable_fields(self, snapshot_provider: Optional[SnapshotProvider] = None) -> ImmutableFieldReport:
        """Compare the catalog with its last committed version. Never raises."""
        provider = snapshot_provider or self.snapshot_provider
        try:
            previous = provider.previous_snapshot(self.path)
        except SnapshotUnavailableError as e:
            return ImmutableFieldReport(status="error", reason=str(e))

        changes = diff_immutable_fields(previous, self.load_raw())
        if not changes:
            return ImmutableFieldReport(status="ok")
        return ImmutableFieldReport(status="warning", changes=changes)
