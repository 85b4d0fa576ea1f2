"""
Plan catalog tests: load, per-environment resolution, identifier write-back,
unconfigured listing and feature lookup.
"""
import copy
import json

import pytest

from models import Environment
from services.billing_errors import CatalogAlreadyExistsError
from services.plan_catalog import (
    EXAMPLE_CATALOG,
    PlanCatalog,
    empty_catalog,
    init_catalog,
    load,
    resolve_for_environment,
)


def _catalog_for(config, env):
    return PlanCatalog(config.model_copy(update={"environment": env}))


class TestLoad:
    def test_missing_file_yields_empty_catalog(self, tmp_path):
        """A missing catalog file is treated as an empty catalog."""
        assert load(tmp_path / "nope.json") == empty_catalog()

    def test_malformed_file_yields_empty_catalog(self, tmp_path):
        """Malformed JSON does not raise."""
        path = tmp_path / "plans.json"
        path.write_text("{not json")
        assert load(path) == empty_catalog()

    def test_reads_fresh_on_every_call(self, billing_config, catalog_path):
        """Edits to the file are visible without any reset."""
        catalog = PlanCatalog(billing_config)
        assert catalog.get_plan("premium")["name"] == "Premium"

        raw = json.loads(catalog_path.read_text())
        raw["plans"]["premium"]["name"] = "Premium Plus"
        catalog_path.write_text(json.dumps(raw))

        assert catalog.get_plan("premium")["name"] == "Premium Plus"


class TestResolveForEnvironment:
    def _raw(self):
        raw = copy.deepcopy(EXAMPLE_CATALOG)
        premium = raw["plans"]["premium"]
        premium["sandbox_base_plan_id"] = "SB_BASE"
        premium["production_base_plan_id"] = "PROD_BASE"
        premium["variations"]["monthly"]["sandbox_variation_id"] = "SB_MONTHLY"
        premium["variations"]["monthly"]["production_variation_id"] = "PROD_MONTHLY"
        return raw

    def test_collapses_candidates_for_sandbox(self):
        """Sandbox ids are selected and both candidate fields dropped."""
        resolved = resolve_for_environment(self._raw(), Environment.SANDBOX)
        premium = resolved["plans"]["premium"]
        assert premium["base_plan_id"] == "SB_BASE"
        assert "sandbox_base_plan_id" not in premium
        assert "production_base_plan_id" not in premium
        monthly = premium["variations"]["monthly"]
        assert monthly["variation_id"] == "SB_MONTHLY"
        assert "sandbox_variation_id" not in monthly
        assert "production_variation_id" not in monthly

    def test_collapses_candidates_for_production(self):
        resolved = resolve_for_environment(self._raw(), Environment.PRODUCTION)
        assert resolved["plans"]["premium"]["base_plan_id"] == "PROD_BASE"
        assert resolved["plans"]["premium"]["variations"]["monthly"]["variation_id"] == "PROD_MONTHLY"

    def test_free_plan_passes_through(self):
        raw = self._raw()
        resolved = resolve_for_environment(raw, Environment.SANDBOX)
        assert resolved["plans"]["free"] == raw["plans"]["free"]

    def test_already_resolved_passes_through(self):
        """Resolving a resolved catalog changes nothing."""
        once = resolve_for_environment(self._raw(), Environment.SANDBOX)
        assert resolve_for_environment(once, Environment.SANDBOX) == once

    def test_idempotent(self):
        """Same raw catalog and environment -> identical output."""
        raw = self._raw()
        assert resolve_for_environment(raw, Environment.SANDBOX) == resolve_for_environment(raw, Environment.SANDBOX)

    def test_input_not_mutated(self):
        raw = self._raw()
        before = copy.deepcopy(raw)
        resolve_for_environment(raw, Environment.PRODUCTION)
        assert raw == before

    def test_one_time_purchases_untouched(self):
        raw = self._raw()
        resolved = resolve_for_environment(raw, Environment.SANDBOX)
        assert resolved["one_time_purchases"] == raw["one_time_purchases"]


class TestIdentifierWriteBack:
    def test_variation_id_round_trip(self, billing_config):
        """Written sandbox id resolves in sandbox; production stays null."""
        sandbox = _catalog_for(billing_config, Environment.SANDBOX)
        sandbox.update_variation_id("premium", "monthly", "VAR_SB_1")

        assert sandbox.get_variation_id("premium", "monthly") == "VAR_SB_1"
        production = _catalog_for(billing_config, Environment.PRODUCTION)
        assert production.get_variation_id("premium", "monthly") is None

    def test_other_environment_id_untouched(self, billing_config):
        production = _catalog_for(billing_config, Environment.PRODUCTION)
        production.update_variation_id("premium", "yearly", "VAR_PROD_Y")
        sandbox = _catalog_for(billing_config, Environment.SANDBOX)
        sandbox.update_variation_id("premium", "yearly", "VAR_SB_Y")

        assert production.get_variation_id("premium", "yearly") == "VAR_PROD_Y"
        assert sandbox.get_variation_id("premium", "yearly") == "VAR_SB_Y"

    def test_upsert_creates_missing_nodes_with_null_candidates(self, billing_config, catalog_path):
        """Unknown plan/variation nodes are created with both candidates seeded."""
        catalog = _catalog_for(billing_config, Environment.SANDBOX)
        catalog.update_variation_id("team", "monthly", "VAR_TEAM")

        raw = json.loads(catalog_path.read_text())
        team = raw["plans"]["team"]
        assert team["sandbox_base_plan_id"] is None
        assert team["production_base_plan_id"] is None
        assert team["variations"]["monthly"] == {
            "sandbox_variation_id": "VAR_TEAM",
            "production_variation_id": None,
        }

    def test_base_plan_id_written_for_current_environment(self, billing_config, catalog_path):
        catalog = _catalog_for(billing_config, Environment.PRODUCTION)
        catalog.update_base_plan_id("premium", "BASE_PROD")

        raw = json.loads(catalog_path.read_text())
        assert raw["plans"]["premium"]["production_base_plan_id"] == "BASE_PROD"
        assert raw["plans"]["premium"]["sandbox_base_plan_id"] is None
        assert catalog.get_base_plan_id("premium") == "BASE_PROD"

    def test_write_is_idempotent(self, billing_config, catalog_path):
        catalog = _catalog_for(billing_config, Environment.SANDBOX)
        catalog.update_variation_id("premium", "monthly", "VAR_1")
        first = catalog_path.read_text()
        catalog.update_variation_id("premium", "monthly", "VAR_1")
        assert catalog_path.read_text() == first


class TestUnconfiguredItems:
    def test_lists_missing_ids_and_skips_free(self, billing_config):
        items = PlanCatalog(billing_config).unconfigured_items()
        assert [p["plan"] for p in items["base_plans"]] == ["premium"]
        assert sorted(v["variation"] for v in items["variations"]) == ["monthly", "yearly"]

    def test_configured_items_drop_out(self, billing_config):
        catalog = PlanCatalog(billing_config)
        catalog.update_base_plan_id("premium", "BASE")
        catalog.update_variation_id("premium", "monthly", "VAR_M")
        items = catalog.unconfigured_items()
        assert items["base_plans"] == []
        assert items["variations"] == [{"plan": "premium", "variation": "yearly", "base_plan_id": "BASE"}]
        assert catalog.all_configured() is False

        catalog.update_variation_id("premium", "yearly", "VAR_Y")
        assert catalog.all_configured() is True

    def test_listing_is_per_environment(self, billing_config):
        _catalog_for(billing_config, Environment.SANDBOX).update_base_plan_id("premium", "BASE_SB")
        production = _catalog_for(billing_config, Environment.PRODUCTION)
        assert [p["plan"] for p in production.unconfigured_items()["base_plans"]] == ["premium"]


class TestGetters:
    def test_features_for_variation_key(self, billing_config):
        catalog = PlanCatalog(billing_config)
        assert catalog.get_plan_features("premium_monthly") == ["All premium features", "Priority support"]

    def test_features_for_one_time_purchase(self, billing_config):
        catalog = PlanCatalog(billing_config)
        assert catalog.get_plan_features("week_pass") == ["All premium features for 7 days"]

    def test_features_for_plain_plan_and_unknown(self, billing_config):
        catalog = PlanCatalog(billing_config)
        assert catalog.get_plan_features("free") == ["Basic features"]
        assert catalog.get_plan_features("nonexistent") == []

    def test_one_time_purchase_model(self, billing_config):
        purchase = PlanCatalog(billing_config).get_one_time_purchase("week_pass")
        assert purchase.price_cents == 499
        assert purchase.duration_days == 7
        assert purchase.auto_renews is False

    def test_plan_definition_model(self, billing_config):
        plan = PlanCatalog(billing_config).get_plan_definition("premium")
        assert plan.kind.value == "subscription"
        assert plan.variations["yearly"].amount == 9900
        assert plan.variations["yearly"].cadence.value == "ANNUAL"

    def test_active_variations_hides_inactive(self, billing_config, catalog_path):
        raw = json.loads(catalog_path.read_text())
        raw["plans"]["premium"]["variations"]["yearly"]["active"] = False
        catalog_path.write_text(json.dumps(raw))
        assert list(PlanCatalog(billing_config).active_variations("premium")) == ["monthly"]


class TestInitCatalog:
    def test_writes_example(self, tmp_path):
        path = init_catalog(tmp_path / "config" / "plans.json")
        assert load(path) == EXAMPLE_CATALOG

    def test_refuses_to_overwrite(self, catalog_path):
        with pytest.raises(CatalogAlreadyExistsError):
            init_catalog(catalog_path)
