"""Startup check of the plan catalog.

Logs catalog drift (immutable field changes on variations Square already
knows about) and plans/variations still missing Square identifiers. Never
blocks startup.
"""
import logging

from services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)


def validate_catalog(catalog: PlanCatalog) -> bool:
    """Run the startup checks. Always returns True."""
    _check_immutable_changes(catalog)
    _check_unconfigured(catalog)
    return True


def _check_immutable_changes(catalog: PlanCatalog) -> None:
    report = catalog.validate_immutable_fields()

    if report.status == "error":
        logger.info(f"Could not validate immutable plan fields: {report.reason}")
        return
    if report.status == "ok":
        return

    logger.error(
        "CRITICAL: Immutable subscription plan fields have been modified! "
        "Square subscription plan variations cannot be changed once created; "
        "create NEW variations instead of editing existing ones."
    )
    for change in report.changes:
        logger.error(
            "CATALOG_DRIFT plan=%s variation=%s square_id=%s field=%s detail=%s",
            change.plan, change.variation, change.variation_id, change.field, change.message,
        )
    logger.error(
        "To fix: 1) revert the changes to existing variations "
        "2) add a NEW variation with the new values (e.g. monthly_v2) "
        "3) set the old variation to \"active\": false"
    )


def _check_unconfigured(catalog: PlanCatalog) -> None:
    items = catalog.unconfigured_items()
    if not items["base_plans"] and not items["variations"]:
        logger.info(f"All plans configured for {catalog.environment.value}")
        return

    for plan in items["base_plans"]:
        logger.warning(
            "Plan %s has no Square base plan id for %s",
            plan["plan"], catalog.environment.value,
        )
    for variation in items["variations"]:
        logger.warning(
            "Variation %s.%s has no Square variation id for %s",
            variation["plan"], variation["variation"], catalog.environment.value,
        )
    logger.warning("Run catalog sync to create the missing Square catalog objects")
