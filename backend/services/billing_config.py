"""Billing configuration.

One BillingConfig is built at startup and passed into every billing
component. Values resolve with precedence:

    application overrides > library-wide overrides > environment variables > defaults

Environment variables (loaded from backend/.env):
- SQUARE_ENVIRONMENT: sandbox | production (unrecognized -> sandbox; "test" also disables retries)
- SQUARE_ACCESS_TOKEN, SQUARE_LOCATION_ID
- SQUARE_API_URL: overrides the environment's default API base URL
- SQUARE_WEBHOOK_SIGNATURE_KEY
- SQUARE_PLANS_PATH: path to the plan catalog JSON
- SQUARE_DISABLE_RETRIES: "true" disables outbound retries
- SQUARE_WEBHOOK_DEDUPE: "true" skips redelivered webhook event ids (in-process, bounded)
"""
import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from dotenv import load_dotenv
from pydantic import BaseModel

from models import Environment

ROOT_DIR = Path(__file__).resolve().parent.parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

SANDBOX_API_URL = "https://connect.squareupsandbox.com/v2"
PRODUCTION_API_URL = "https://connect.squareup.com/v2"
SQUARE_API_VERSION = "2025-01-23"
DEFAULT_PLANS_PATH = ROOT_DIR / "config" / "plans.json"

_ENVIRONMENT_ALIASES = {
    "sandbox": Environment.SANDBOX,
    "production": Environment.PRODUCTION,
    "prod": Environment.PRODUCTION,
}

_TRUTHY = {"1", "true", "yes", "on"}


def resolve_environment(value: Optional[str]) -> Environment:
    """Map a configured environment name to sandbox/production; anything unknown is sandbox."""
    if not value:
        return Environment.SANDBOX
    return _ENVIRONMENT_ALIASES.get(str(value).strip().lower(), Environment.SANDBOX)


class BillingConfig(BaseModel):
    environment: Environment = Environment.SANDBOX
    access_token: Optional[str] = None
    location_id: Optional[str] = None
    api_url: str = SANDBOX_API_URL
    api_version: str = SQUARE_API_VERSION
    webhook_signature_key: Optional[str] = None
    plans_path: Path = DEFAULT_PLANS_PATH
    disable_retries: bool = False
    max_retries: int = 3
    retry_delay_seconds: float = 0.1
    connect_timeout_seconds: float = 10.0
    receive_timeout_seconds: float = 30.0
    dedupe_webhook_events: bool = False


def _env_settings() -> Dict[str, Any]:
    settings: Dict[str, Any] = {}
    raw_env = (os.getenv("SQUARE_ENVIRONMENT") or "").strip()
    if raw_env:
        settings["environment"] = raw_env
        if raw_env.lower() == "test":
            settings["disable_retries"] = True
    for key, env_name in (
        ("access_token", "SQUARE_ACCESS_TOKEN"),
        ("location_id", "SQUARE_LOCATION_ID"),
        ("api_url", "SQUARE_API_URL"),
        ("webhook_signature_key", "SQUARE_WEBHOOK_SIGNATURE_KEY"),
        ("plans_path", "SQUARE_PLANS_PATH"),
    ):
        value = (os.getenv(env_name) or "").strip()
        if value:
            settings[key] = value
    disable = (os.getenv("SQUARE_DISABLE_RETRIES") or "").strip().lower()
    if disable:
        settings["disable_retries"] = disable in _TRUTHY
    dedupe = (os.getenv("SQUARE_WEBHOOK_DEDUPE") or "").strip().lower()
    if dedupe:
        settings["dedupe_webhook_events"] = dedupe in _TRUTHY
    return settings


def load_billing_config(
    app_overrides: Optional[Dict[str, Any]] = None,
    library_overrides: Optional[Dict[str, Any]] = None,
) -> BillingConfig:
    """Build the BillingConfig from overrides and the process environment."""
    merged: Dict[str, Any] = {}
    merged.update(_env_settings())
    merged.update({k: v for k, v in (library_overrides or {}).items() if v is not None})
    merged.update({k: v for k, v in (app_overrides or {}).items() if v is not None})

    merged["environment"] = resolve_environment(merged.get("environment"))
    if "api_url" not in merged:
        merged["api_url"] = PRODUCTION_API_URL if merged["environment"] == Environment.PRODUCTION else SANDBOX_API_URL
    merged["api_url"] = str(merged["api_url"]).rstrip("/")

    config = BillingConfig(**merged)
    logger.info(
        "Billing config loaded environment=%s api_url=%s retries=%s plans_path=%s",
        config.environment.value,
        config.api_url,
        "off" if config.disable_retries else config.max_retries,
        config.plans_path,
    )
    return config
