"""Billing error taxonomy.

Configuration errors are surfaced to the caller and never retried. Payment
errors carry a user-presentable message taken from the provider's error
detail. Transport failures surface as ProviderUnavailableError once retries
are exhausted.
"""
from typing import Optional, Dict, Any


class BillingError(Exception):
    """Base class for billing failures."""

    code = "billing_error"

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}


class PlanConfigurationError(BillingError):
    """No provider identifier is mapped for the requested plan key."""
    code = "configuration_error"


class PlanNotFoundError(PlanConfigurationError):
    code = "plan_not_found"


class CatalogAlreadyExistsError(BillingError):
    code = "catalog_exists"


class PaymentError(BillingError):
    code = "payment_error"


class CardDeclinedError(PaymentError):
    code = "card_declined"


class CardSaveFailedError(PaymentError):
    code = "card_save_failed"


class SubscriptionFailedError(BillingError):
    code = "subscription_failed"


class SubscriptionNotFoundError(BillingError):
    code = "not_found"


class ProviderUnavailableError(BillingError):
    code = "api_unavailable"


class InvalidEventFormatError(BillingError):
    code = "invalid_event_format"
