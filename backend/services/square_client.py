"""Square API client - thin async request/response shim over the Square v2 REST API.

Every mutating call carries a fresh idempotency key so a retried request is
deduplicated by Square. Transport failures and 5xx/429 responses are retried
up to config.max_retries times with a linearly increasing delay unless
retries are disabled (tests, local development).

Errors map onto the billing taxonomy:
- 402 on card/payment/subscription create -> CardDeclinedError
- card save failure -> CardSaveFailedError
- 404 on subscription get/cancel -> SubscriptionNotFoundError
- other non-2xx -> SubscriptionFailedError / PaymentError
- transport failure -> ProviderUnavailableError
"""
import asyncio
import logging
import uuid
from typing import Optional, Dict, Any

import httpx

from services.billing_config import BillingConfig
from services.billing_errors import (
    CardDeclinedError,
    CardSaveFailedError,
    PaymentError,
    ProviderUnavailableError,
    SubscriptionFailedError,
    SubscriptionNotFoundError,
    BillingError,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def generate_idempotency_key() -> str:
    return uuid.uuid4().hex


def error_detail(body: Any, default: str = "Request failed") -> str:
    """First user-presentable error detail from a Square error body."""
    if isinstance(body, dict):
        errors = body.get("errors") or []
        if errors and isinstance(errors[0], dict):
            return errors[0].get("detail") or errors[0].get("code") or default
    return default


class SquareResponse:
    """Status code plus decoded JSON body (empty dict when the body is not JSON)."""

    def __init__(self, status_code: int, body: Dict[str, Any]):
        self.status_code = status_code
        self.body = body

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class SquareClient:
    def __init__(self, config: BillingConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._timeout = httpx.Timeout(
            config.receive_timeout_seconds,
            connect=config.connect_timeout_seconds,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.access_token or ''}",
            "Square-Version": self.config.api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _max_attempts(self) -> int:
        if self.config.disable_retries:
            return 1
        return self.config.max_retries + 1

    # =========================================================================
    # Transport
    # =========================================================================

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> SquareResponse:
        """Send one logical request, retrying transient failures.

        Raises ProviderUnavailableError when the last attempt failed at the
        transport level or with a 5xx. Other non-2xx responses are returned.
        """
        url = f"{self.config.api_url}{path}"
        attempts = self._max_attempts()
        last_error: Optional[Exception] = None
        response: Optional[httpx.Response] = None

        for attempt in range(1, attempts + 1):
            try:
                async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                    response = await client.request(method, url, json=json, params=params, headers=self._headers())
                last_error = None
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    break
                logger.warning(
                    "SQUARE_RETRYABLE_STATUS method=%s path=%s status=%s attempt=%s/%s",
                    method, path, response.status_code, attempt, attempts,
                )
            except httpx.HTTPError as e:
                last_error = e
                logger.warning(
                    "SQUARE_TRANSPORT_ERROR method=%s path=%s attempt=%s/%s error=%s",
                    method, path, attempt, attempts, e,
                )

            if attempt < attempts:
                await asyncio.sleep(attempt * self.config.retry_delay_seconds)

        if last_error is not None or response is None:
            raise ProviderUnavailableError(
                "Square API is unavailable",
                {"method": method, "path": path, "error": str(last_error)},
            )
        if response.status_code >= 500:
            raise ProviderUnavailableError(
                "Square API is unavailable",
                {"method": method, "path": path, "status": response.status_code},
            )

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}
        return SquareResponse(response.status_code, body)

    # =========================================================================
    # Cards
    # =========================================================================

    async def create_card(self, customer_id: str, card_nonce: str) -> Dict[str, Any]:
        """Exchange a one-time card nonce for a card on file."""
        body = {
            "idempotency_key": generate_idempotency_key(),
            "source_id": card_nonce,
            "card": {"customer_id": customer_id},
        }
        try:
            resp = await self.request("POST", "/cards", json=body)
        except ProviderUnavailableError as e:
            raise CardSaveFailedError("Could not save card", e.details) from e
        if not resp.ok:
            raise CardSaveFailedError(error_detail(resp.body, "Could not save card"), {"status": resp.status_code})
        return resp.body.get("card", {})

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def create_subscription(
        self,
        customer_id: str,
        plan_variation_id: str,
        card_id: str,
        start_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {
            "idempotency_key": generate_idempotency_key(),
            "location_id": self.config.location_id,
            "plan_variation_id": plan_variation_id,
            "customer_id": customer_id,
            "card_id": card_id,
        }
        if start_date:
            body["start_date"] = start_date

        resp = await self.request("POST", "/subscriptions", json=body)
        if resp.status_code == 402:
            raise CardDeclinedError(error_detail(resp.body, "Card declined"), {"status": 402})
        if not resp.ok:
            raise SubscriptionFailedError(
                error_detail(resp.body, "Subscription creation failed"),
                {"status": resp.status_code},
            )
        return resp.body.get("subscription", {})

    async def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        resp = await self.request("GET", f"/subscriptions/{subscription_id}")
        if resp.status_code == 404:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        if not resp.ok:
            raise SubscriptionFailedError(error_detail(resp.body, "Subscription lookup failed"), {"status": resp.status_code})
        return resp.body.get("subscription", {})

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """ACTIVE subscriptions cancel at period end; PENDING ones cancel immediately (Square semantics)."""
        resp = await self.request("POST", f"/subscriptions/{subscription_id}/cancel")
        if resp.status_code == 404:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        if not resp.ok:
            raise SubscriptionFailedError(error_detail(resp.body, "Subscription cancellation failed"), {"status": resp.status_code})
        return resp.body.get("subscription", {})

    # =========================================================================
    # Payments and refunds
    # =========================================================================

    async def create_payment(
        self,
        source_id: str,
        amount: int,
        currency: str,
        customer_id: Optional[str] = None,
        note: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {
            "idempotency_key": generate_idempotency_key(),
            "source_id": source_id,
            "amount_money": {"amount": amount, "currency": currency},
            "autocomplete": True,
            "location_id": self.config.location_id,
        }
        for key, value in (("customer_id", customer_id), ("note", note), ("reference_id", reference_id)):
            if value is not None:
                body[key] = value

        resp = await self.request("POST", "/payments", json=body)
        if resp.status_code == 402:
            raise CardDeclinedError(error_detail(resp.body, "Card declined"), {"status": 402})
        if not resp.ok:
            raise PaymentError(error_detail(resp.body, "Payment failed"), {"status": resp.status_code})
        return resp.body.get("payment", {})

    async def refund_payment(
        self,
        payment_id: str,
        amount: int,
        currency: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {
            "idempotency_key": generate_idempotency_key(),
            "payment_id": payment_id,
            "amount_money": {"amount": amount, "currency": currency},
        }
        if reason:
            body["reason"] = reason

        resp = await self.request("POST", "/refunds", json=body)
        if not resp.ok:
            raise PaymentError(error_detail(resp.body, "Refund failed"), {"status": resp.status_code})
        return resp.body.get("refund", {})

    # =========================================================================
    # Catalog
    # =========================================================================

    async def upsert_catalog_object(self, catalog_object: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "idempotency_key": generate_idempotency_key(),
            "object": catalog_object,
        }
        resp = await self.request("POST", "/catalog/object", json=body)
        if not resp.ok:
            raise BillingError(error_detail(resp.body, "Catalog object creation failed"), {"status": resp.status_code})
        return resp.body.get("catalog_object", {})

    async def retrieve_catalog_object(self, object_id: str) -> Optional[Dict[str, Any]]:
        resp = await self.request("GET", f"/catalog/object/{object_id}")
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise BillingError(error_detail(resp.body, "Catalog lookup failed"), {"status": resp.status_code})
        return resp.body.get("object")
