"""Square Webhook Service - authenticate, parse and dispatch Square webhook events.

Pipeline:
1. Signature: HMAC-SHA256 of the raw request body with the webhook
   signature key, base64 encoded, compared in constant time with the
   x-square-hmacsha256-signature header
2. Parse: JSON envelope {type, data, event_id, created_at, merchant_id};
   the type is normalized (lowercase, non-alphanumeric runs -> ".")
3. Dispatch: the injected WebhookEventHandler receives the event

Once signature and parse succeed the event is always acknowledged; a
handler failure is logged, because a provider retry would deliver the same
payload to the same handler.
"""
import base64
import hashlib
import hmac
import json
import logging
import re
from collections import OrderedDict
from enum import Enum
from typing import Optional, Dict, Any, Union, Protocol

from pydantic import BaseModel

from models import WebhookEvent
from services.billing_config import BillingConfig
from services.billing_errors import InvalidEventFormatError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-square-hmacsha256-signature"

_NON_ALNUM_RUN = re.compile(r"[^a-z0-9]+")


# =============================================================================
# Signature
# =============================================================================

def compute_signature(raw_body: Union[bytes, str], signature_key: str) -> str:
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    digest = hmac.new(signature_key.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: Any, signature: Any, signature_key: Any) -> bool:
    """True when signature is the base64 HMAC-SHA256 of raw_body. Never raises."""
    if not isinstance(raw_body, (bytes, str)) or not isinstance(signature, str) or not isinstance(signature_key, str):
        return False
    try:
        expected = compute_signature(raw_body, signature_key)
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
    except Exception as e:
        logger.warning(f"Webhook signature check failed: {e}")
        return False


# =============================================================================
# Parsing
# =============================================================================

def normalize_event_type(event_type: str) -> str:
    """Lowercase; runs of non-alphanumerics become ".", e.g. invoice.payment_made -> invoice.payment.made"""
    return _NON_ALNUM_RUN.sub(".", event_type.lower()).strip(".")


def parse_event(raw: Union[bytes, str, Dict[str, Any]]) -> WebhookEvent:
    """Parse a raw body or decoded mapping into a WebhookEvent.

    Raises InvalidEventFormatError for invalid JSON, a non-object body, or a
    missing `type` / `data`.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidEventFormatError("Webhook body is not UTF-8") from e
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidEventFormatError(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise InvalidEventFormatError("Webhook body must be a JSON object")

    event_type = raw.get("type")
    data = raw.get("data")
    if not isinstance(event_type, str) or not event_type.strip():
        raise InvalidEventFormatError("Webhook event is missing 'type'")
    if not isinstance(data, dict):
        raise InvalidEventFormatError("Webhook event is missing 'data'")

    return WebhookEvent(
        event_type=normalize_event_type(event_type),
        data=data,
        event_id=raw.get("event_id"),
        created_at=raw.get("created_at"),
        merchant_id=raw.get("merchant_id"),
    )


# =============================================================================
# Identifier extraction
# =============================================================================

def _dig(mapping: Any, *keys: str) -> Optional[Any]:
    for key in keys:
        if not isinstance(mapping, dict):
            return None
        mapping = mapping.get(key)
    return mapping


def _event_object(event: WebhookEvent) -> Dict[str, Any]:
    obj = event.data.get("object")
    return obj if isinstance(obj, dict) else {}


def subscription_id_of(event: WebhookEvent) -> Optional[str]:
    obj = _event_object(event)
    for candidate in (
        _dig(obj, "subscription", "id"),
        _dig(obj, "invoice", "subscription_id"),
        obj.get("subscription_id"),
    ):
        if candidate:
            return candidate
    if is_subscription_event(event):
        return event.data.get("id")
    return None


def customer_id_of(event: WebhookEvent) -> Optional[str]:
    obj = _event_object(event)
    for candidate in (
        _dig(obj, "customer", "id"),
        obj.get("customer_id"),
        _dig(obj, "subscription", "customer_id"),
        _dig(obj, "payment", "customer_id"),
    ):
        if candidate:
            return candidate
    if is_customer_event(event):
        return event.data.get("id")
    return None


def payment_id_of(event: WebhookEvent) -> Optional[str]:
    obj = _event_object(event)
    candidate = _dig(obj, "payment", "id")
    if candidate:
        return candidate
    if is_payment_event(event):
        return event.data.get("id")
    return None


def is_subscription_event(event: WebhookEvent) -> bool:
    return event.event_type.startswith("subscription.")


def is_invoice_event(event: WebhookEvent) -> bool:
    return event.event_type.startswith("invoice.")


def is_payment_event(event: WebhookEvent) -> bool:
    return event.event_type.startswith("payment.")


def is_customer_event(event: WebhookEvent) -> bool:
    return event.event_type.startswith("customer.")


# =============================================================================
# Pipeline
# =============================================================================

class WebhookEventHandler(Protocol):
    async def handle_event(self, event: WebhookEvent) -> None:
        ...


class WebhookOutcome(str, Enum):
    OK = "ok"
    MISSING_SIGNATURE = "missing_signature"
    INVALID_SIGNATURE = "invalid_signature"
    SIGNATURE_KEY_NOT_CONFIGURED = "signature_key_not_configured"
    BODY_READ_ERROR = "body_read_error"
    INVALID_EVENT_FORMAT = "invalid_event_format"


OUTCOME_HTTP_STATUS = {
    WebhookOutcome.OK: 200,
    WebhookOutcome.MISSING_SIGNATURE: 401,
    WebhookOutcome.INVALID_SIGNATURE: 401,
    WebhookOutcome.SIGNATURE_KEY_NOT_CONFIGURED: 500,
    WebhookOutcome.BODY_READ_ERROR: 400,
    WebhookOutcome.INVALID_EVENT_FORMAT: 400,
}


class WebhookResult(BaseModel):
    outcome: WebhookOutcome
    event: Optional[WebhookEvent] = None
    message: str = ""
    duplicate: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == WebhookOutcome.OK

    @property
    def http_status(self) -> int:
        return OUTCOME_HTTP_STATUS[self.outcome]


class SquareWebhookPipeline:
    """Webhook ingest for one BillingConfig and one handler.

    dedupe_events turns on a bounded in-process cache of processed event ids
    so a redelivered event is acknowledged without reaching the handler.
    It is off by default; ordering is still last-write-wins.
    """

    def __init__(
        self,
        config: BillingConfig,
        handler: Optional[WebhookEventHandler] = None,
        dedupe_events: bool = False,
        dedupe_capacity: int = 1000,
    ):
        self.config = config
        self.handler = handler
        self.dedupe_events = dedupe_events
        self.dedupe_capacity = dedupe_capacity
        self._processed: "OrderedDict[str, None]" = OrderedDict()

    def _seen(self, event_id: Optional[str]) -> bool:
        return bool(self.dedupe_events and event_id and event_id in self._processed)

    def _remember(self, event_id: Optional[str]) -> None:
        if not self.dedupe_events or not event_id:
            return
        self._processed[event_id] = None
        while len(self._processed) > self.dedupe_capacity:
            self._processed.popitem(last=False)

    async def process(self, raw_body: Optional[bytes], signature: Optional[str]) -> WebhookResult:
        """Run one delivery through signature check, parse and dispatch.

        raw_body is None when the transport failed to read the request body.
        """
        if raw_body is None:
            return WebhookResult(outcome=WebhookOutcome.BODY_READ_ERROR, message="Could not read request body")

        signature_key = self.config.webhook_signature_key
        if not signature_key:
            logger.error("SQUARE_WEBHOOK_SIGNATURE_KEY is not configured - rejecting webhook")
            return WebhookResult(
                outcome=WebhookOutcome.SIGNATURE_KEY_NOT_CONFIGURED,
                message="Webhook signature key not configured",
            )
        if not signature:
            logger.warning("Square webhook rejected: missing signature header")
            return WebhookResult(outcome=WebhookOutcome.MISSING_SIGNATURE, message="Missing signature")
        if not verify_signature(raw_body, signature, signature_key):
            logger.warning("Square webhook rejected: invalid signature")
            return WebhookResult(outcome=WebhookOutcome.INVALID_SIGNATURE, message="Invalid signature")

        try:
            event = parse_event(raw_body)
        except InvalidEventFormatError as e:
            logger.warning(f"Square webhook rejected: {e.message}")
            return WebhookResult(outcome=WebhookOutcome.INVALID_EVENT_FORMAT, message=e.message)

        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s merchant_id=%s subscription_id=%s",
            event.event_id, event.event_type, event.merchant_id, subscription_id_of(event),
        )

        if self._seen(event.event_id):
            logger.info(f"Event {event.event_id} already processed - skipping")
            return WebhookResult(outcome=WebhookOutcome.OK, event=event, message="Already processed", duplicate=True)

        await self._dispatch(event)
        self._remember(event.event_id)
        return WebhookResult(outcome=WebhookOutcome.OK, event=event, message="Received")

    async def _dispatch(self, event: WebhookEvent) -> None:
        if self.handler is None:
            logger.warning(
                "No Square webhook handler configured; event %s (%s) acknowledged without processing",
                event.event_id, event.event_type,
            )
            return
        try:
            await self.handler.handle_event(event)
            logger.info("WEBHOOK_PROCESSED event_id=%s event_type=%s", event.event_id, event.event_type)
        except Exception as e:
            logger.error(
                "WEBHOOK_HANDLER_FAILED event_id=%s event_type=%s error=%s",
                event.event_id, event.event_type, e,
                exc_info=True,
            )
