from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class Environment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"

class PlanKind(str, Enum):
    FREE = "free"
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"

class Cadence(str, Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    ANNUAL = "ANNUAL"

# Days in one billing period, used for proration and next-billing fallbacks
CADENCE_DAYS = {
    Cadence.WEEKLY: 7,
    Cadence.MONTHLY: 30,
    Cadence.ANNUAL: 365,
}

class SubscriptionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    DELINQUENT = "DELINQUENT"
    PAUSED = "PAUSED"

class RefundStatus(str, Enum):
    PROCESSED = "processed"
    PENDING = "pending"

class UserRole(str, Enum):
    ROLE_CLIENT = "ROLE_CLIENT"
    SYSTEM = "SYSTEM"

class AuditAction(str, Enum):
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_UPGRADED = "SUBSCRIPTION_UPGRADED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    SUBSCRIPTION_STATUS_CHANGED = "SUBSCRIPTION_STATUS_CHANGED"
    ONE_TIME_PURCHASE = "ONE_TIME_PURCHASE"
    REFUND_ISSUED = "REFUND_ISSUED"
    REFUND_FAILED = "REFUND_FAILED"

# ============================================================================
# CATALOG MODELS
# ============================================================================

class PlanVariation(BaseModel):
    """One priced, cadenced offering under a plan (e.g. monthly vs annual)."""
    model_config = ConfigDict(extra="ignore")

    key: str
    name: Optional[str] = None
    amount: int = 0  # minor units
    currency: str = "USD"
    cadence: Optional[Cadence] = None
    sandbox_variation_id: Optional[str] = None
    production_variation_id: Optional[str] = None
    active: bool = True
    price: Optional[str] = None
    billing_notice: Optional[str] = None
    auto_renews: bool = True
    features: List[str] = Field(default_factory=list)

class PlanDefinition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str
    name: Optional[str] = None
    description: Optional[str] = None
    kind: PlanKind = PlanKind.SUBSCRIPTION
    active: bool = True
    sandbox_base_plan_id: Optional[str] = None
    production_base_plan_id: Optional[str] = None
    variations: Dict[str, PlanVariation] = Field(default_factory=dict)
    features: List[str] = Field(default_factory=list)

    @classmethod
    def from_catalog(cls, key: str, raw: Dict[str, Any]) -> "PlanDefinition":
        """Build from a raw catalog node (the JSON file uses `type` for the kind)."""
        variations = {
            vkey: PlanVariation(key=vkey, **(vraw or {}))
            for vkey, vraw in (raw.get("variations") or {}).items()
        }
        data = {k: v for k, v in raw.items() if k not in ("variations", "type")}
        return cls(key=key, kind=raw.get("type", PlanKind.SUBSCRIPTION.value), variations=variations, **data)

class OneTimePurchase(BaseModel):
    """Time-boxed access product with no recurring billing."""
    model_config = ConfigDict(extra="ignore")

    key: str
    name: Optional[str] = None
    active: bool = True
    price: Optional[str] = None
    price_cents: int = 0
    currency: str = "USD"
    duration_days: int = 0
    auto_renews: bool = False
    billing_notice: Optional[str] = None
    features: List[str] = Field(default_factory=list)

# ============================================================================
# SUBSCRIPTION RECORDS
# ============================================================================

def _utc_now() -> datetime:
    return datetime.now(timezone.utc)

class Subscription(BaseModel):
    """Local subscription record (collection: subscriptions)."""
    model_config = ConfigDict(extra="ignore")

    subscription_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    plan_id: str  # plan/variation key, e.g. premium_monthly or week_pass
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    square_subscription_id: Optional[str] = None  # absent for one-time purchases
    square_customer_id: Optional[str] = None
    card_id: Optional[str] = None
    payment_id: Optional[str] = None  # present only when an automatic refund must be possible
    started_at: Optional[datetime] = None
    next_billing_at: Optional[datetime] = None  # access-expires-at for one-time purchases
    canceled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = None
    created_at: Optional[str] = None
    merchant_id: Optional[str] = None

class RefundInfo(BaseModel):
    amount: int
    remaining_days: int
    message: str
    status: RefundStatus

# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    owner_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utc_now)
