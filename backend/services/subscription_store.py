"""Persistence for local subscription records (collection: subscriptions).

Records are stored as JSON-mode documents (ISO-8601 timestamps, string
enums) and never deleted; cancellation is a status change.
"""
import logging
from typing import Optional, Dict, Any

from database import database
from models import Subscription, SubscriptionStatus
from utils.dates import utc_now

logger = logging.getLogger(__name__)

NON_TERMINAL_STATUSES = [
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PENDING.value,
    SubscriptionStatus.DELINQUENT.value,
    SubscriptionStatus.PAUSED.value,
]


def to_document(record: Subscription) -> Dict[str, Any]:
    return record.model_dump(mode="json")


def from_document(doc: Optional[Dict[str, Any]]) -> Optional[Subscription]:
    if not doc:
        return None
    return Subscription(**doc)


async def insert(record: Subscription) -> Subscription:
    db = database.get_db()
    await db.subscriptions.insert_one(to_document(record))
    logger.info(
        "SUBSCRIPTION_STORED subscription_id=%s owner_id=%s plan_id=%s status=%s",
        record.subscription_id, record.owner_id, record.plan_id, record.status.value,
    )
    return record


async def save(record: Subscription) -> Subscription:
    db = database.get_db()
    record.updated_at = utc_now()
    doc = to_document(record)
    await db.subscriptions.update_one(
        {"subscription_id": record.subscription_id},
        {"$set": doc},
        upsert=True,
    )
    return record


async def get(subscription_id: str) -> Optional[Subscription]:
    db = database.get_db()
    doc = await db.subscriptions.find_one({"subscription_id": subscription_id}, {"_id": 0})
    return from_document(doc)


async def get_by_square_id(square_subscription_id: str) -> Optional[Subscription]:
    db = database.get_db()
    doc = await db.subscriptions.find_one(
        {"square_subscription_id": square_subscription_id},
        {"_id": 0},
    )
    return from_document(doc)


async def get_active_for_owner(owner_id: str) -> Optional[Subscription]:
    """The record governing current access: newest ACTIVE, else newest other non-terminal."""
    db = database.get_db()
    doc = await db.subscriptions.find_one(
        {"owner_id": owner_id, "status": SubscriptionStatus.ACTIVE.value},
        {"_id": 0},
        sort=[("created_at", -1)],
    )
    if doc is None:
        doc = await db.subscriptions.find_one(
            {"owner_id": owner_id, "status": {"$in": NON_TERMINAL_STATUSES}},
            {"_id": 0},
            sort=[("created_at", -1)],
        )
    return from_document(doc)
