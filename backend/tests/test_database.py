"""
MongoDB index definitions for the subscriptions collection.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from database import database


def _index_calls(collection):
    return {
        (call.args[0] if isinstance(call.args[0], str) else tuple(call.args[0])): call.kwargs
        for call in collection.create_index.await_args_list
    }


@pytest.fixture
def mock_db():
    db = MagicMock()
    db.subscriptions.create_index = AsyncMock()
    db.audit_logs.create_index = AsyncMock()
    with patch.object(database, "db", db):
        yield db


@pytest.mark.asyncio
async def test_square_subscription_id_unique_only_for_string_ids(mock_db):
    """Null ids on one-time purchases stay outside the unique index."""
    await database._create_indexes()

    options = _index_calls(mock_db.subscriptions)["square_subscription_id"]
    assert options["unique"] is True
    assert options["partialFilterExpression"] == {"square_subscription_id": {"$type": "string"}}
    assert "sparse" not in options


@pytest.mark.asyncio
async def test_index_conflict_does_not_abort_startup(mock_db, caplog):
    async def create_index(keys, **kwargs):
        if keys == "square_subscription_id":
            raise RuntimeError("IndexOptionsConflict")

    mock_db.subscriptions.create_index = AsyncMock(side_effect=create_index)

    await database._create_indexes()

    assert mock_db.audit_logs.create_index.await_count == 3
    assert any("square_subscription_id index not created" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_duplicate_provider_id_rejected(memory_db):
    """The in-memory collection enforces the same uniqueness as the index."""
    from pymongo.errors import DuplicateKeyError

    from models import Subscription
    from services import subscription_store

    await subscription_store.insert(Subscription(owner_id="a", plan_id="premium_monthly", square_subscription_id="SUB_1"))
    with pytest.raises(DuplicateKeyError):
        await subscription_store.insert(Subscription(owner_id="b", plan_id="premium_monthly", square_subscription_id="SUB_1"))
