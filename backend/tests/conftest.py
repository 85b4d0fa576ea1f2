"""
Pytest configuration and shared test helpers for backend tests.
"""
import copy
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

os.environ.setdefault("PYTEST_RUNNING", "1")
# Outbound retries off for every test
os.environ.setdefault("SQUARE_ENVIRONMENT", "test")

import pytest

from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError
from database import database
from server import app
from services.billing_config import BillingConfig
from services.plan_catalog import EXAMPLE_CATALOG, save


def _matches(doc, query):
    for key, expected in query.items():
        value = doc.get(key)
        if isinstance(expected, dict) and "$in" in expected:
            if value not in expected["$in"]:
                return False
        elif value != expected:
            return False
    return True


class InMemoryDb:
    """Minimal in-memory stand-in for the subscriptions and audit_logs collections."""

    def __init__(self):
        self.subscriptions = []
        self.audit_logs = []

    def _find(self, query, sort=None):
        docs = [d for d in self.subscriptions if _matches(d, query)]
        if sort:
            field, direction = sort[0]
            docs.sort(key=lambda d: d.get(field) or "", reverse=direction == -1)
        return docs

    def _check_unique(self, doc):
        """Mirror the partial unique index: string square_subscription_id values must be unique."""
        square_id = doc.get("square_subscription_id")
        if not isinstance(square_id, str):
            return
        for existing in self.subscriptions:
            if existing.get("square_subscription_id") == square_id and existing.get("subscription_id") != doc.get("subscription_id"):
                raise DuplicateKeyError(f"E11000 duplicate key square_subscription_id: {square_id}")

    def get_db(self):
        db = MagicMock()

        async def insert_one(doc):
            self._check_unique(doc)
            self.subscriptions.append(copy.deepcopy(doc))
            return MagicMock(inserted_id=doc.get("subscription_id"))

        async def update_one(query, update, upsert=False):
            self._check_unique(update.get("$set", {}))
            docs = self._find(query)
            if docs:
                docs[0].update(copy.deepcopy(update.get("$set", {})))
            elif upsert:
                self.subscriptions.append(copy.deepcopy(update.get("$set", {})))
            return MagicMock(matched_count=len(docs))

        async def find_one(query, projection=None, sort=None):
            docs = self._find(query, sort)
            return copy.deepcopy(docs[0]) if docs else None

        async def audit_insert_one(doc):
            self.audit_logs.append(doc)

        db.subscriptions.insert_one = AsyncMock(side_effect=insert_one)
        db.subscriptions.update_one = AsyncMock(side_effect=update_one)
        db.subscriptions.find_one = AsyncMock(side_effect=find_one)
        db.audit_logs.insert_one = AsyncMock(side_effect=audit_insert_one)
        return db

    def by_owner(self, owner_id):
        return [d for d in self.subscriptions if d.get("owner_id") == owner_id]


@pytest.fixture
def memory_db():
    store = InMemoryDb()
    with patch.object(database, "get_db", return_value=store.get_db()):
        yield store


@pytest.fixture
def catalog_path(tmp_path):
    """Example catalog written to a temp file."""
    path = tmp_path / "plans.json"
    save(path, copy.deepcopy(EXAMPLE_CATALOG))
    return path


@pytest.fixture
def billing_config(catalog_path):
    return BillingConfig(
        access_token="EAAA-test-token",
        location_id="LOC123",
        webhook_signature_key="test-signature-key",
        plans_path=catalog_path,
        disable_retries=True,
        retry_delay_seconds=0,
    )


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Lifespan (MongoDB) is not started."""
    yield TestClient(app)
    app.dependency_overrides.clear()
