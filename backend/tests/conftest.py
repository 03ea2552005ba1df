"""
Pytest fixtures.

Persistence runs on mongomock wrapped in a thin async facade shaped like the
motor API the services use (awaitable collection methods, cursors with
to_list / async iteration). Every awaited call yields to the event loop
first, so coroutines run with asyncio.gather interleave between store
operations the way they do against a real server.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
import pytest_asyncio

from utils.indexes import ensure_indexes
from utils.risk_ledger import clear_pincode_cache

# Bound at import; backoff tests patch asyncio.sleep itself.
_yield_to_loop = asyncio.sleep


class AsyncCursor:
    def __init__(self, cursor):
        self._cursor = cursor
        self._iter = None

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def limit(self, n):
        self._cursor = self._cursor.limit(n)
        return self

    def skip(self, n):
        self._cursor = self._cursor.skip(n)
        return self

    async def to_list(self, length=None):
        await _yield_to_loop(0)
        docs = list(self._cursor)
        return docs if length is None else docs[:length]

    def __aiter__(self):
        self._iter = iter(self._cursor)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class AsyncCollection:
    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        return AsyncCursor(self._collection.find(*args, **kwargs))

    def aggregate(self, pipeline, **kwargs):
        return AsyncCursor(self._collection.aggregate(pipeline, **kwargs))

    def list_indexes(self):
        return AsyncCursor(self._collection.list_indexes())

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        async def call(*args, **kwargs):
            await _yield_to_loop(0)
            return attr(*args, **kwargs)

        return call


class AsyncDatabase:
    def __init__(self, database):
        self._database = database

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return AsyncCollection(self._database[name])

    def __getitem__(self, name):
        return AsyncCollection(self._database[name])

    async def command(self, *args, **kwargs):
        return {"ok": 1.0}

    # raw access for assertions
    @property
    def sync(self):
        return self._database


@pytest_asyncio.fixture
async def db():
    client = mongomock.MongoClient(tz_aware=True)
    database = AsyncDatabase(client["cod_recon_test"])
    await ensure_indexes(database)
    clear_pincode_cache()
    yield database
    clear_pincode_cache()


@pytest.fixture
def now():
    return datetime(2026, 3, 10, 6, 30, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def account(db, now):
    doc = {
        "_id": "ACC-1",
        "name": "Acme Stores",
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "payout_target": {
            "account_holder_name": "Acme Stores",
            "ifsc_code": "HDFC0000001",
            "bank_account_number": "50100012345678",
            "email": "finance@acme.test",
            "phone": "9876543210",
        },
    }
    await db.accounts.insert_one(doc)
    return doc


@pytest.fixture
def seed_collectibles(db, now):
    """Insert ready-made collectibles straight into the store."""

    async def seed(count, *, amount=1000_00, status="reconciled", shipping_cost=0,
                   reconciled_days_ago=5, created_days_ago=10, account_id="ACC-1", prefix="AWB"):
        existing = await db.collectibles.count_documents({})
        docs = []
        for i in range(count):
            n = existing + i
            docs.append({
                "_id": f"COL-{n:05d}",
                "shipment_ref": f"{prefix}{n:05d}",
                "account_id": account_id,
                "carrier": "velocity",
                "order_id": None,
                "expected_base": amount,
                "expected_handling": 0,
                "expected_total": amount,
                "shipping_cost": shipping_cost,
                "status": status,
                "actual_amount": amount if status in ("reconciled", "paid") else None,
                "variance": 0,
                "discrepancy_id": None,
                "batch_id": None,
                "reconciled_at": now - timedelta(days=reconciled_days_ago),
                "version": 0,
                "created_at": now - timedelta(days=created_days_ago),
                "updated_at": now,
            })
        if docs:
            await db.collectibles.insert_many(docs)
        return [d["_id"] for d in docs]

    return seed
