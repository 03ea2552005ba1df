from datetime import timedelta

import pytest

from utils.clock import utc_now
from utils.errors import AlreadyInProgress
from utils.idempotency import (
    IN_PROGRESS_RESPONSE,
    clear_idempotency_key,
    complete_idempotency_key,
    reserve_idempotency_key,
)
from utils.locks import acquire_lock, hold_lock, release_lock, renew_lock


@pytest.mark.asyncio
async def test_lock_is_exclusive_until_released(db):
    owner = await acquire_lock(db=db, name="batch:ACC-1", ttl_seconds=60)

    assert owner
    assert await acquire_lock(db=db, name="batch:ACC-1", ttl_seconds=60) is None

    # a stranger cannot free someone else's lease
    await release_lock(db=db, name="batch:ACC-1", owner="someone-else")
    assert await acquire_lock(db=db, name="batch:ACC-1", ttl_seconds=60) is None

    await release_lock(db=db, name="batch:ACC-1", owner=owner)
    assert await acquire_lock(db=db, name="batch:ACC-1", ttl_seconds=60)


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over(db):
    await db.locks.insert_one({
        "_id": "batch:ACC-1",
        "owner": "crashed-worker",
        "acquired_at": utc_now() - timedelta(minutes=20),
        "expires_at": utc_now() - timedelta(minutes=10),
    })

    owner = await acquire_lock(db=db, name="batch:ACC-1", ttl_seconds=60, owner="fresh-worker")

    assert owner == "fresh-worker"
    lock = await db.locks.find_one({"_id": "batch:ACC-1"})
    assert lock["owner"] == "fresh-worker"


@pytest.mark.asyncio
async def test_renew_extends_only_the_holders_lease(db):
    owner = await acquire_lock(db=db, name="payout:REM-1", ttl_seconds=60)
    await db.locks.update_one({"_id": "payout:REM-1"}, {"$set": {"expires_at": utc_now() - timedelta(seconds=5)}})

    # expired but unclaimed is still ours
    assert await renew_lock(db=db, name="payout:REM-1", owner=owner, ttl_seconds=120) is True
    lock = await db.locks.find_one({"_id": "payout:REM-1"})
    assert lock["expires_at"] > utc_now() + timedelta(seconds=100)

    await db.locks.update_one({"_id": "payout:REM-1"}, {"$set": {"owner": "successor"}})
    assert await renew_lock(db=db, name="payout:REM-1", owner=owner, ttl_seconds=120) is False


@pytest.mark.asyncio
async def test_hold_lock_raises_when_contended(db):
    async with hold_lock(db=db, name="payout:REM-1", ttl_seconds=60):
        with pytest.raises(AlreadyInProgress):
            async with hold_lock(db=db, name="payout:REM-1", ttl_seconds=60):
                pass

    assert await db.locks.count_documents({}) == 0


@pytest.mark.asyncio
async def test_hold_lock_releases_on_error(db):
    with pytest.raises(RuntimeError):
        async with hold_lock(db=db, name="payout:REM-1", ttl_seconds=60):
            raise RuntimeError("boom")

    assert await db.locks.find_one({"_id": "payout:REM-1"}) is None


@pytest.mark.asyncio
async def test_idempotency_key_lifecycle(db):
    assert await reserve_idempotency_key(db=db, key="evt_1", scope="carrier:velocity") is None

    # second delivery while the first is still running
    assert await reserve_idempotency_key(db=db, key="evt_1", scope="carrier:velocity") == IN_PROGRESS_RESPONSE

    # same key in another scope is independent
    assert await reserve_idempotency_key(db=db, key="evt_1", scope="carrier:delhivery") is None

    await complete_idempotency_key(db=db, key="evt_1", scope="carrier:velocity", response={"ok": True, "n": 1})
    assert await reserve_idempotency_key(db=db, key="evt_1", scope="carrier:velocity") == {"ok": True, "n": 1}


@pytest.mark.asyncio
async def test_stale_reservation_can_be_retried(db):
    await db.idempotency_keys.insert_one({
        "key": "evt_2",
        "scope": "payouts",
        "status": "reserved",
        "response": None,
        "created_at": utc_now() - timedelta(hours=1),
    })

    assert await reserve_idempotency_key(db=db, key="evt_2", scope="payouts") is None
    assert await db.idempotency_keys.count_documents({"key": "evt_2"}) == 1


@pytest.mark.asyncio
async def test_cleared_key_allows_redelivery(db):
    await reserve_idempotency_key(db=db, key="evt_3", scope="payouts")
    await clear_idempotency_key(db=db, key="evt_3", scope="payouts")

    assert await reserve_idempotency_key(db=db, key="evt_3", scope="payouts") is None
