import uuid
from contextlib import asynccontextmanager
from datetime import timedelta

from pymongo.errors import DuplicateKeyError

from utils.clock import utc_now
from utils.errors import AlreadyInProgress


async def acquire_lock(*, db, name: str, ttl_seconds: int, owner: str | None = None) -> str | None:
    """
    Lease-style lock document keyed by name.
    Returns the owner token on success, None if someone else holds a live lease.
    Expired leases are taken over so a crashed worker never wedges a batch.
    """
    owner = owner or uuid.uuid4().hex
    now = utc_now()
    expires_at = now + timedelta(seconds=ttl_seconds)

    try:
        await db.locks.insert_one({
            "_id": name,
            "owner": owner,
            "acquired_at": now,
            "expires_at": expires_at,
        })
        return owner
    except DuplicateKeyError:
        pass

    taken = await db.locks.find_one_and_update(
        {"_id": name, "expires_at": {"$lte": now}},
        {
            "$set": {
                "owner": owner,
                "acquired_at": now,
                "expires_at": expires_at,
            }
        },
    )
    return owner if taken else None


async def renew_lock(*, db, name: str, owner: str, ttl_seconds: int) -> bool:
    """
    Push the lease forward if `owner` still holds it. An expired lease nobody
    took over still counts as held. False means another worker owns it now.
    """
    res = await db.locks.update_one(
        {"_id": name, "owner": owner},
        {"$set": {"expires_at": utc_now() + timedelta(seconds=ttl_seconds)}},
    )
    return res.matched_count == 1


async def release_lock(*, db, name: str, owner: str):
    # Only the holder may release; a stale holder must not free a successor's lease.
    await db.locks.delete_one({"_id": name, "owner": owner})


@asynccontextmanager
async def hold_lock(*, db, name: str, ttl_seconds: int):
    owner = await acquire_lock(db=db, name=name, ttl_seconds=ttl_seconds)
    if not owner:
        raise AlreadyInProgress(f"Lock {name} is held by another worker", lock=name)
    try:
        yield owner
    finally:
        await release_lock(db=db, name=name, owner=owner)
