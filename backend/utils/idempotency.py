from datetime import timedelta

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from utils.clock import as_utc, utc_now

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24 * 7  # 7 days; carriers re-deliver for days
IN_PROGRESS_STALE_SECONDS = 60 * 10         # 10 minutes

IN_PROGRESS_RESPONSE = {
    "message": "Request already in progress",
    "status": "processing",
}


async def reserve_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
):
    """
    Reserve an idempotency key.
    If key already exists and is completed, return stored response.
    If key is stale in reserved state, expire it and allow retry.
    """
    existing = await db.idempotency_keys.find_one({
        "key": key,
        "scope": scope,
    })

    if existing:
        if existing.get("status") == "completed":
            return existing.get("response")

        created_at = as_utc(existing.get("created_at"))
        fresh = created_at and utc_now() - created_at <= timedelta(seconds=IN_PROGRESS_STALE_SECONDS)
        if fresh and existing.get("status") in {"reserved", "processing"}:
            return dict(IN_PROGRESS_RESPONSE)

        await db.idempotency_keys.delete_one({"_id": existing["_id"]})

    try:
        await db.idempotency_keys.insert_one({
            "key": key,
            "scope": scope,
            "status": "reserved",
            "response": None,
            "created_at": utc_now(),
        })
    except DuplicateKeyError:
        # Concurrent request won the race; return canonical response/state.
        concurrent = await db.idempotency_keys.find_one({"key": key, "scope": scope})
        if concurrent and concurrent.get("status") == "completed":
            return concurrent.get("response")
        return dict(IN_PROGRESS_RESPONSE)
    return None


async def complete_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
    response: dict,
):
    """
    Mark idempotency key as completed and store response.
    """
    await db.idempotency_keys.find_one_and_update(
        {
            "key": key,
            "scope": scope,
        },
        {
            "$set": {
                "status": "completed",
                "response": response,
                "completed_at": utc_now(),
            }
        },
        return_document=ReturnDocument.AFTER,
    )


async def clear_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
):
    """Drop a reservation so a failed attempt can be redelivered."""
    await db.idempotency_keys.delete_one({"key": key, "scope": scope})
