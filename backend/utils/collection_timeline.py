from utils.clock import utc_now


async def record_collection_event(
    db,
    *,
    collectible_id,
    event: str,
    source: str | None = None,
    reported_amount: int | None = None,
    reported_at=None,
    expected_total: int | None = None,
    actual_amount: int | None = None,
    actor: str = "system",
    metadata: dict | None = None,
):
    """
    Append-only audit trail for a collectible.
    Entries are inserted, never updated or deleted.
    """

    doc = {
        "collectible_id": collectible_id,
        "event": event,
        "source": source,
        "reported_amount": reported_amount,
        "reported_at": reported_at,
        "expected_total": expected_total,
        "actual_amount": actual_amount,
        "actor": actor,
        "metadata": metadata or {},
        "created_at": utc_now(),
    }

    await db.collectible_timeline.insert_one(doc)


async def get_collection_timeline(db, collectible_id) -> list:
    cursor = db.collectible_timeline.find(
        {"collectible_id": collectible_id}
    ).sort("created_at", 1)
    return await cursor.to_list(None)
