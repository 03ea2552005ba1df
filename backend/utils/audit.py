from utils.clock import utc_now


async def log_audit(
    db,
    *,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: str,
    metadata: dict | None = None,
):
    """
    Finance audit log: who moved which discrepancy / batch / blacklist entry.
    `actor` is "system", "timeout" or the operator identifier.
    """
    await db.audit_logs.insert_one({
        "actor": actor,
        "actor_role": "system" if actor in {"system", "timeout"} else "operator",
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "metadata": metadata or {},
        "created_at": utc_now(),
    })
