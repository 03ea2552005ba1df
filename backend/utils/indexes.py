from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from utils.idempotency import IDEMPOTENCY_TTL_SECONDS


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Collectibles
    await _create_index_safe(
        db.collectibles,
        [("shipment_ref", ASCENDING)],
        name="collectibles_shipment_ref_unique",
        unique=True,
    )
    await _create_index_safe(
        db.collectibles,
        [("account_id", ASCENDING), ("status", ASCENDING), ("batch_id", ASCENDING)],
        name="collectibles_account_status_batch_idx",
    )
    await _create_index_safe(
        db.collectibles,
        [("batch_id", ASCENDING)],
        name="collectibles_batch_idx",
    )
    await _create_index_safe(
        db.collectibles,
        [("account_id", ASCENDING), ("created_at", DESCENDING)],
        name="collectibles_account_created_idx",
    )
    await _create_index_safe(
        db.collectible_timeline,
        [("collectible_id", ASCENDING), ("created_at", ASCENDING)],
        name="collectible_timeline_idx",
    )

    # Ingest
    await _create_index_safe(
        db.collection_reports,
        [("fingerprint", ASCENDING)],
        name="collection_reports_fingerprint_unique",
        unique=True,
    )
    await _create_index_safe(
        db.unmatched_reports,
        [("fingerprint", ASCENDING)],
        name="unmatched_reports_fingerprint_unique",
        unique=True,
    )
    await _create_index_safe(
        db.unmatched_reports,
        [("status", ASCENDING), ("next_check_at", ASCENDING)],
        name="unmatched_reports_due_idx",
    )

    # Discrepancies
    await _create_index_safe(
        db.discrepancies,
        [("status", ASCENDING), ("deadline_at", ASCENDING)],
        name="discrepancies_status_deadline_idx",
    )
    await _create_index_safe(
        db.discrepancies,
        [("account_id", ASCENDING), ("detected_at", DESCENDING)],
        name="discrepancies_account_detected_idx",
    )

    # Remittance
    await _create_index_safe(
        db.remittance_batches,
        [("account_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)],
        name="remittance_account_status_idx",
    )
    await _create_index_safe(
        db.remittance_batches,
        [("payout.provider_reference", ASCENDING)],
        name="remittance_provider_reference_unique",
        unique=True,
        partialFilterExpression={"payout.provider_reference": {"$type": "string"}},
    )
    await _create_index_safe(
        db.payout_attempts,
        [("batch_id", ASCENDING), ("attempt", ASCENDING)],
        name="payout_attempts_batch_attempt_unique",
        unique=True,
    )

    # Locks
    await _create_index_safe(
        db.locks,
        [("expires_at", ASCENDING)],
        name="locks_expires_idx",
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )

    # Customer risk
    await _create_index_safe(
        db.customer_order_events,
        [("order_id", ASCENDING)],
        name="customer_order_events_order_unique",
        unique=True,
    )
    await _create_index_safe(
        db.customer_order_events,
        [("identity_key", ASCENDING), ("created_at", DESCENDING)],
        name="customer_order_events_identity_idx",
    )
    await _create_index_safe(
        db.customer_order_events,
        [("pincode", ASCENDING), ("outcome_at", DESCENDING)],
        name="customer_order_events_pincode_idx",
    )
    await _create_index_safe(
        db.risk_assessments,
        [("order_id", ASCENDING)],
        name="risk_assessments_order_idx",
    )
    await _create_index_safe(
        db.verification_requests,
        [("expires_at", ASCENDING)],
        name="verification_requests_expiry_idx",
    )

    # Outbox / audit
    await _create_index_safe(
        db.notification_outbox,
        [("status", ASCENDING), ("created_at", ASCENDING)],
        name="notification_outbox_status_idx",
    )
    await _create_index_safe(
        db.audit_logs,
        [("entity_type", ASCENDING), ("entity_id", ASCENDING), ("created_at", DESCENDING)],
        name="audit_entity_idx",
    )
