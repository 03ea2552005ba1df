"""
Exactly-once remittance payouts.

    approved --execute_payout--> payout_initiated --settlement--> completed
                                                             \--> failed --retry--> approved

execute_payout holds a per-batch lease lock and keys the provider call with
`{batch_id}:{attempt}`. A persisted payout_attempts record short-circuits
repeat calls with the stored reference, so calling twice with no state
change in between moves money once and returns the same reference.
The lease outlives the whole provider retry window, and ownership is
checked again before the batch is committed as payout_initiated.
"""
import logging

from config.env import PAYOUT_LOCK_TTL_SECONDS, PROVIDER_TIMEOUT_SECONDS
from models.remittance import BatchStatus
from utils.audit import log_audit
from utils.batching import get_batch, transition_batch
from utils.clock import utc_now
from utils.errors import (
    AlreadyInProgress,
    ConflictError,
    ExternalServiceError,
    InvalidTransition,
    NotFoundError,
    PayoutError,
)
from utils.locks import hold_lock, renew_lock
from utils.payouts import get_payout_provider, settlement_status
from utils.retry import call_with_timeout, with_backoff

logger = logging.getLogger(__name__)

B = BatchStatus


def payout_key(batch_id: str, attempt: int) -> str:
    return f"{batch_id}:{attempt}"


def _payout_result(batch_id: str, reference: str, status: str, replay: bool) -> dict:
    return {
        "batch_id": batch_id,
        "provider_reference": reference,
        "status": status,
        "idempotent_replay": replay,
    }


async def _commit_initiated(db, batch_id: str, *, key: str, reference: str, actor: str, now) -> dict:
    return await transition_batch(
        db,
        batch_id,
        from_statuses={B.APPROVED.value},
        to_status=B.PAYOUT_INITIATED.value,
        actor=actor,
        extra_set={
            "payout.provider_reference": reference,
            "payout.idempotency_key": key,
            "payout.requires_manual_intervention": False,
            "payout.failure_reason": None,
            "payout.initiated_at": now,
        },
    )


async def execute_payout(db, batch_id: str, *, provider=None, actor: str = "system", now=None) -> dict:
    now = now or utc_now()
    lock_name = f"payout:{batch_id}"

    async with hold_lock(db=db, name=lock_name, ttl_seconds=PAYOUT_LOCK_TTL_SECONDS) as owner:
        batch = await get_batch(db, batch_id)
        payout = batch.get("payout") or {}
        attempt = payout.get("attempt", 1)
        key = payout_key(batch_id, attempt)

        record = await db.payout_attempts.find_one({"_id": key})
        if record and record.get("provider_reference"):
            reference = record["provider_reference"]
            if batch["status"] != B.APPROVED.value:
                logger.info("PAYOUT_REPLAY batch=%s reference=%s", batch_id, reference)
                return _payout_result(batch_id, reference, batch["status"], True)

            # The provider accepted this key but the batch was never moved on.
            await _commit_initiated(db, batch_id, key=key, reference=reference, actor=actor, now=now)
            logger.warning("PAYOUT_COMMIT_RESUMED batch=%s reference=%s", batch_id, reference)
            return _payout_result(batch_id, reference, B.PAYOUT_INITIATED.value, True)

        if batch["status"] != B.APPROVED.value:
            raise InvalidTransition(f"Batch {batch_id} is {batch['status']}, payout needs approved")

        account = await db.accounts.find_one({"_id": batch["account_id"]})
        target = (account or {}).get("payout_target")
        if not target:
            raise NotFoundError(f"No payout target for account {batch['account_id']}")

        if not record:
            await db.payout_attempts.insert_one({
                "_id": key,
                "batch_id": batch_id,
                "attempt": attempt,
                "amount": batch["net_payable"],
                "status": "pending",
                "provider_reference": None,
                "created_at": now,
            })

        provider = provider or get_payout_provider()
        try:
            result = await with_backoff(
                lambda: call_with_timeout(
                    provider.initiate_payout,
                    target=target,
                    amount=batch["net_payable"],
                    idempotency_key=key,
                    metadata={"batch_id": batch_id, "account_id": batch["account_id"]},
                    timeout=PROVIDER_TIMEOUT_SECONDS,
                ),
                label=f"payout:{batch_id}",
            )
        except PayoutError as e:
            await db.payout_attempts.update_one(
                {"_id": key},
                {"$set": {"status": "rejected", "error": e.detail, "updated_at": utc_now()}},
            )
            await transition_batch(
                db,
                batch_id,
                from_statuses={B.APPROVED.value},
                to_status=B.FAILED.value,
                actor=actor,
                note=e.detail,
                extra_set={"payout.failure_reason": e.detail, "payout.idempotency_key": key},
            )
            logger.error("PAYOUT_REJECTED batch=%s key=%s error=%s", batch_id, key, e.detail)
            raise
        except ExternalServiceError as e:
            # Outcome unknown. Stay approved; a later call reuses the same key.
            await db.payout_attempts.update_one(
                {"_id": key},
                {"$set": {"status": "unknown", "error": e.detail, "updated_at": utc_now()}},
            )
            await db.remittance_batches.update_one(
                {"_id": batch_id},
                {
                    "$set": {
                        "payout.requires_manual_intervention": True,
                        "payout.failure_reason": e.detail,
                        "payout.idempotency_key": key,
                        "updated_at": utc_now(),
                    }
                },
            )
            logger.error("PAYOUT_OUTCOME_UNKNOWN batch=%s key=%s error=%s", batch_id, key, e.detail)
            raise

        reference = result["provider_reference"]
        await db.payout_attempts.update_one(
            {"_id": key},
            {
                "$set": {
                    "status": "accepted",
                    "provider_reference": reference,
                    "provider_status": result.get("status"),
                    "updated_at": utc_now(),
                }
            },
        )
        if not await renew_lock(db=db, name=lock_name, owner=owner, ttl_seconds=PAYOUT_LOCK_TTL_SECONDS):
            # Another worker took the lease over; it commits this same key.
            logger.error("PAYOUT_LEASE_LOST batch=%s key=%s reference=%s", batch_id, key, reference)
            raise AlreadyInProgress(f"Payout for {batch_id} was taken over by another worker", lock=lock_name)

        await _commit_initiated(db, batch_id, key=key, reference=reference, actor=actor, now=now)

    await log_audit(
        db,
        actor=actor,
        action="PAYOUT_INITIATED",
        entity_type="remittance_batch",
        entity_id=batch_id,
        metadata={"provider_reference": reference, "amount": batch["net_payable"], "key": key},
    )
    logger.info("PAYOUT_INITIATED batch=%s reference=%s amount=%s", batch_id, reference, batch["net_payable"])

    final = settlement_status(result.get("status"))
    if final:
        await apply_settlement(
            db,
            provider_reference=reference,
            settlement_token=f"initiation:{reference}",
            final_status=final,
        )
    return _payout_result(batch_id, reference, B.PAYOUT_INITIATED.value, False)


async def apply_settlement(
    db,
    *,
    provider_reference: str,
    settlement_token: str,
    final_status: str,
    failure_reason: str | None = None,
) -> dict:
    """
    Settlement callback. Zero, one or many deliveries of the same outcome
    leave the batch in the same state.
    """
    if final_status not in {B.COMPLETED.value, B.FAILED.value}:
        raise InvalidTransition(f"Unknown settlement status {final_status}")

    batch = await db.remittance_batches.find_one({"payout.provider_reference": provider_reference})
    if not batch:
        raise NotFoundError(f"No batch for payout reference {provider_reference}")
    batch_id = batch["_id"]

    if batch["status"] in {B.COMPLETED.value, B.FAILED.value}:
        if batch["status"] != final_status:
            logger.warning(
                "SETTLEMENT_CONFLICT batch=%s status=%s callback=%s token=%s",
                batch_id,
                batch["status"],
                final_status,
                settlement_token,
            )
        return batch

    now = utc_now()
    extra_set = {"payout.settlement_token": settlement_token, "payout.settled_at": now}
    if final_status == B.FAILED.value:
        extra_set["payout.failure_reason"] = failure_reason or "failed at provider"

    try:
        batch = await transition_batch(
            db,
            batch_id,
            from_statuses={B.PAYOUT_INITIATED.value},
            to_status=final_status,
            actor="system",
            note=settlement_token,
            extra_set=extra_set,
            now=now,
        )
    except ConflictError:
        # A concurrent delivery of the same callback won.
        return await get_batch(db, batch_id)

    if final_status == B.COMPLETED.value:
        await db.collectibles.update_many(
            {"batch_id": batch_id, "status": "reconciled"},
            {"$set": {"status": "paid", "paid_at": now, "updated_at": now}, "$inc": {"version": 1}},
        )

    await log_audit(
        db,
        actor="system",
        action=f"PAYOUT_{final_status.upper()}",
        entity_type="remittance_batch",
        entity_id=batch_id,
        metadata={"provider_reference": provider_reference, "token": settlement_token},
    )
    logger.info("PAYOUT_SETTLED batch=%s status=%s reference=%s", batch_id, final_status, provider_reference)
    return batch


async def retry_failed_payout(db, batch_id: str, *, actor: str) -> dict:
    """Re-arm a definitively failed batch under a fresh idempotency key."""
    batch = await get_batch(db, batch_id)
    attempt = (batch.get("payout") or {}).get("attempt", 1) + 1
    batch = await transition_batch(
        db,
        batch_id,
        from_statuses={B.FAILED.value},
        to_status=B.APPROVED.value,
        actor=actor,
        note=f"retry attempt {attempt}",
        extra_set={
            "payout.attempt": attempt,
            "payout.provider_reference": None,
            "payout.failure_reason": None,
            "payout.settlement_token": None,
            "payout.requires_manual_intervention": False,
        },
    )
    await log_audit(
        db,
        actor=actor,
        action="PAYOUT_RETRY_ARMED",
        entity_type="remittance_batch",
        entity_id=batch_id,
        metadata={"attempt": attempt},
    )
    return batch


async def sync_payout_status(db, *, provider=None) -> dict:
    """Poll the provider for batches still waiting on a settlement callback."""
    summary = {"checked": 0, "settled": 0, "errors": 0}
    cursor = db.remittance_batches.find({"status": B.PAYOUT_INITIATED.value})
    batches = await cursor.to_list(None)
    if not batches:
        return summary

    provider = provider or get_payout_provider()
    for batch in batches:
        reference = (batch.get("payout") or {}).get("provider_reference")
        if not reference:
            continue
        summary["checked"] += 1
        try:
            status = await call_with_timeout(
                provider.fetch_payout_status,
                reference,
                timeout=PROVIDER_TIMEOUT_SECONDS,
            )
            final = settlement_status(status.get("status"))
            if final:
                await apply_settlement(
                    db,
                    provider_reference=reference,
                    settlement_token=f"poll:{reference}:{status.get('status')}",
                    final_status=final,
                    failure_reason=status.get("failure_reason"),
                )
                summary["settled"] += 1
        except Exception:
            summary["errors"] += 1
            logger.exception("PAYOUT_STATUS_SYNC_ERROR batch=%s reference=%s", batch["_id"], reference)
    return summary
