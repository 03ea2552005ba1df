"""
Remittance batching.

A batch claims reconciled, unclaimed collectibles of one account and fixes
what the account is owed for them:

    net_payable = gross - (shipping_cost + platform_fee + tier_fee + adjustments)

Creation runs under a per-account lease lock; claims are written
claim-then-verify so a collectible can never sit in two batches.
"""
import logging
import uuid
from datetime import timedelta

from config.constants import (
    ACCELERATED_TIERS,
    CREDIT_WINDOW_DAYS,
    PLATFORM_FEE_BPS,
    STANDARD_TIER,
)
from config.env import BATCH_LOCK_TTL_SECONDS
from models.remittance import BatchStatus
from utils.audit import log_audit
from utils.clock import utc_now
from utils.eligibility import check_eligibility, tier_policy
from utils.errors import (
    AlreadyInProgress,
    ConflictError,
    CreditLimitExceeded,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from utils.locks import hold_lock
from utils.money import fee_from_bps
from utils.retry import retry_on_conflict

logger = logging.getLogger(__name__)

B = BatchStatus

CANCELLABLE_STATUSES = {B.PENDING_APPROVAL.value, B.APPROVED.value, B.FAILED.value}
# Batches whose money is committed or may still move.
EXPOSURE_STATUSES = [
    B.PENDING_APPROVAL.value,
    B.APPROVED.value,
    B.PAYOUT_INITIATED.value,
    B.COMPLETED.value,
]


def new_batch_id() -> str:
    return f"REM-{uuid.uuid4().hex[:20].upper()}"


def _tier_rank(tier: str) -> int:
    for i, policy in enumerate(ACCELERATED_TIERS):
        if policy["tier"] == tier:
            return i
    return len(ACCELERATED_TIERS)


def compute_deductions(collectibles: list, *, tier_fee_bps: int = 0, adjustments=None) -> dict:
    gross = sum(c.get("actual_amount") or 0 for c in collectibles)
    adjustments = [
        {"label": a["label"], "amount": int(a["amount"])}
        for a in (adjustments or [])
    ]
    deductions = {
        "shipping_cost": sum(c.get("shipping_cost") or 0 for c in collectibles),
        "platform_fee": fee_from_bps(gross, PLATFORM_FEE_BPS),
        "tier_fee": fee_from_bps(gross, tier_fee_bps) if tier_fee_bps else 0,
        "adjustments": adjustments,
    }
    total = (
        deductions["shipping_cost"]
        + deductions["platform_fee"]
        + deductions["tier_fee"]
        + sum(a["amount"] for a in adjustments)
    )
    return {
        "gross": gross,
        "deductions": deductions,
        "total_deductions": total,
        "net_payable": gross - total,
    }


async def get_batch(db, batch_id: str) -> dict:
    batch = await db.remittance_batches.find_one({"_id": batch_id})
    if not batch:
        raise NotFoundError(f"Remittance batch {batch_id} not found")
    return batch


async def _accelerated_exposure(db, account_id: str, now) -> int:
    total = 0
    cursor = db.remittance_batches.find({
        "account_id": account_id,
        "tier": {"$ne": STANDARD_TIER},
        "status": {"$in": EXPOSURE_STATUSES},
        "created_at": {"$gte": now - timedelta(days=CREDIT_WINDOW_DAYS)},
    })
    async for batch in cursor:
        total += batch.get("net_payable") or 0
    return total


async def _release_claims(db, batch_id: str, now):
    await db.collectibles.update_many(
        {"batch_id": batch_id},
        {"$set": {"batch_id": None, "updated_at": now}, "$inc": {"version": 1}},
    )


async def create_remittance_batch(
    db,
    *,
    account_id: str,
    tier: str = STANDARD_TIER,
    adjustments=None,
    actor: str = "system",
    now=None,
) -> dict:
    now = now or utc_now()

    policy = None
    credit_ceiling = None
    if tier != STANDARD_TIER:
        policy = tier_policy(tier)
        if not policy:
            raise ValidationError(f"Unknown payout tier {tier}", code="UNKNOWN_TIER")
        eligibility = await check_eligibility(db, account_id, now=now)
        if not eligibility["eligible"] or _tier_rank(eligibility["tier"]) > _tier_rank(tier):
            raise ValidationError(
                f"Account {account_id} is not eligible for {tier}",
                code="TIER_NOT_ELIGIBLE",
                reasons=eligibility["reasons"],
            )
        credit_ceiling = int(
            eligibility["metrics"]["monthly_cod_volume"] * policy["credit_multiple"]
        )

    async with hold_lock(db=db, name=f"batch:{account_id}", ttl_seconds=BATCH_LOCK_TTL_SECONDS):

        async def attempt():
            query = {"account_id": account_id, "status": "reconciled", "batch_id": None}
            if policy:
                query["reconciled_at"] = {"$lte": now - timedelta(days=policy["lookback_days"])}

            collectibles = await db.collectibles.find(query).to_list(None)
            if not collectibles:
                raise ValidationError("No reconciled collections to batch", code="NOTHING_TO_BATCH")

            totals = compute_deductions(
                collectibles,
                tier_fee_bps=policy["fee_bps"] if policy else 0,
                adjustments=adjustments,
            )
            if totals["net_payable"] < 0:
                raise ValidationError(
                    "Deductions exceed gross collections",
                    code="NEGATIVE_NET_PAYABLE",
                    gross=totals["gross"],
                    total_deductions=totals["total_deductions"],
                )

            if credit_ceiling is not None:
                exposure = await _accelerated_exposure(db, account_id, now)
                if exposure + totals["net_payable"] > credit_ceiling:
                    raise CreditLimitExceeded(
                        f"Accelerated exposure would reach {exposure + totals['net_payable']} "
                        f"against a ceiling of {credit_ceiling}",
                        ceiling=credit_ceiling,
                        exposure=exposure,
                    )

            batch_id = new_batch_id()
            ids = [c["_id"] for c in collectibles]

            await db.collectibles.update_many(
                {"_id": {"$in": ids}, "status": "reconciled", "batch_id": None},
                {"$set": {"batch_id": batch_id, "updated_at": now}, "$inc": {"version": 1}},
            )
            claimed = await db.collectibles.count_documents({"batch_id": batch_id})
            if claimed != len(ids):
                await _release_claims(db, batch_id, now)
                raise ConflictError(f"Collectibles changed while claiming for {batch_id}")

            batch = {
                "_id": batch_id,
                "account_id": account_id,
                "tier": tier,
                "collectible_ids": ids,
                **totals,
                "status": B.PENDING_APPROVAL.value,
                "payout": {
                    "provider_reference": None,
                    "attempt": 1,
                    "idempotency_key": None,
                    "settlement_token": None,
                    "failure_reason": None,
                    "requires_manual_intervention": False,
                },
                "timeline": [
                    {"status": B.PENDING_APPROVAL.value, "actor": actor, "at": now, "note": None}
                ],
                "created_by": actor,
                "created_at": now,
                "updated_at": now,
            }
            await db.remittance_batches.insert_one(batch)
            return batch

        batch = await retry_on_conflict(attempt)

    await log_audit(
        db,
        actor=actor,
        action="REMITTANCE_BATCH_CREATED",
        entity_type="remittance_batch",
        entity_id=batch["_id"],
        metadata={"tier": tier, "net_payable": batch["net_payable"], "items": len(batch["collectible_ids"])},
    )
    logger.info(
        "REMITTANCE_BATCH_CREATED id=%s account=%s tier=%s gross=%s net=%s items=%s",
        batch["_id"],
        account_id,
        tier,
        batch["gross"],
        batch["net_payable"],
        len(batch["collectible_ids"]),
    )
    return batch


async def transition_batch(
    db,
    batch_id: str,
    *,
    from_statuses,
    to_status: str,
    actor: str,
    note: str | None = None,
    extra_set: dict | None = None,
    now=None,
) -> dict:
    """Compare-and-set on batch status, with a timeline entry."""
    now = now or utc_now()
    batch = await get_batch(db, batch_id)
    if batch["status"] not in from_statuses:
        raise InvalidTransition(
            f"Batch {batch_id} is {batch['status']}, cannot move to {to_status}"
        )

    update_set = {"status": to_status, "updated_at": now}
    if extra_set:
        update_set.update(extra_set)

    res = await db.remittance_batches.update_one(
        {"_id": batch_id, "status": batch["status"]},
        {
            "$set": update_set,
            "$push": {"timeline": {"status": to_status, "actor": actor, "at": now, "note": note}},
        },
    )
    if res.matched_count == 0:
        raise ConflictError(f"Batch {batch_id} changed concurrently")

    logger.info("BATCH_%s id=%s actor=%s", to_status.upper(), batch_id, actor)
    return await get_batch(db, batch_id)


async def approve_batch(db, batch_id: str, *, actor: str) -> dict:
    batch = await transition_batch(
        db,
        batch_id,
        from_statuses={B.PENDING_APPROVAL.value},
        to_status=B.APPROVED.value,
        actor=actor,
    )
    await log_audit(
        db,
        actor=actor,
        action="REMITTANCE_BATCH_APPROVED",
        entity_type="remittance_batch",
        entity_id=batch_id,
    )
    return batch


async def cancel_batch(db, batch_id: str, *, actor: str, reason: str | None = None) -> dict:
    """Cancel before payout initiation (or after a failed payout) and release claims."""
    now = utc_now()
    batch = await transition_batch(
        db,
        batch_id,
        from_statuses=CANCELLABLE_STATUSES,
        to_status=B.CANCELLED.value,
        actor=actor,
        note=reason,
        now=now,
    )
    await _release_claims(db, batch_id, now)
    await log_audit(
        db,
        actor=actor,
        action="REMITTANCE_BATCH_CANCELLED",
        entity_type="remittance_batch",
        entity_id=batch_id,
        metadata={"reason": reason},
    )
    return batch


async def create_standard_batches(db, now=None) -> list:
    """Scheduled cycle: one standard batch per account with reconciled collections."""
    now = now or utc_now()
    account_ids = await db.collectibles.distinct(
        "account_id",
        {"status": "reconciled", "batch_id": None},
    )

    created = []
    for account_id in account_ids:
        try:
            batch = await create_remittance_batch(db, account_id=account_id, now=now)
            created.append(batch["_id"])
        except (ValidationError, AlreadyInProgress, ConflictError) as e:
            logger.warning("STANDARD_BATCH_SKIPPED account=%s reason=%s", account_id, e.detail)
    return created
