from fastapi import APIRouter, Depends, Query
from typing import Optional

from database import get_db
from models.collectible import CollectibleCreate
from models.discrepancy import (
    CorrectionRequest,
    DiscrepancyNote,
    EvidenceCreate,
    UNRESOLVED_STATUSES,
)
from models.remittance import BatchCancelRequest, BatchCreateRequest, PayoutTargetIn
from models.risk import BlacklistRequest
from utils.analytics import collection_health, forecast_cash_flow
from utils.audit import log_audit
from utils.batching import approve_batch, cancel_batch, create_remittance_batch, get_batch
from utils.clock import utc_now
from utils.collectibles import create_collectible, get_collectible
from utils.collection_timeline import get_collection_timeline
from utils.crypto import seal_payout_target
from utils.discrepancies import (
    accept_reported,
    attach_evidence,
    escalate,
    get_discrepancy,
    mark_disputed,
    query_courier,
    resolve_with_correction,
    start_review,
)
from utils.eligibility import check_eligibility
from utils.errors import NotFoundError
from utils.guards import require_admin
from utils.payout_coordinator import execute_payout, retry_failed_payout
from utils.risk_ledger import blacklist_customer, lift_blacklist
from utils.serializers import serialize_doc, serialize_docs
from datetime import timedelta


router = APIRouter(prefix="/api/admin", tags=["Admin"])


# =====================================================
# COLLECTIBLES
# =====================================================

@router.post("/collectibles")
async def register_collectible(
    data: CollectibleCreate,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    doc = await create_collectible(db, **data.model_dump())
    return serialize_doc(doc)


@router.get("/collectibles/{collectible_id}")
async def collectible_detail(
    collectible_id: str,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    collectible = await get_collectible(db, collectible_id)
    timeline = await get_collection_timeline(db, collectible_id)
    return {
        "collectible": serialize_doc(collectible),
        "timeline": serialize_docs(timeline),
    }


# =====================================================
# DISCREPANCIES
# =====================================================

@router.get("/discrepancies")
async def list_discrepancies(
    status: Optional[str] = None,
    severity: Optional[str] = None,
    limit: int = Query(default=50, le=200),
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    query = {"status": status} if status else {"status": {"$in": sorted(UNRESOLVED_STATUSES)}}
    if severity:
        query["severity"] = severity

    cursor = db.discrepancies.find(query).sort("detected_at", -1).limit(limit)
    items = await cursor.to_list(limit)
    return {"count": len(items), "discrepancies": serialize_docs(items)}


@router.get("/discrepancies/{discrepancy_id}")
async def discrepancy_detail(
    discrepancy_id: str,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    return serialize_doc(await get_discrepancy(db, discrepancy_id))


@router.post("/discrepancies/{discrepancy_id}/review")
async def review_discrepancy(
    discrepancy_id: str,
    data: DiscrepancyNote,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    doc = await start_review(db, discrepancy_id, actor=operator, note=data.note)
    return serialize_doc(doc)


@router.post("/discrepancies/{discrepancy_id}/query-courier")
async def query_courier_route(
    discrepancy_id: str,
    data: DiscrepancyNote,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    doc = await query_courier(db, discrepancy_id, actor=operator, note=data.note)
    return serialize_doc(doc)


@router.post("/discrepancies/{discrepancy_id}/dispute")
async def dispute_discrepancy(
    discrepancy_id: str,
    data: DiscrepancyNote,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    doc = await mark_disputed(db, discrepancy_id, actor=operator, note=data.note)
    return serialize_doc(doc)


@router.post("/discrepancies/{discrepancy_id}/escalate")
async def escalate_discrepancy(
    discrepancy_id: str,
    data: DiscrepancyNote,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    doc = await escalate(db, discrepancy_id, actor=operator, note=data.note)
    return serialize_doc(doc)


@router.post("/discrepancies/{discrepancy_id}/evidence")
async def add_evidence(
    discrepancy_id: str,
    data: EvidenceCreate,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    doc = await attach_evidence(
        db,
        discrepancy_id,
        actor=operator,
        kind=data.kind,
        reference=data.reference,
        note=data.note,
    )
    return serialize_doc(doc)


@router.post("/discrepancies/{discrepancy_id}/resolve")
async def resolve_discrepancy(
    discrepancy_id: str,
    data: CorrectionRequest,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    doc = await resolve_with_correction(
        db,
        discrepancy_id,
        corrected_amount=data.corrected_amount,
        actor=operator,
        note=data.note,
    )
    return serialize_doc(doc)


@router.post("/discrepancies/{discrepancy_id}/accept")
async def accept_discrepancy(
    discrepancy_id: str,
    data: DiscrepancyNote,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    doc = await accept_reported(db, discrepancy_id, actor=operator, note=data.note)
    return serialize_doc(doc)


# =====================================================
# REMITTANCE
# =====================================================

@router.put("/accounts/{account_id}/payout-target")
async def set_payout_target(
    account_id: str,
    data: PayoutTargetIn,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    """Bank details are stored sealed; only the masked number is returned."""
    target = seal_payout_target(data.model_dump())
    res = await db.accounts.update_one(
        {"_id": account_id},
        {"$set": {"payout_target": target, "updated_at": utc_now()}},
    )
    if res.matched_count == 0:
        raise NotFoundError(f"Account {account_id} not found")

    await log_audit(
        db,
        actor=operator,
        action="PAYOUT_TARGET_UPDATED",
        entity_type="account",
        entity_id=account_id,
        metadata={"bank_account_masked": target["bank_account_masked"]},
    )
    return {
        "ok": True,
        "account_holder_name": target["account_holder_name"],
        "ifsc_code": target["ifsc_code"],
        "bank_account_masked": target["bank_account_masked"],
    }


@router.get("/accounts/{account_id}/eligibility")
async def account_eligibility(
    account_id: str,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    return await check_eligibility(db, account_id)


@router.post("/batches")
async def create_batch(
    data: BatchCreateRequest,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    batch = await create_remittance_batch(
        db,
        account_id=data.account_id,
        tier=data.tier.value,
        adjustments=[a.model_dump() for a in data.adjustments],
        actor=operator,
    )
    return serialize_doc(batch)


@router.get("/batches/{batch_id}")
async def batch_detail(
    batch_id: str,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    return serialize_doc(await get_batch(db, batch_id))


@router.post("/batches/{batch_id}/approve")
async def approve_batch_route(
    batch_id: str,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    return serialize_doc(await approve_batch(db, batch_id, actor=operator))


@router.post("/batches/{batch_id}/cancel")
async def cancel_batch_route(
    batch_id: str,
    data: BatchCancelRequest,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    return serialize_doc(await cancel_batch(db, batch_id, actor=operator, reason=data.reason))


@router.post("/batches/{batch_id}/payout")
async def payout_batch(
    batch_id: str,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    return await execute_payout(db, batch_id, actor=operator)


@router.post("/batches/{batch_id}/retry")
async def retry_batch_payout(
    batch_id: str,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    return serialize_doc(await retry_failed_payout(db, batch_id, actor=operator))


# =====================================================
# CUSTOMER RISK
# =====================================================

@router.post("/risk/blacklist")
async def add_blacklist(
    data: BlacklistRequest,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    expires_at = None
    if data.expires_in_days:
        expires_at = utc_now() + timedelta(days=data.expires_in_days)

    profile = await blacklist_customer(
        db,
        phone=data.phone,
        reason=data.reason,
        actor=operator,
        expires_at=expires_at,
    )
    return {"ok": True, "risk_score": profile.get("risk_score"), "risk_level": profile.get("risk_level")}


@router.delete("/risk/blacklist/{phone}")
async def remove_blacklist(
    phone: str,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    profile = await lift_blacklist(db, phone=phone, actor=operator)
    return {"ok": True, "risk_score": profile.get("risk_score"), "risk_level": profile.get("risk_level")}


# =====================================================
# ANALYTICS
# =====================================================

@router.get("/accounts/{account_id}/forecast")
async def account_forecast(
    account_id: str,
    days: int = Query(default=30, ge=1, le=365),
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    return serialize_doc(await forecast_cash_flow(db, account_id, days=days))


@router.get("/health")
async def health_snapshot(
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    return serialize_doc(await collection_health(db))
