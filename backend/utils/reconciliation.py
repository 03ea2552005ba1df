"""
Reconciliation engine.

Every collection report (push, poll or file row) arrives here as a
CollectionReport and is applied to its collectible:

    variance = reported - expected_total

    1. variance == 0                  -> reconciled
    2. within abs AND pct tolerance   -> reconciled, annotated
    3. otherwise                      -> disputed + discrepancy

Collectible writes are compare-and-set on `version`; a lost race re-reads
and re-decides. Reports for unknown shipments go to the unmatched queue.
"""
import logging
from datetime import timedelta

from pymongo.errors import DuplicateKeyError

from config.env import (
    MISSING_SHIPMENT_MAX_CHECKS,
    RECON_ABS_TOLERANCE_PAISE,
    RECON_PCT_TOLERANCE,
)
from models.collectible import CollectionReport, CollectionStatus, DeliveryStatus
from models.discrepancy import DiscrepancyClassification, DiscrepancyStatus
from utils.clock import utc_now
from utils.collectibles import find_collectible
from utils.collection_timeline import record_collection_event
from utils.discrepancies import (
    escalate_missing_shipment,
    new_discrepancy_id,
    open_discrepancy,
    resolve_with_correction,
)
from utils.errors import ConflictError, NotFoundError
from utils.retry import retry_on_conflict
from utils.risk_ledger import record_outcome

logger = logging.getLogger(__name__)

AUTO_ACCEPT_ANNOTATION = "minor discrepancy auto-accepted"
UNMATCHED_RECHECK_BASE = timedelta(minutes=5)

C = CollectionStatus


def within_tolerance(variance: int, expected_total: int) -> bool:
    if variance == 0:
        return True
    if expected_total <= 0:
        return False
    if abs(variance) > RECON_ABS_TOLERANCE_PAISE:
        return False
    return abs(variance) * 100 <= RECON_PCT_TOLERANCE * expected_total


# =========================================================
# ENTRY POINT
# =========================================================


async def reconcile_report(db, report: CollectionReport, now=None) -> dict:
    """
    Apply one canonical report. Replaying an identical report returns the
    stored outcome of the first application with `duplicate=True`.
    """
    now = now or utc_now()
    fingerprint = report.fingerprint

    try:
        await db.collection_reports.insert_one({
            "fingerprint": fingerprint,
            "collectible_ref": report.collectible_ref,
            "source": report.source.value,
            "reported_amount": report.reported_amount,
            "reported_at": report.reported_at,
            "delivery_status": report.delivery_status.value,
            "external_id": report.external_id,
            "outcome": None,
            "received_at": now,
        })
    except DuplicateKeyError:
        existing = await db.collection_reports.find_one({"fingerprint": fingerprint})
        stored = (existing or {}).get("outcome") or {"outcome": "in_progress"}
        logger.info("REPORT_DUPLICATE fingerprint=%s", fingerprint)
        return {**stored, "duplicate": True}

    try:
        outcome = await apply_report(db, report, now=now)
    except NotFoundError:
        outcome = await queue_missing_shipment(db, report, now=now)
    except Exception:
        # Let the carrier redeliver after a failed application.
        await db.collection_reports.delete_one({"fingerprint": fingerprint})
        raise

    await db.collection_reports.update_one(
        {"fingerprint": fingerprint},
        {"$set": {"outcome": outcome, "processed_at": utc_now()}},
    )
    return {**outcome, "duplicate": False}


async def apply_report(db, report: CollectionReport, now=None) -> dict:
    now = now or utc_now()
    return await retry_on_conflict(lambda: _apply_once(db, report, now))


# =========================================================
# DECISION (one CAS attempt)
# =========================================================


async def _apply_once(db, report: CollectionReport, now) -> dict:
    collectible = await find_collectible(db, report.collectible_ref)
    if not collectible:
        raise NotFoundError(f"No collectible for {report.collectible_ref}")

    status = collectible["status"]

    if report.delivery_status == DeliveryStatus.RTO:
        return await _apply_rto(db, collectible, report, now)

    if report.reported_amount is None:
        return await _apply_delivered_without_amount(db, collectible, report, now)

    if status in (C.PENDING.value, C.COLLECTED.value):
        return await _settle(db, collectible, report, now)

    if status == C.RTO.value:
        return await _flag_conflict(
            db, collectible, report, now,
            classification=DiscrepancyClassification.TIMING_ISSUE.value,
            reported_amount=report.reported_amount,
        )

    if status == C.DISPUTED.value:
        return await _apply_to_disputed(db, collectible, report, now)

    # reconciled or paid
    if report.reported_amount == collectible.get("actual_amount"):
        return await _timeline_only(db, collectible, report, "corroborated")

    return await _flag_conflict(
        db, collectible, report, now,
        classification=DiscrepancyClassification.DUPLICATE_ENTRY.value,
        reported_amount=report.reported_amount,
    )


async def _cas_update(db, collectible: dict, update_set: dict, now):
    update_set["updated_at"] = now
    res = await db.collectibles.update_one(
        {"_id": collectible["_id"], "version": collectible.get("version", 0)},
        {"$set": update_set, "$inc": {"version": 1}},
    )
    if res.matched_count == 0:
        raise ConflictError(f"Collectible {collectible['_id']} changed concurrently")


def _result(collectible: dict, outcome: str, **extra) -> dict:
    return {
        "collectible_id": collectible["_id"],
        "outcome": outcome,
        "variance": extra.pop("variance", collectible.get("variance")),
        "discrepancy_id": extra.pop("discrepancy_id", None),
        **extra,
    }


async def _timeline(db, collectible: dict, report: CollectionReport, event: str, actual_amount, metadata=None):
    await record_collection_event(
        db,
        collectible_id=collectible["_id"],
        event=event,
        source=report.source.value,
        reported_amount=report.reported_amount,
        reported_at=report.reported_at,
        expected_total=collectible["expected_total"],
        actual_amount=actual_amount,
        metadata=metadata,
    )


async def _timeline_only(db, collectible: dict, report: CollectionReport, outcome: str) -> dict:
    await _timeline(db, collectible, report, f"REPORT_{outcome.upper()}", collectible.get("actual_amount"))
    logger.info("REPORT_%s collectible=%s source=%s", outcome.upper(), collectible["_id"], report.source.value)
    return _result(collectible, outcome)


async def _settle(db, collectible: dict, report: CollectionReport, now) -> dict:
    amount = report.reported_amount
    expected = collectible["expected_total"]
    variance = amount - expected

    update_set = {
        "actual_amount": amount,
        "variance": variance,
        "source": report.source.value,
        "collected_at": collectible.get("collected_at") or report.reported_at,
    }

    if within_tolerance(variance, expected):
        outcome = "reconciled" if variance == 0 else "auto_accepted"
        update_set.update({
            "status": C.RECONCILED.value,
            "reconciled_by": "system",
            "reconciled_source": report.source.value,
            "reconciled_at": now,
            "annotation": None if variance == 0 else AUTO_ACCEPT_ANNOTATION,
        })
        await _cas_update(db, collectible, update_set, now)
        await _timeline(db, collectible, report, "RECONCILED", amount, {"variance": variance})
        logger.info("RECONCILED collectible=%s variance=%s outcome=%s", collectible["_id"], variance, outcome)
        result = _result(collectible, outcome, variance=variance)
    else:
        discrepancy_id = new_discrepancy_id()
        update_set.update({"status": C.DISPUTED.value, "discrepancy_id": discrepancy_id})
        await _cas_update(db, collectible, update_set, now)
        await open_discrepancy(
            db,
            collectible=collectible,
            reported_amount=amount,
            source=report.source.value,
            discrepancy_id=discrepancy_id,
            now=now,
        )
        await _timeline(
            db, collectible, report, "DISPUTED", amount,
            {"variance": variance, "discrepancy_id": discrepancy_id},
        )
        result = _result(collectible, "disputed", variance=variance, discrepancy_id=discrepancy_id)

    if collectible.get("order_id"):
        await record_outcome(db, order_id=collectible["order_id"], outcome="delivered", now=now)
    return result


async def _apply_to_disputed(db, collectible: dict, report: CollectionReport, now) -> dict:
    discrepancy = await db.discrepancies.find_one({"_id": collectible.get("discrepancy_id")})
    if not discrepancy:
        # The writer that disputed the collectible has not inserted it yet.
        raise ConflictError(f"Discrepancy for {collectible['_id']} not written yet")
    if discrepancy.get("status") not in {
        DiscrepancyStatus.DETECTED.value,
        DiscrepancyStatus.UNDER_REVIEW.value,
        DiscrepancyStatus.COURIER_QUERIED.value,
        DiscrepancyStatus.DISPUTED.value,
        DiscrepancyStatus.ESCALATED.value,
    }:
        return await _timeline_only(db, collectible, report, "ignored")

    if report.reported_amount == discrepancy.get("reported_amount"):
        # Same figure again; nothing new for the open discrepancy.
        return await _timeline_only(db, collectible, report, "already_disputed")

    await resolve_with_correction(
        db,
        discrepancy["_id"],
        corrected_amount=report.reported_amount,
        actor="system",
        note=f"corrected by {report.source.value} report",
        now=now,
    )
    await _timeline(
        db, collectible, report, "REPORT_CORRECTED", report.reported_amount,
        {"discrepancy_id": discrepancy["_id"]},
    )
    return _result(
        collectible,
        "corrected",
        variance=report.reported_amount - collectible["expected_total"],
        discrepancy_id=discrepancy["_id"],
    )


async def _flag_conflict(
    db,
    collectible: dict,
    report: CollectionReport,
    now,
    *,
    classification: str,
    reported_amount: int,
) -> dict:
    """
    A report contradicting an already settled collectible. Unbatched
    collectibles re-open as disputed; batched or paid ones stay untouched and
    the discrepancy goes straight to escalated.
    """
    committed = bool(collectible.get("batch_id")) or collectible["status"] == C.PAID.value

    if committed:
        doc = await open_discrepancy(
            db,
            collectible=collectible,
            reported_amount=reported_amount,
            source=report.source.value,
            classification=classification,
            status=DiscrepancyStatus.ESCALATED.value,
            now=now,
        )
        await _timeline(
            db, collectible, report, "REPORT_ESCALATED", collectible.get("actual_amount"),
            {"discrepancy_id": doc["_id"], "classification": classification},
        )
        return _result(collectible, "escalated", discrepancy_id=doc["_id"])

    discrepancy_id = new_discrepancy_id()
    await _cas_update(
        db,
        collectible,
        {"status": C.DISPUTED.value, "discrepancy_id": discrepancy_id},
        now,
    )
    await open_discrepancy(
        db,
        collectible=collectible,
        reported_amount=reported_amount,
        source=report.source.value,
        classification=classification,
        discrepancy_id=discrepancy_id,
        previous_state={"status": collectible["status"], "actual_amount": collectible.get("actual_amount")},
        now=now,
    )
    await _timeline(
        db, collectible, report, "REPORT_CONFLICT", collectible.get("actual_amount"),
        {"discrepancy_id": discrepancy_id, "classification": classification},
    )
    return _result(collectible, "conflict_flagged", discrepancy_id=discrepancy_id)


async def _apply_rto(db, collectible: dict, report: CollectionReport, now) -> dict:
    status = collectible["status"]

    if status in (C.PENDING.value, C.COLLECTED.value):
        await _cas_update(db, collectible, {"status": C.RTO.value, "source": report.source.value}, now)
        await _timeline(db, collectible, report, "RTO", None)
        if collectible.get("order_id"):
            await record_outcome(db, order_id=collectible["order_id"], outcome="rto", now=now)
        logger.info("COLLECTIBLE_RTO collectible=%s", collectible["_id"])
        return _result(collectible, "rto")

    if status in (C.RTO.value, C.DISPUTED.value):
        return await _timeline_only(db, collectible, report, "ignored")

    # Cash was already reported for this shipment.
    return await _flag_conflict(
        db, collectible, report, now,
        classification=DiscrepancyClassification.TIMING_ISSUE.value,
        reported_amount=0,
    )


async def _apply_delivered_without_amount(db, collectible: dict, report: CollectionReport, now) -> dict:
    if collectible["status"] != C.PENDING.value:
        return await _timeline_only(db, collectible, report, "ignored")

    await _cas_update(
        db,
        collectible,
        {
            "status": C.COLLECTED.value,
            "collected_at": report.reported_at,
            "source": report.source.value,
        },
        now,
    )
    await _timeline(db, collectible, report, "COLLECTED", None)
    if collectible.get("order_id"):
        await record_outcome(db, order_id=collectible["order_id"], outcome="delivered", now=now)
    return _result(collectible, "collected")


# =========================================================
# MISSING SHIPMENT QUEUE
# =========================================================


async def queue_missing_shipment(db, report: CollectionReport, now=None) -> dict:
    now = now or utc_now()
    await db.unmatched_reports.update_one(
        {"fingerprint": report.fingerprint},
        {
            "$setOnInsert": {
                "fingerprint": report.fingerprint,
                "report": report.model_dump(mode="json"),
                "collectible_ref": report.collectible_ref,
                "reported_amount": report.reported_amount,
                "source": report.source.value,
                "status": "queued",
                "checks": 0,
                "next_check_at": now + UNMATCHED_RECHECK_BASE,
                "created_at": now,
            }
        },
        upsert=True,
    )
    logger.warning(
        "MISSING_SHIPMENT_QUEUED ref=%s source=%s amount=%s",
        report.collectible_ref,
        report.source.value,
        report.reported_amount,
    )
    return {
        "collectible_id": None,
        "outcome": "queued_missing",
        "variance": None,
        "discrepancy_id": None,
    }


async def recheck_unmatched_reports(db, now=None) -> dict:
    """
    Retry queued reports whose collectible may have been created since.
    Backoff doubles per check; after MISSING_SHIPMENT_MAX_CHECKS the report
    is escalated as a missing_shipment discrepancy.
    """
    now = now or utc_now()
    summary = {"matched": 0, "requeued": 0, "escalated": 0}

    cursor = db.unmatched_reports.find({
        "status": "queued",
        "next_check_at": {"$lte": now},
    })
    async for entry in cursor:
        report = CollectionReport(**entry["report"])
        try:
            outcome = await apply_report(db, report, now=now)
        except NotFoundError:
            checks = entry.get("checks", 0) + 1
            if checks >= MISSING_SHIPMENT_MAX_CHECKS:
                doc = await escalate_missing_shipment(db, report=entry, now=now)
                await db.unmatched_reports.update_one(
                    {"_id": entry["_id"]},
                    {"$set": {"status": "escalated", "checks": checks, "discrepancy_id": doc["_id"]}},
                )
                summary["escalated"] += 1
            else:
                await db.unmatched_reports.update_one(
                    {"_id": entry["_id"]},
                    {
                        "$set": {
                            "checks": checks,
                            "next_check_at": now + UNMATCHED_RECHECK_BASE * (2 ** checks),
                        }
                    },
                )
                summary["requeued"] += 1
            continue

        await db.unmatched_reports.update_one(
            {"_id": entry["_id"]},
            {"$set": {"status": "matched", "matched_at": now, "outcome": outcome}},
        )
        summary["matched"] += 1

    return summary
