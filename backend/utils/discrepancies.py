"""
Discrepancy workflow.

A discrepancy is opened when a reported collection falls outside the
auto-accept tolerance, and lives until one of:

- resolved  : the carrier corrected the amount (new report or operator entry)
- accepted  : an operator accepted the originally reported amount
- timeout   : the deadline passed with no action; reported amount auto-accepted,
              or the prior settled state kept when the report contradicted it

Closing a discrepancy writes the agreed final amount onto its collectible and
reconciles it. `disputed` and `escalated` keep the collectible open.
"""
import logging
import uuid
from datetime import timedelta

from config.constants import SEVERITY_BUCKETS, SEVERITY_CEILING
from config.env import DISCREPANCY_DEADLINE_DAYS
from models.discrepancy import (
    CLOSING_STATUSES,
    DiscrepancyClassification,
    DiscrepancyStatus,
)
from utils.audit import log_audit
from utils.clock import utc_now
from utils.collection_timeline import record_collection_event
from utils.errors import ConflictError, InvalidTransition, NotFoundError, ValidationError
from utils.money import percent
from utils.notifications import emit_discrepancy_alert, emit_notification
from utils.retry import retry_on_conflict

logger = logging.getLogger(__name__)

S = DiscrepancyStatus

ALLOWED_TRANSITIONS = {
    S.DETECTED.value: {
        S.UNDER_REVIEW.value, S.COURIER_QUERIED.value, S.DISPUTED.value,
        S.ESCALATED.value, S.RESOLVED.value, S.ACCEPTED.value, S.TIMEOUT.value,
    },
    S.UNDER_REVIEW.value: {
        S.COURIER_QUERIED.value, S.DISPUTED.value, S.ESCALATED.value,
        S.RESOLVED.value, S.ACCEPTED.value, S.TIMEOUT.value,
    },
    S.COURIER_QUERIED.value: {
        S.DISPUTED.value, S.ESCALATED.value,
        S.RESOLVED.value, S.ACCEPTED.value, S.TIMEOUT.value,
    },
    S.DISPUTED.value: {S.ESCALATED.value, S.RESOLVED.value, S.ACCEPTED.value},
    S.ESCALATED.value: {S.RESOLVED.value, S.ACCEPTED.value},
}

# Actively contested discrepancies are not auto-accepted at the deadline.
TIMEOUT_ELIGIBLE = [S.DETECTED.value, S.UNDER_REVIEW.value, S.COURIER_QUERIED.value]


# =========================================================
# CLASSIFICATION (PURE)
# =========================================================


def classify(variance: int, expected_total: int) -> str:
    if variance > 0:
        return DiscrepancyClassification.OVERPAYMENT.value
    if variance < 0 and abs(variance) * 2 > expected_total:
        return DiscrepancyClassification.PARTIAL_COLLECTION.value
    return DiscrepancyClassification.AMOUNT_MISMATCH.value


def severity(abs_amount: int, pct) -> str:
    """
    Lowest bucket whose absolute ceiling OR percent ceiling holds.
    Ceilings are inclusive: ₹200 at 15.4 % is medium.

    The smaller bucket wins when only one bound holds. The ₹200-short
    scenario on ₹1,300 (15.4 %) must come out medium, which the
    larger-bucket reading would not give.
    """
    for bucket, max_abs, max_pct in SEVERITY_BUCKETS:
        if abs_amount <= max_abs or (pct is not None and pct <= max_pct):
            return bucket
    return SEVERITY_CEILING


def new_discrepancy_id() -> str:
    return f"DSC-{uuid.uuid4().hex[:20].upper()}"


def _history_entry(status: str, actor: str, note: str | None, at) -> dict:
    return {"status": status, "actor": actor, "note": note, "at": at}


# =========================================================
# OPEN
# =========================================================


async def open_discrepancy(
    db,
    *,
    collectible: dict,
    reported_amount: int,
    source: str,
    classification: str | None = None,
    status: str = S.DETECTED.value,
    discrepancy_id: str | None = None,
    previous_state: dict | None = None,
    now=None,
) -> dict:
    """
    `previous_state` ({status, actual_amount}) is set when the report
    contradicts an already settled collectible; a timeout restores it.
    """
    now = now or utc_now()
    expected = collectible["expected_total"]
    difference = reported_amount - expected
    pct = percent(difference, expected)

    doc = {
        "_id": discrepancy_id or new_discrepancy_id(),
        "collectible_id": collectible["_id"],
        "shipment_ref": collectible.get("shipment_ref"),
        "account_id": collectible.get("account_id"),
        "expected_amount": expected,
        "reported_amount": reported_amount,
        "difference": difference,
        "difference_percent": round(pct, 2) if pct is not None else None,
        "classification": classification or classify(difference, expected),
        "severity": severity(abs(difference), pct),
        "status": status,
        "source": source,
        "detected_at": now,
        "deadline_at": now + timedelta(days=DISCREPANCY_DEADLINE_DAYS),
        "evidence": [],
        "history": [_history_entry(status, "system", None, now)],
        "resolution": None,
        "previous_state": previous_state,
        "updated_at": now,
    }
    await db.discrepancies.insert_one(doc)

    logger.warning(
        "DISCREPANCY_OPENED id=%s collectible=%s class=%s severity=%s difference=%s",
        doc["_id"],
        doc["collectible_id"],
        doc["classification"],
        doc["severity"],
        difference,
    )
    await emit_discrepancy_alert(db, doc)
    return doc


async def escalate_missing_shipment(db, *, report: dict, now=None) -> dict:
    """A report that never matched any collectible after all re-checks."""
    now = now or utc_now()
    doc = {
        "_id": new_discrepancy_id(),
        "collectible_id": None,
        "shipment_ref": report["collectible_ref"],
        "account_id": None,
        "expected_amount": None,
        "reported_amount": report.get("reported_amount"),
        "difference": None,
        "difference_percent": None,
        "classification": DiscrepancyClassification.MISSING_SHIPMENT.value,
        "severity": SEVERITY_CEILING,
        "status": S.ESCALATED.value,
        "source": report.get("source"),
        "detected_at": now,
        "deadline_at": now + timedelta(days=DISCREPANCY_DEADLINE_DAYS),
        "evidence": [],
        "history": [_history_entry(S.ESCALATED.value, "system", "no matching shipment", now)],
        "resolution": None,
        "updated_at": now,
    }
    await db.discrepancies.insert_one(doc)
    logger.error("MISSING_SHIPMENT_ESCALATED ref=%s discrepancy=%s", doc["shipment_ref"], doc["_id"])
    await emit_discrepancy_alert(db, doc)
    return doc


# =========================================================
# TRANSITIONS
# =========================================================


async def get_discrepancy(db, discrepancy_id: str) -> dict:
    doc = await db.discrepancies.find_one({"_id": discrepancy_id})
    if not doc:
        raise NotFoundError(f"Discrepancy {discrepancy_id} not found")
    return doc


def _assert_transition(doc: dict, to_status: str):
    allowed = ALLOWED_TRANSITIONS.get(doc["status"], set())
    if to_status not in allowed:
        raise InvalidTransition(
            f"Cannot move discrepancy {doc['_id']} from {doc['status']} to {to_status}"
        )


async def _transition(
    db,
    discrepancy_id: str,
    to_status: str,
    *,
    actor: str,
    note: str | None = None,
    extra_set: dict | None = None,
    now=None,
) -> dict:
    now = now or utc_now()

    async def attempt():
        doc = await get_discrepancy(db, discrepancy_id)
        _assert_transition(doc, to_status)

        update_set = {"status": to_status, "updated_at": now}
        if extra_set:
            update_set.update(extra_set)

        res = await db.discrepancies.update_one(
            {"_id": discrepancy_id, "status": doc["status"]},
            {
                "$set": update_set,
                "$push": {"history": _history_entry(to_status, actor, note, now)},
            },
        )
        if res.matched_count == 0:
            raise ConflictError(f"Discrepancy {discrepancy_id} changed concurrently")

        doc.update(update_set)
        return doc

    doc = await retry_on_conflict(attempt)
    await log_audit(
        db,
        actor=actor,
        action=f"DISCREPANCY_{to_status.upper()}",
        entity_type="discrepancy",
        entity_id=discrepancy_id,
        metadata={"note": note} if note else None,
    )
    return doc


async def start_review(db, discrepancy_id: str, *, actor: str, note: str | None = None) -> dict:
    return await _transition(db, discrepancy_id, S.UNDER_REVIEW.value, actor=actor, note=note)


async def query_courier(db, discrepancy_id: str, *, actor: str, note: str | None = None) -> dict:
    doc = await _transition(db, discrepancy_id, S.COURIER_QUERIED.value, actor=actor, note=note)
    await emit_notification(
        db,
        channel="carrier",
        kind="collection_query",
        payload={
            "discrepancy_id": discrepancy_id,
            "shipment_ref": doc.get("shipment_ref"),
            "expected_amount": doc.get("expected_amount"),
            "reported_amount": doc.get("reported_amount"),
            "note": note,
        },
    )
    return doc


async def mark_disputed(db, discrepancy_id: str, *, actor: str, note: str | None = None) -> dict:
    return await _transition(db, discrepancy_id, S.DISPUTED.value, actor=actor, note=note)


async def escalate(db, discrepancy_id: str, *, actor: str, note: str | None = None) -> dict:
    return await _transition(db, discrepancy_id, S.ESCALATED.value, actor=actor, note=note)


async def attach_evidence(
    db,
    discrepancy_id: str,
    *,
    actor: str,
    kind: str,
    reference: str,
    note: str | None = None,
) -> dict:
    doc = await get_discrepancy(db, discrepancy_id)
    if doc["status"] in CLOSING_STATUSES:
        raise InvalidTransition(f"Discrepancy {discrepancy_id} is closed")

    now = utc_now()
    await db.discrepancies.update_one(
        {"_id": discrepancy_id},
        {
            "$push": {
                "evidence": {
                    "kind": kind,
                    "reference": reference,
                    "note": note,
                    "added_by": actor,
                    "added_at": now,
                }
            },
            "$set": {"updated_at": now},
        },
    )
    return await get_discrepancy(db, discrepancy_id)


# =========================================================
# CLOSE (resolved | accepted | timeout)
# =========================================================


async def _close(
    db,
    discrepancy_id: str,
    *,
    status: str,
    final_amount,
    actor: str,
    outcome: str,
    note: str | None = None,
    restore_status: str | None = None,
    now=None,
) -> dict:
    """
    Close the discrepancy and settle its collectible. With `restore_status`
    the collectible goes back to the state it had before the contradicting
    report instead of taking a new amount.
    """
    if final_amount is None and restore_status != "rto":
        raise ValidationError(
            f"Discrepancy {discrepancy_id} cannot close without a final amount",
            code="FINAL_AMOUNT_MISSING",
        )
    now = now or utc_now()

    doc = await _transition(
        db,
        discrepancy_id,
        status,
        actor=actor,
        note=note,
        extra_set={
            "resolution": {
                "outcome": outcome,
                "final_amount": final_amount,
                "actor": actor,
                "resolved_at": now,
                "note": note,
            }
        },
        now=now,
    )

    collectible_id = doc.get("collectible_id")
    if not collectible_id:
        return doc

    collectible = await db.collectibles.find_one({"_id": collectible_id})
    if not collectible or collectible.get("discrepancy_id") != discrepancy_id:
        # Escalated flags on committed collectibles record the amount only.
        return doc

    update_set = {
        "status": restore_status or "reconciled",
        "actual_amount": final_amount,
        "variance": final_amount - collectible["expected_total"] if final_amount is not None else None,
        "annotation": f"discrepancy {outcome}",
        "updated_at": now,
    }
    if not restore_status:
        update_set["reconciled_by"] = {"timeout": "timeout", "system": "system"}.get(actor, "operator")
        update_set["reconciled_at"] = now

    res = await db.collectibles.update_one(
        {"_id": collectible_id, "discrepancy_id": discrepancy_id, "status": "disputed"},
        {"$set": update_set, "$inc": {"version": 1}},
    )
    if res.matched_count == 0:
        logger.error(
            "DISCREPANCY_CLOSE_COLLECTIBLE_SKIPPED discrepancy=%s collectible=%s status=%s",
            discrepancy_id,
            collectible_id,
            collectible.get("status"),
        )
        return doc

    await record_collection_event(
        db,
        collectible_id=collectible_id,
        event=f"DISCREPANCY_{status.upper()}",
        expected_total=collectible["expected_total"],
        actual_amount=final_amount,
        actor=actor,
        metadata={"discrepancy_id": discrepancy_id, "outcome": outcome},
    )
    logger.info(
        "DISCREPANCY_CLOSED id=%s status=%s final_amount=%s collectible=%s",
        discrepancy_id,
        status,
        final_amount,
        collectible_id,
    )
    return doc


async def resolve_with_correction(
    db,
    discrepancy_id: str,
    *,
    corrected_amount: int,
    actor: str,
    note: str | None = None,
    now=None,
) -> dict:
    if corrected_amount is None or corrected_amount < 0:
        raise ValidationError("Corrected amount must be a non-negative paise value")
    return await _close(
        db,
        discrepancy_id,
        status=S.RESOLVED.value,
        final_amount=corrected_amount,
        actor=actor,
        outcome="corrected",
        note=note,
        now=now,
    )


async def accept_reported(db, discrepancy_id: str, *, actor: str, note: str | None = None) -> dict:
    doc = await get_discrepancy(db, discrepancy_id)
    return await _close(
        db,
        discrepancy_id,
        status=S.ACCEPTED.value,
        final_amount=doc.get("reported_amount"),
        actor=actor,
        outcome="reported_amount_accepted",
        note=note,
    )


async def expire_overdue(db, now=None) -> list:
    """
    Close every discrepancy past its deadline. A plain mismatch takes the
    reported amount; a report that contradicted an already settled
    collectible is dropped and the collectible keeps its accepted state.
    """
    now = now or utc_now()
    cursor = db.discrepancies.find({
        "status": {"$in": TIMEOUT_ELIGIBLE},
        "deadline_at": {"$lte": now},
    })

    expired = []
    async for doc in cursor:
        previous = doc.get("previous_state")
        try:
            if previous:
                await _close(
                    db,
                    doc["_id"],
                    status=S.TIMEOUT.value,
                    final_amount=previous.get("actual_amount"),
                    actor="timeout",
                    outcome="previous_state_kept_after_deadline",
                    restore_status=previous["status"],
                    now=now,
                )
            else:
                await _close(
                    db,
                    doc["_id"],
                    status=S.TIMEOUT.value,
                    final_amount=doc.get("reported_amount"),
                    actor="timeout",
                    outcome="auto_accepted_after_deadline",
                    now=now,
                )
            expired.append(doc["_id"])
        except (InvalidTransition, ConflictError):
            # Someone acted on it between the query and the close.
            logger.info("DISCREPANCY_TIMEOUT_SKIPPED id=%s", doc["_id"])
        except ValidationError:
            logger.exception("DISCREPANCY_TIMEOUT_ERROR id=%s", doc["_id"])
    return expired
