"""
Read-only cash-flow forecast and collection health snapshot.
Nothing here writes to the database.
"""
import logging
from datetime import timedelta

from config.constants import (
    HEALTH_LOOKBACK_DAYS,
    MAX_UNMATCHED_QUEUE,
    MIN_RECON_SUCCESS_RATE,
    STUCK_PAYOUT_HOURS,
)
from models.discrepancy import DiscrepancyStatus, Severity, UNRESOLVED_STATUSES
from models.remittance import BatchStatus
from utils.clock import utc_now

logger = logging.getLogger(__name__)

OPEN_DISCREPANCY_STATUSES = sorted(UNRESOLVED_STATUSES | {DiscrepancyStatus.ESCALATED.value})


async def _sum(cursor, field: str) -> int:
    total = 0
    async for doc in cursor:
        total += doc.get(field) or 0
    return total


async def forecast_cash_flow(db, account_id: str, now=None, days: int = 30) -> dict:
    """
    Money per pipeline stage for one account, plus the inflow still expected
    once the trailing `days` RTO rate is taken off uncollected shipments.
    """
    now = now or utc_now()

    awaiting = await _sum(
        db.collectibles.find({"account_id": account_id, "status": {"$in": ["pending", "collected"]}}),
        "expected_total",
    )
    disputed = await _sum(
        db.collectibles.find({"account_id": account_id, "status": "disputed"}),
        "actual_amount",
    )
    unbatched = await _sum(
        db.collectibles.find({"account_id": account_id, "status": "reconciled", "batch_id": None}),
        "actual_amount",
    )
    in_batch = await _sum(
        db.remittance_batches.find({
            "account_id": account_id,
            "status": {"$in": [BatchStatus.PENDING_APPROVAL.value, BatchStatus.APPROVED.value]},
        }),
        "net_payable",
    )
    in_payout = await _sum(
        db.remittance_batches.find({
            "account_id": account_id,
            "status": BatchStatus.PAYOUT_INITIATED.value,
        }),
        "net_payable",
    )

    since = now - timedelta(days=days)
    window = {"account_id": account_id, "created_at": {"$gte": since}}
    settled = await db.collectibles.count_documents({**window, "status": {"$ne": "pending"}})
    rto = await db.collectibles.count_documents({**window, "status": "rto"})
    rto_rate = rto / settled if settled else 0.0

    expected_inflow = int(awaiting * (1 - rto_rate)) + disputed + unbatched + in_batch + in_payout

    return {
        "account_id": account_id,
        "as_of": now,
        "stages": {
            "awaiting_collection": awaiting,
            "disputed": disputed,
            "reconciled_unbatched": unbatched,
            "in_batch": in_batch,
            "in_payout": in_payout,
        },
        "rto_rate": round(rto_rate, 4),
        "expected_inflow": expected_inflow,
    }


async def collection_health(db, now=None) -> dict:
    now = now or utc_now()
    since = now - timedelta(days=HEALTH_LOOKBACK_DAYS)

    by_severity = {}
    for severity in Severity:
        by_severity[severity.value] = await db.discrepancies.count_documents({
            "status": {"$in": OPEN_DISCREPANCY_STATUSES},
            "severity": severity.value,
        })

    overdue = await db.discrepancies.count_documents({
        "status": {"$in": sorted(UNRESOLVED_STATUSES)},
        "deadline_at": {"$lt": now},
    })

    stuck_before = now - timedelta(hours=STUCK_PAYOUT_HOURS)
    stuck_initiated = await db.remittance_batches.count_documents({
        "status": BatchStatus.PAYOUT_INITIATED.value,
        "payout.initiated_at": {"$lte": stuck_before},
    })
    manual = await db.remittance_batches.count_documents({
        "status": BatchStatus.APPROVED.value,
        "payout.requires_manual_intervention": True,
    })

    unmatched = await db.unmatched_reports.count_documents({"status": "queued"})

    window = {"collected_at": {"$gte": since}}
    reconciled = await db.collectibles.count_documents({**window, "status": {"$in": ["reconciled", "paid"]}})
    disputed = await db.collectibles.count_documents({**window, "status": "disputed"})
    success_rate = reconciled / (reconciled + disputed) if (reconciled + disputed) else None

    cash_orders = await db.collectibles.count_documents({"created_at": {"$gte": since}})
    rto = await db.collectibles.count_documents({"created_at": {"$gte": since}, "status": "rto"})
    rto_rate = rto / cash_orders if cash_orders else None

    alerts = []
    if success_rate is not None and success_rate < MIN_RECON_SUCCESS_RATE:
        alerts.append(f"reconciliation success rate {success_rate:.1%} below {MIN_RECON_SUCCESS_RATE:.0%}")
    if overdue:
        alerts.append(f"{overdue} discrepancies past deadline")
    if by_severity.get(Severity.CRITICAL.value):
        alerts.append(f"{by_severity[Severity.CRITICAL.value]} critical discrepancies open")
    if stuck_initiated or manual:
        alerts.append(f"{stuck_initiated + manual} payouts need attention")
    if unmatched > MAX_UNMATCHED_QUEUE:
        alerts.append(f"unmatched report queue at {unmatched}")

    return {
        "as_of": now,
        "open_discrepancies": by_severity,
        "overdue_discrepancies": overdue,
        "stuck_payouts": stuck_initiated,
        "payouts_needing_intervention": manual,
        "unmatched_queue": unmatched,
        "reconciliation_success_rate": round(success_rate, 4) if success_rate is not None else None,
        "rto_rate": round(rto_rate, 4) if rto_rate is not None else None,
        "alerts": alerts,
    }
