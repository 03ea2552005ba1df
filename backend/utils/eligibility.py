import logging
from datetime import timedelta

from config.constants import ACCELERATED_TIERS, ELIGIBILITY_LOOKBACK_DAYS, STANDARD_TIER
from utils.clock import as_utc, utc_now
from utils.errors import NotFoundError
from utils.money import percent

logger = logging.getLogger(__name__)


def _tier_failures(tier: dict, metrics: dict) -> list:
    reasons = []
    if metrics.get("account_age_days", 0) < tier["min_account_age_days"]:
        reasons.append("account_too_new")
    if metrics.get("monthly_cod_orders", 0) < tier["min_monthly_cod_orders"]:
        reasons.append("insufficient_order_volume")

    # No cash orders means no RTO evidence, not a 0 % RTO rate.
    if not metrics.get("cash_order_count") or metrics.get("rto_percent") is None:
        reasons.append("insufficient_cod_history")
    elif metrics["rto_percent"] > tier["max_rto_percent"]:
        reasons.append("rto_rate_too_high")

    if (metrics.get("dispute_percent") or 0) > tier["max_dispute_percent"]:
        reasons.append("dispute_rate_too_high")
    return reasons


def evaluate_eligibility(metrics: dict) -> dict:
    """
    Strictest accelerated tier whose thresholds all hold. Accounts that miss
    the loosest tier fall back to standard-cycle batching, which is always
    allowed.
    """
    for tier in ACCELERATED_TIERS:
        if not _tier_failures(tier, metrics):
            volume = metrics.get("monthly_cod_volume") or 0
            return {
                "eligible": True,
                "tier": tier["tier"],
                "reasons": [],
                "fee_bps": tier["fee_bps"],
                "lookback_days": tier["lookback_days"],
                "credit_ceiling": int(volume * tier["credit_multiple"]),
                "standard_allowed": True,
            }

    return {
        "eligible": False,
        "tier": STANDARD_TIER,
        "reasons": _tier_failures(ACCELERATED_TIERS[-1], metrics),
        "fee_bps": 0,
        "lookback_days": None,
        "credit_ceiling": None,
        "standard_allowed": True,
    }


def tier_policy(tier: str) -> dict | None:
    for policy in ACCELERATED_TIERS:
        if policy["tier"] == tier:
            return policy
    return None


async def gather_account_metrics(db, account_id: str, now=None) -> dict:
    """Trailing-window metrics the tier thresholds are checked against."""
    now = now or utc_now()
    account = await db.accounts.find_one({"_id": account_id})
    if not account:
        raise NotFoundError(f"Account {account_id} not found")

    since = now - timedelta(days=ELIGIBILITY_LOOKBACK_DAYS)
    window = {"account_id": account_id, "created_at": {"$gte": since}}
    months = ELIGIBILITY_LOOKBACK_DAYS / 30

    cash_orders = await db.collectibles.count_documents(window)
    rto_orders = await db.collectibles.count_documents({**window, "status": "rto"})
    disputes = await db.discrepancies.count_documents({
        "account_id": account_id,
        "detected_at": {"$gte": since},
    })

    volume = 0
    async for c in db.collectibles.find(window, {"expected_total": 1}):
        volume += c.get("expected_total") or 0

    created_at = as_utc(account.get("created_at")) or now
    metrics = {
        "account_id": account_id,
        "account_age_days": max(0, (now - created_at).days),
        "cash_order_count": cash_orders,
        "monthly_cod_orders": round(cash_orders / months, 1),
        "monthly_cod_volume": int(volume / months),
        "rto_percent": round(percent(rto_orders, cash_orders), 2) if cash_orders else None,
        "dispute_percent": round(percent(disputes, cash_orders), 2) if cash_orders else 0.0,
    }
    logger.info(
        "ACCOUNT_METRICS account=%s age=%s monthly_orders=%s rto=%s disputes=%s",
        account_id,
        metrics["account_age_days"],
        metrics["monthly_cod_orders"],
        metrics["rto_percent"],
        metrics["dispute_percent"],
    )
    return metrics


async def check_eligibility(db, account_id: str, now=None) -> dict:
    metrics = await gather_account_metrics(db, account_id, now=now)
    return {**evaluate_eligibility(metrics), "metrics": metrics}
