import asyncio
import logging

from database import get_db
from utils.analytics import collection_health

CHECK_INTERVAL_SECONDS = 60 * 60  # hourly
logger = logging.getLogger(__name__)


async def health_digest():
    """
    COLLECTION HEALTH DIGEST (READ-ONLY)
    ------------------------------------
    - Open discrepancies by severity
    - Overdue discrepancies
    - Stuck payouts
    - Unmatched report queue
    """
    db = get_db()
    snapshot = await collection_health(db)

    logger.info(
        "COLLECTION_HEALTH open=%s overdue=%s stuck_payouts=%s unmatched=%s success_rate=%s rto_rate=%s",
        snapshot["open_discrepancies"],
        snapshot["overdue_discrepancies"],
        snapshot["stuck_payouts"],
        snapshot["unmatched_queue"],
        snapshot["reconciliation_success_rate"],
        snapshot["rto_rate"],
    )
    for alert in snapshot["alerts"]:
        logger.warning("COLLECTION_HEALTH_ALERT %s", alert)
    return snapshot


async def health_digest_worker():
    while True:
        try:
            await health_digest()
        except Exception:
            logger.exception("HEALTH_DIGEST_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
