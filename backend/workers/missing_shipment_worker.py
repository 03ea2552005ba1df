import asyncio
import logging

from database import get_db
from utils.reconciliation import recheck_unmatched_reports

CHECK_INTERVAL_SECONDS = 60 * 5  # every 5 minutes
logger = logging.getLogger(__name__)


async def missing_shipment_worker():
    db = get_db()

    while True:
        try:
            summary = await recheck_unmatched_reports(db)
            if any(summary.values()):
                logger.info(
                    "UNMATCHED_RECHECK matched=%s requeued=%s escalated=%s",
                    summary["matched"],
                    summary["requeued"],
                    summary["escalated"],
                )
        except Exception:
            logger.exception("MISSING_SHIPMENT_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
