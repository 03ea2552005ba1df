import asyncio
import logging

from database import get_db
from utils.discrepancies import expire_overdue

CHECK_INTERVAL_SECONDS = 60 * 15  # every 15 minutes
logger = logging.getLogger(__name__)


async def discrepancy_timeout_worker():
    """
    Auto-accepts the reported amount on discrepancies past their deadline.
    Each one is closed as `timeout`, distinct from a manual accept.
    """
    db = get_db()

    while True:
        try:
            expired = await expire_overdue(db)
            if expired:
                logger.info("DISCREPANCY_TIMEOUTS count=%s", len(expired))
        except Exception:
            logger.exception("DISCREPANCY_TIMEOUT_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
