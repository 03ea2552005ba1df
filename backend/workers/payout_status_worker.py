import asyncio
import logging

from database import get_db
from utils.payout_coordinator import sync_payout_status

CHECK_INTERVAL_SECONDS = 60 * 10  # every 10 minutes
logger = logging.getLogger(__name__)


async def payout_status_worker():
    """Settles payouts whose provider callback never arrived."""
    db = get_db()

    while True:
        try:
            summary = await sync_payout_status(db)
            if summary["checked"]:
                logger.info(
                    "PAYOUT_STATUS_SYNC checked=%s settled=%s errors=%s",
                    summary["checked"],
                    summary["settled"],
                    summary["errors"],
                )
        except Exception:
            logger.exception("PAYOUT_STATUS_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
