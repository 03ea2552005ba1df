import asyncio
import logging

from database import get_db
from utils.batching import create_standard_batches

CHECK_INTERVAL_SECONDS = 60 * 60 * 24  # daily standard cycle
logger = logging.getLogger(__name__)


async def remittance_batch_worker():
    """
    Standard-cycle batching. Batches land in pending_approval;
    finance approves before any payout.
    """
    db = get_db()

    while True:
        try:
            created = await create_standard_batches(db)
            logger.info("STANDARD_BATCH_CYCLE created=%s", len(created))
        except Exception:
            logger.exception("REMITTANCE_BATCH_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
