import asyncio
import logging
from datetime import timedelta

from config.env import POLL_CARRIERS
from database import get_db
from utils.carriers import get_poll_client, poll_collection
from utils.clock import utc_now
from utils.errors import NotFoundError

CHECK_INTERVAL_SECONDS = 60 * 30  # every 30 minutes
POLL_WINDOW_DAYS = 30
logger = logging.getLogger(__name__)


async def poll_open_collections(db, carriers=None, now=None) -> dict:
    """Poll every open collectible of carriers that do not push events."""
    now = now or utc_now()
    summary = {"polled": 0, "errors": 0}

    for carrier in carriers if carriers is not None else POLL_CARRIERS:
        try:
            client = get_poll_client(carrier)
        except NotFoundError:
            logger.warning("CARRIER_POLL_UNCONFIGURED carrier=%s", carrier)
            continue

        cursor = db.collectibles.find(
            {
                "carrier": carrier,
                "status": {"$in": ["pending", "collected"]},
                "created_at": {"$gte": now - timedelta(days=POLL_WINDOW_DAYS)},
            },
            {"shipment_ref": 1},
        )
        async for collectible in cursor:
            try:
                await poll_collection(
                    db,
                    carrier=carrier,
                    shipment_ref=collectible["shipment_ref"],
                    client=client,
                    now=now,
                )
                summary["polled"] += 1
            except Exception:
                summary["errors"] += 1
                logger.exception(
                    "CARRIER_POLL_ERROR carrier=%s shipment=%s",
                    carrier,
                    collectible["shipment_ref"],
                )
    return summary


async def carrier_poll_worker():
    db = get_db()

    while True:
        try:
            summary = await poll_open_collections(db)
            logger.info("CARRIER_POLL polled=%s errors=%s", summary["polled"], summary["errors"])
        except Exception:
            logger.exception("CARRIER_POLL_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
