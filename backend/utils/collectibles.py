import logging
import uuid

from pymongo.errors import DuplicateKeyError

from utils.clock import utc_now
from utils.collection_timeline import record_collection_event
from utils.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def new_collectible_id() -> str:
    return f"COL-{uuid.uuid4().hex[:20].upper()}"


async def create_collectible(
    db,
    *,
    shipment_ref: str,
    account_id: str,
    carrier: str,
    expected_base: int,
    expected_handling: int = 0,
    shipping_cost: int = 0,
    risk_score: int | None = None,
    order_id: str | None = None,
    customer_phone: str | None = None,
    pincode: str | None = None,
    now=None,
) -> dict:
    """
    Register the cash-collection obligation of an accepted COD shipment.
    expected_* values are written here and never touched again.
    """
    if expected_base < 0 or expected_handling < 0:
        raise ValidationError("Expected amounts must be non-negative")
    if shipping_cost < 0:
        raise ValidationError("Shipping cost must be non-negative")

    now = now or utc_now()
    doc = {
        "_id": new_collectible_id(),
        "shipment_ref": shipment_ref.strip(),
        "account_id": account_id,
        "carrier": carrier,
        "order_id": order_id,
        "customer_phone": customer_phone,
        "pincode": pincode,
        "expected_base": expected_base,
        "expected_handling": expected_handling,
        "expected_total": expected_base + expected_handling,
        "shipping_cost": shipping_cost,
        "status": "pending",
        "actual_amount": None,
        "source": None,
        "risk_score": risk_score,
        "variance": None,
        "annotation": None,
        "discrepancy_id": None,
        "batch_id": None,
        "reconciled_by": None,
        "reconciled_source": None,
        "collected_at": None,
        "reconciled_at": None,
        "version": 0,
        "created_at": now,
        "updated_at": now,
    }

    try:
        await db.collectibles.insert_one(doc)
    except DuplicateKeyError:
        raise ConflictError(f"Collectible for shipment {shipment_ref} already exists")

    await record_collection_event(
        db,
        collectible_id=doc["_id"],
        event="COLLECTIBLE_CREATED",
        expected_total=doc["expected_total"],
    )
    logger.info(
        "COLLECTIBLE_CREATED id=%s shipment=%s expected_total=%s",
        doc["_id"],
        doc["shipment_ref"],
        doc["expected_total"],
    )
    return doc


async def find_collectible(db, ref: str):
    """Resolve a carrier reference (AWB) or collectible id."""
    return await db.collectibles.find_one({"$or": [{"shipment_ref": ref}, {"_id": ref}]})


async def get_collectible(db, collectible_id: str) -> dict:
    collectible = await db.collectibles.find_one({"_id": collectible_id})
    if not collectible:
        raise NotFoundError(f"Collectible {collectible_id} not found")
    return collectible
