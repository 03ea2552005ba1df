import logging

from utils.clock import parse_timestamp, utc_now
from utils.errors import CodUnavailable
from utils.notifications import emit_verification_request
from utils.risk_ledger import (
    get_profile,
    identity_key,
    is_blacklisted,
    order_velocity,
    pincode_rto_rate,
    record_order,
)
from utils.risk_scorer import score_order

logger = logging.getLogger(__name__)


async def evaluate_cod_order(db, order: dict, now=None) -> dict:
    """
    Centralized COD risk gate.
    This MUST be called before a cash-on-delivery order is accepted.

    Returns the public decision. Critical risk raises CodUnavailable, whose
    message never reveals the score or the reasons behind it.
    """
    if now is None:
        now = parse_timestamp(order["placed_at"]) if order.get("placed_at") else utc_now()
    phone = order["phone"]
    address = order.get("address") or {}
    key = identity_key(phone)

    profile = await get_profile(db, phone)
    context = {
        "phone": phone,
        "order_value": order["order_value"],
        "address": address,
        "placed_at": now,
        "velocity": await order_velocity(db, key, now),
        "pincode_rto_percent": await pincode_rto_rate(db, address.get("pincode"), now),
        "blacklisted": is_blacklisted(profile, now),
    }
    result = score_order(context, profile)

    await db.risk_assessments.insert_one({
        "order_id": order["order_id"],
        "account_id": order["account_id"],
        "identity_key": key,
        "score": result["score"],
        "level": result["level"],
        "flags": result["flags"],
        "factors": result["factors"],
        "recommendation": result["recommendation"],
        "created_at": now,
    })

    await record_order(
        db,
        phone=phone,
        order_id=order["order_id"],
        account_id=order["account_id"],
        pincode=address.get("pincode"),
        email=order.get("email"),
        device_fingerprint=order.get("device_fingerprint"),
        is_cod=True,
        now=now,
    )

    logger.info(
        "COD_RISK_EVALUATED order=%s score=%s level=%s flags=%s",
        order["order_id"],
        result["score"],
        result["level"],
        ",".join(result["flags"]),
    )

    recommendation = result["recommendation"]

    # -------------------------------------------------
    # 1. Critical risk (hard stop, generic message)
    # -------------------------------------------------
    if recommendation == "block":
        raise CodUnavailable()

    decision = {
        "order_id": order["order_id"],
        "risk_score": result["score"],
        "cod_allowed": recommendation != "disable_cod",
        "verification_required": recommendation == "require_verification",
        "verification_request_id": None,
    }

    # -------------------------------------------------
    # 2. Medium risk: OTP confirmation before acceptance
    # -------------------------------------------------
    if decision["verification_required"]:
        decision["verification_request_id"] = await emit_verification_request(
            db,
            phone=phone,
            order_id=order["order_id"],
        )

    return decision
