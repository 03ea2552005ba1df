import hashlib
import logging
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from config.constants import PINCODE_LOOKBACK_DAYS
from config.env import PINCODE_CACHE_TTL_SECONDS
from utils.audit import log_audit
from utils.clock import as_utc, utc_now
from utils.errors import ConflictError, NotFoundError
from utils.retry import retry_on_conflict
from utils.risk_scorer import history_badness, level_for_score
from utils.validators import normalize_phone

logger = logging.getLogger(__name__)

VELOCITY_WINDOWS = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}

# In-memory store (process-level): pincode -> (rto_percent | None, expires_at_monotonic)
_PINCODE_RTO_CACHE: Dict[str, tuple] = {}


def identity_key(phone: str) -> str:
    """Stable profile key: hash of the normalized phone (raw digits if it does not normalize)."""
    try:
        canonical = normalize_phone(phone)
    except ValueError:
        canonical = "".join(ch for ch in (phone or "") if ch.isdigit() or ch == "+")
    return hashlib.sha256(f"phone:{canonical}".encode("utf-8")).hexdigest()


def is_blacklisted(profile: Optional[Dict[str, Any]], now=None) -> bool:
    if not profile:
        return False
    entry = profile.get("blacklist") or {}
    if not entry.get("active"):
        return False
    expires_at = as_utc(entry.get("expires_at"))
    if expires_at and expires_at <= (now or utc_now()):
        return False
    return True


async def get_profile(db, phone: str) -> Optional[Dict[str, Any]]:
    return await db.customer_risk_profiles.find_one({"_id": identity_key(phone)})


# =========================================================
# ORDER / OUTCOME RECORDING (optimistic increments)
# =========================================================


async def record_order(
    db,
    *,
    phone: str,
    order_id: str,
    account_id: str,
    pincode: str | None = None,
    email: str | None = None,
    device_fingerprint: str | None = None,
    is_cod: bool = True,
    now=None,
) -> bool:
    """
    Count an order against the customer's aggregate.
    Returns False when the order was already recorded.
    """
    now = now or utc_now()
    key = identity_key(phone)

    try:
        await db.customer_order_events.insert_one({
            "identity_key": key,
            "order_id": order_id,
            "account_id": account_id,
            "pincode": pincode,
            "is_cod": is_cod,
            "outcome": None,
            "created_at": now,
        })
    except DuplicateKeyError:
        return False

    update = {
        "$inc": {
            "lifetime_order_count": 1,
            "cash_order_count": 1 if is_cod else 0,
            "version": 1,
        },
        "$set": {"last_order_at": now},
        "$setOnInsert": {
            "rto_count": 0,
            "delivered_count": 0,
            "risk_score": None,
            "risk_level": None,
            "blacklist": {"active": False},
            "created_at": now,
        },
    }
    add_to_set = {}
    if email:
        add_to_set["emails"] = email.strip().lower()
    if device_fingerprint:
        add_to_set["device_fingerprints"] = device_fingerprint
    if add_to_set:
        update["$addToSet"] = add_to_set

    await db.customer_risk_profiles.update_one({"_id": key}, update, upsert=True)
    return True


async def record_outcome(db, *, order_id: str, outcome: str, now=None) -> bool:
    """
    Apply a delivery outcome ("delivered" | "rto") once per order.
    """
    if outcome not in {"delivered", "rto"}:
        raise ValueError(f"Unknown outcome {outcome}")

    now = now or utc_now()
    res = await db.customer_order_events.find_one_and_update(
        {"order_id": order_id, "outcome": None},
        {"$set": {"outcome": outcome, "outcome_at": now}},
    )
    if not res:
        return False

    counter = "rto_count" if outcome == "rto" else "delivered_count"
    await db.customer_risk_profiles.update_one(
        {"_id": res["identity_key"]},
        {"$inc": {counter: 1, "version": 1}},
    )
    if res.get("pincode"):
        _PINCODE_RTO_CACHE.pop(res["pincode"], None)

    await refresh_profile_score(db, res["identity_key"])
    return True


def profile_score(profile: Dict[str, Any], now=None) -> int:
    if is_blacklisted(profile, now):
        return 100
    badness, _ = history_badness(profile)
    return int(round(badness * 100))


async def refresh_profile_score(db, key: str) -> Dict[str, Any]:
    """Recompute the stored score/level with compare-and-set on `version`."""

    async def attempt():
        profile = await db.customer_risk_profiles.find_one({"_id": key})
        if not profile:
            raise NotFoundError(f"Risk profile {key} not found")

        score = profile_score(profile)
        level, _ = level_for_score(score)
        res = await db.customer_risk_profiles.update_one(
            {"_id": key, "version": profile.get("version", 0)},
            {
                "$set": {
                    "risk_score": score,
                    "risk_level": level,
                    "scored_at": utc_now(),
                },
                "$inc": {"version": 1},
            },
        )
        if res.matched_count == 0:
            raise ConflictError(f"Risk profile {key} changed concurrently")
        profile.update({"risk_score": score, "risk_level": level})
        return profile

    return await retry_on_conflict(attempt)


# =========================================================
# WINDOWED SIGNALS
# =========================================================


async def order_velocity(db, key: str, now=None) -> Dict[str, int]:
    now = now or utc_now()
    counts = {}
    for window, span in VELOCITY_WINDOWS.items():
        counts[window] = await db.customer_order_events.count_documents({
            "identity_key": key,
            "created_at": {"$gte": now - span},
        })
    return counts


async def pincode_rto_rate(db, pincode: str | None, now=None) -> Optional[float]:
    """
    Rolling RTO percent for a destination pincode, cached per process.
    None means no settled orders in the window (caller treats as neutral).
    """
    if not pincode:
        return None

    cached = _PINCODE_RTO_CACHE.get(pincode)
    if cached and cached[1] > time.monotonic():
        return cached[0]

    now = now or utc_now()
    since = now - timedelta(days=PINCODE_LOOKBACK_DAYS)
    base = {"pincode": pincode, "outcome_at": {"$gte": since}}

    settled = await db.customer_order_events.count_documents({
        **base,
        "outcome": {"$in": ["delivered", "rto"]},
    })
    rate = None
    if settled:
        rto = await db.customer_order_events.count_documents({**base, "outcome": "rto"})
        rate = round(rto * 100 / settled, 2)

    _PINCODE_RTO_CACHE[pincode] = (rate, time.monotonic() + PINCODE_CACHE_TTL_SECONDS)
    return rate


def clear_pincode_cache():
    _PINCODE_RTO_CACHE.clear()


# =========================================================
# BLACKLIST (soft expiry, never deleted)
# =========================================================


async def blacklist_customer(
    db,
    *,
    phone: str,
    reason: str,
    actor: str,
    expires_at=None,
):
    key = identity_key(phone)
    now = utc_now()
    await db.customer_risk_profiles.update_one(
        {"_id": key},
        {
            "$set": {
                "blacklist": {
                    "active": True,
                    "reason": reason,
                    "expires_at": expires_at,
                    "added_by": actor,
                    "added_at": now,
                },
            },
            "$inc": {"version": 1},
            "$setOnInsert": {
                "lifetime_order_count": 0,
                "cash_order_count": 0,
                "rto_count": 0,
                "delivered_count": 0,
                "created_at": now,
            },
        },
        upsert=True,
    )
    await log_audit(
        db,
        actor=actor,
        action="CUSTOMER_BLACKLISTED",
        entity_type="customer_risk_profile",
        entity_id=key,
        metadata={"reason": reason, "expires_at": expires_at},
    )
    logger.info("CUSTOMER_BLACKLISTED key=%s expires_at=%s", key, expires_at)
    return await refresh_profile_score(db, key)


async def lift_blacklist(db, *, phone: str, actor: str):
    key = identity_key(phone)
    res = await db.customer_risk_profiles.update_one(
        {"_id": key, "blacklist.active": True},
        {
            "$set": {
                "blacklist.active": False,
                "blacklist.lifted_by": actor,
                "blacklist.lifted_at": utc_now(),
            },
            "$inc": {"version": 1},
        },
    )
    if res.matched_count == 0:
        raise NotFoundError("No active blacklist entry for this customer")

    await log_audit(
        db,
        actor=actor,
        action="CUSTOMER_BLACKLIST_LIFTED",
        entity_type="customer_risk_profile",
        entity_id=key,
    )
    return await refresh_profile_score(db, key)
