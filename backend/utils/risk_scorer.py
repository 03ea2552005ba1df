from typing import Any, Dict, Optional, Tuple

from config.constants import (
    ADDRESS_FIELD_POINTS,
    ELEVATED_ORDER_VALUE_PAISE,
    HIGH_ORDER_VALUE_PAISE,
    NEUTRAL_PINCODE_RTO_PERCENT,
    NIGHT_HOURS_IST,
    RISK_LEVEL_CEILING,
    RISK_LEVEL_THRESHOLDS,
    RISK_WEIGHTS,
    VAGUE_ADDRESS_MARKERS,
    VAGUE_ADDRESS_PENALTY,
    VELOCITY_THRESHOLDS,
)
from utils.clock import IST
from utils.validators import has_repeated_digits, is_valid_phone, is_valid_pincode

# ============================================================
# COD RISK SCORER (PURE)
# ============================================================
# score = sum(weight * badness) over independent factors,
# badness in [0, 1]. No I/O, no clock reads: everything the
# scorer needs arrives in order_context / customer_profile.
# ============================================================


def rto_rate(profile: Optional[Dict[str, Any]]) -> Optional[float]:
    """RTO rate, or None when there is no cash-order history to divide by."""
    if not profile:
        return None
    cash_orders = profile.get("cash_order_count", 0)
    if cash_orders <= 0:
        return None
    return profile.get("rto_count", 0) / cash_orders


def history_badness(profile: Optional[Dict[str, Any]]) -> Tuple[float, list]:
    if not profile or profile.get("lifetime_order_count", 0) <= 0:
        return 1.0, ["new_customer"]

    rate = rto_rate(profile)
    if rate is None:
        return 0.7, ["insufficient_cod_history"]

    badness = min(1.0, rate * 2)
    flags = []
    if rate >= 0.3:
        flags.append("high_customer_rto")
    if profile.get("lifetime_order_count", 0) < 3:
        badness = max(badness, 0.5)
        flags.append("thin_history")
    return badness, flags


def phone_badness(phone: Optional[str]) -> Tuple[float, list]:
    if not phone or not is_valid_phone(phone):
        return 1.0, ["invalid_phone"]
    if has_repeated_digits(phone):
        return 0.5, ["suspicious_phone"]
    return 0.0, []


def address_badness(address: Optional[Dict[str, Any]]) -> Tuple[float, list]:
    address = address or {}

    points = 0
    structured = False
    for field, award in ADDRESS_FIELD_POINTS.items():
        value = (address.get(field) or "").strip()
        if not value:
            continue
        if field == "pincode":
            if is_valid_pincode(value):
                points += award
                structured = True
            continue
        points += award
        structured = True

    completeness = points / 100
    flags = []

    line = (address.get("line") or "").lower()
    if not structured and line:
        padded = f" {line} "
        if any(f" {marker} " in padded for marker in VAGUE_ADDRESS_MARKERS):
            completeness = max(0.0, completeness - VAGUE_ADDRESS_PENALTY)
            flags.append("vague_address")

    if completeness < 0.5:
        flags.append("incomplete_address")

    return round(1 - completeness, 4), flags


def order_value_badness(order_value: int) -> Tuple[float, list]:
    if order_value >= HIGH_ORDER_VALUE_PAISE:
        return 1.0, ["high_order_value"]
    if order_value >= ELEVATED_ORDER_VALUE_PAISE:
        return 0.5, ["elevated_order_value"]
    return 0.0, []


def velocity_badness(velocity: Optional[Dict[str, int]]) -> Tuple[float, list]:
    velocity = velocity or {}
    badness = 0.0
    flags = []
    for window, (limit, contribution) in VELOCITY_THRESHOLDS.items():
        if velocity.get(window, 0) > limit:
            badness = max(badness, contribution)
            flags.append(f"velocity_{window}")
    return badness, flags


def time_of_day_badness(placed_at) -> Tuple[float, list]:
    if placed_at is None:
        return 0.0, []
    if placed_at.astimezone(IST).hour in NIGHT_HOURS_IST:
        return 1.0, ["night_order"]
    return 0.0, []


def pincode_badness(pincode_rto_percent: Optional[float]) -> Tuple[float, list]:
    if pincode_rto_percent is None:
        pincode_rto_percent = NEUTRAL_PINCODE_RTO_PERCENT
    badness = min(1.0, max(0.0, pincode_rto_percent / 100))
    flags = ["high_rto_pincode"] if pincode_rto_percent > NEUTRAL_PINCODE_RTO_PERCENT else []
    return badness, flags


def level_for_score(score: int) -> Tuple[str, str]:
    for ceiling, level, recommendation in RISK_LEVEL_THRESHOLDS:
        if score <= ceiling:
            return level, recommendation
    return RISK_LEVEL_CEILING


def score_order(
    order_context: Dict[str, Any],
    customer_profile: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Score a cash-on-delivery order.

    order_context keys: phone, order_value (paise), address, placed_at,
    velocity {"1h", "24h", "7d"}, pincode_rto_percent, blacklisted.
    """
    evaluations = {
        "history": history_badness(customer_profile),
        "phone": phone_badness(order_context.get("phone")),
        "address": address_badness(order_context.get("address")),
        "order_value": order_value_badness(order_context.get("order_value", 0)),
        "velocity": velocity_badness(order_context.get("velocity")),
        "time_of_day": time_of_day_badness(order_context.get("placed_at")),
        "pincode": pincode_badness(order_context.get("pincode_rto_percent")),
    }

    factors = {}
    flags = []
    total = 0.0
    for name, (badness, factor_flags) in evaluations.items():
        contribution = RISK_WEIGHTS[name] * badness
        factors[name] = round(contribution, 2)
        total += contribution
        flags.extend(factor_flags)

    score = max(0, min(100, int(round(total))))

    if order_context.get("blacklisted"):
        score = 100
        flags.insert(0, "blacklisted")

    level, recommendation = level_for_score(score)

    return {
        "score": score,
        "level": level,
        "flags": flags,
        "recommendation": recommendation,
        "factors": factors,
    }
