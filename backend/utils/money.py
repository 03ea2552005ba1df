from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


def rupees_to_paise(amount) -> int:
    """
    Carrier payloads and MIS files quote rupees ("1,295.00", 1295, 1295.5).
    Convert through Decimal so no float rounding reaches the ledger.
    """
    if isinstance(amount, bool) or amount is None:
        raise ValueError("Amount missing")
    if isinstance(amount, int):
        return amount * 100

    text = str(amount).strip().replace(",", "").replace("₹", "")
    if text.lower().startswith("inr"):
        text = text[3:].strip()
    if not text:
        raise ValueError("Amount missing")
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount}")
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount}")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fee_from_bps(amount_paise: int, bps: int) -> int:
    """Basis-point fee, rounded half-up to the nearest paisa."""
    return (amount_paise * bps + 5000) // 10000


def percent(part: int, whole: int):
    if not whole:
        return None
    return abs(part) * 100.0 / whole
