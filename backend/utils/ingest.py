"""
Collection ingest adapter.

Carrier webhooks, poll responses and MIS file rows each have their own
shape; everything is normalized into a CollectionReport here so the
reconciliation engine never branches on where a report came from.
"""
import logging

from pydantic import ValidationError as PydanticValidationError

from models.collectible import CollectionReport, CollectionSource, DeliveryStatus
from utils.errors import ValidationError
from utils.money import rupees_to_paise

logger = logging.getLogger(__name__)

DELIVERED_STATUSES = {"delivered", "dl", "cod_collected", "collected", "cod_remitted"}
RTO_STATUSES = {"rto", "rto_delivered", "rto_initiated", "returned", "return_to_origin"}

PUSH_REF_KEYS = ("awb", "awb_number", "waybill", "tracking_number", "shipment_ref")
PUSH_AMOUNT_KEYS = ("cod_amount", "collected_amount", "cod_collected", "amount")
PUSH_TIME_KEYS = ("event_time", "delivered_at", "timestamp", "updated_at")

# MIS column presets per carrier. Header matching ignores case, spaces,
# underscores and dashes.
COLUMN_PRESETS = {
    "velocity": {
        "ref": ["awb", "awb_number", "tracking_number", "waybill", "shipment_id",
                "ref_no", "refno", "reference_no", "reference_number"],
        "amount": ["cod_amount", "cod_collected", "collected_amount", "amount", "net_amount",
                   "collectible", "value", "amount_received"],
        "date": ["remittance_date", "settlement_date", "delivery_date", "date"],
        "utr": ["utr", "utr_number", "reference_number", "transaction_id", "ref_no"],
        "status": ["status", "shipment_status", "delivery_status"],
    },
    "delhivery": {
        "ref": ["awb", "waybill_number", "cn", "reference_number", "ref_no", "refno"],
        "amount": ["cod_amount", "total_cod", "amount_collected", "amount_received", "value"],
        "date": ["settlement_date", "remittance_date", "date"],
        "utr": ["utr_no", "utr_number", "reference_no", "transaction_id"],
        "status": ["status", "shipment_status"],
    },
    "generic": {
        "ref": ["awb", "awb_number", "tracking", "tracking_number", "waybill", "ref", "refno",
                "ref_no", "reference", "reference_no", "reference_number"],
        "amount": ["cod", "cod_amount", "amount", "collected", "value", "total", "net_amount",
                   "amount_received"],
        "date": ["date", "settlement_date", "remittance_date", "paid_date", "delivery_date"],
        "utr": ["utr", "utr_number", "reference", "transaction_id", "ref_no", "reference_no"],
        "status": ["status", "delivery_status"],
    },
}


def normalize_header(key) -> str:
    return "".join(ch for ch in str(key or "").lower() if ch not in " _-")


def resolve_column_mapping(carrier: str | None, override: dict | None = None) -> dict:
    """Carrier preset (generic when unknown) with override candidates tried first."""
    base = COLUMN_PRESETS.get((carrier or "").lower(), COLUMN_PRESETS["generic"])
    if not override:
        return {field: list(names) for field, names in base.items()}

    merged = {}
    for field, names in base.items():
        extra = override.get(field) or []
        if isinstance(extra, str):
            extra = [extra]
        merged[field] = list(dict.fromkeys([*extra, *names]))
    return merged


def _pick(row: dict, candidates) -> object:
    index = {normalize_header(k): v for k, v in row.items()}
    for name in candidates:
        value = index.get(normalize_header(name))
        if value not in (None, ""):
            return value
    return None


def _first(payload: dict, keys) -> object:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def delivery_status_for(raw) -> DeliveryStatus | None:
    """Terminal status, or None for in-transit style events."""
    status = str(raw or "").strip().lower().replace(" ", "_").replace("-", "_")
    if status in DELIVERED_STATUSES:
        return DeliveryStatus.DELIVERED
    if status in RTO_STATUSES:
        return DeliveryStatus.RTO
    return None


def _build(**fields) -> CollectionReport:
    try:
        return CollectionReport(**fields)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid collection report: {e.errors()[0].get('msg')}")


def _amount(raw) -> int | None:
    if raw in (None, ""):
        return None
    try:
        paise = rupees_to_paise(raw)
    except ValueError as e:
        raise ValidationError(str(e), code="INVALID_AMOUNT")
    if paise < 0:
        raise ValidationError("Collected amount cannot be negative", code="INVALID_AMOUNT")
    return paise


# =========================================================
# PUSH
# =========================================================


def normalize_push_event(payload: dict, carrier: str | None = None) -> CollectionReport | None:
    if not isinstance(payload, dict):
        raise ValidationError("Carrier event must be a JSON object")

    status = delivery_status_for(payload.get("status") or payload.get("event"))
    if status is None:
        return None

    ref = _first(payload, PUSH_REF_KEYS)
    if not ref:
        raise ValidationError("Carrier event has no shipment reference", code="MISSING_REFERENCE")

    return _build(
        collectible_ref=str(ref),
        reported_amount=_amount(_first(payload, PUSH_AMOUNT_KEYS)) if status == DeliveryStatus.DELIVERED else None,
        reported_at=_first(payload, PUSH_TIME_KEYS),
        source=CollectionSource.PUSH,
        delivery_status=status,
        carrier=carrier or payload.get("carrier"),
        external_id=payload.get("event_id"),
    )


# =========================================================
# POLL
# =========================================================


def normalize_poll_response(response: dict, *, shipment_ref: str, carrier: str) -> CollectionReport | None:
    if not isinstance(response, dict):
        raise ValidationError("Poll response must be a JSON object")

    status = delivery_status_for(response.get("status"))
    if status is None:
        return None

    return _build(
        collectible_ref=str(_first(response, PUSH_REF_KEYS) or shipment_ref),
        reported_amount=_amount(_first(response, PUSH_AMOUNT_KEYS)) if status == DeliveryStatus.DELIVERED else None,
        reported_at=_first(response, PUSH_TIME_KEYS),
        source=CollectionSource.POLL,
        delivery_status=status,
        carrier=carrier,
    )


# =========================================================
# FILE ROW
# =========================================================


def normalize_file_row(row: dict, mapping: dict, *, carrier: str | None = None, default_reported_at=None) -> CollectionReport:
    """
    One MIS row. Rows carry remitted cash, so a missing status means delivered.
    Raises ValidationError for rows that cannot be turned into a report.
    """
    ref = _pick(row, mapping["ref"])
    if ref in (None, ""):
        raise ValidationError("Row has no shipment reference", code="MISSING_REFERENCE")

    status = DeliveryStatus.DELIVERED
    raw_status = _pick(row, mapping.get("status", []))
    if raw_status not in (None, ""):
        status = delivery_status_for(raw_status)
        if status is None:
            raise ValidationError(f"Unsupported status {raw_status}", code="UNSUPPORTED_STATUS")

    amount = _amount(_pick(row, mapping["amount"]))
    if status == DeliveryStatus.DELIVERED and amount is None:
        raise ValidationError("Row has no collected amount", code="INVALID_AMOUNT")

    reported_at = _pick(row, mapping.get("date", [])) or default_reported_at
    if reported_at is None:
        raise ValidationError("Row has no date", code="MISSING_DATE")

    return _build(
        collectible_ref=str(ref).strip(),
        reported_amount=amount if status == DeliveryStatus.DELIVERED else None,
        reported_at=reported_at,
        source=CollectionSource.FILE,
        delivery_status=status,
        carrier=carrier,
        external_id=(str(_pick(row, mapping.get("utr", [])) or "") or None),
    )
