from datetime import datetime, timezone

import pytest

from models.collectible import CollectionSource, DeliveryStatus
from utils.carriers import poll_collection
from utils.collectibles import create_collectible
from utils.errors import ValidationError
from utils.ingest import (
    normalize_file_row,
    normalize_poll_response,
    normalize_push_event,
    resolve_column_mapping,
)


def test_push_event_in_rupees_becomes_paise():
    report = normalize_push_event(
        {
            "event_id": "evt_1",
            "awb": " AWB1001 ",
            "status": "Delivered",
            "cod_amount": "1,295.50",
            "event_time": "2026-03-10T11:00:00+05:30",
        },
        carrier="velocity",
    )

    assert report.collectible_ref == "AWB1001"
    assert report.reported_amount == 1295_50
    assert report.source == CollectionSource.PUSH
    assert report.delivery_status == DeliveryStatus.DELIVERED
    assert report.reported_at == datetime(2026, 3, 10, 5, 30, tzinfo=timezone.utc)
    assert report.external_id == "evt_1"


def test_in_transit_events_are_not_reports():
    assert normalize_push_event({"awb": "AWB1", "status": "out_for_delivery"}) is None


def test_rto_event_carries_no_amount():
    report = normalize_push_event(
        {"waybill": "AWB2", "status": "RTO Delivered", "cod_amount": 500, "timestamp": "2026-03-10T10:00:00Z"}
    )
    assert report.delivery_status == DeliveryStatus.RTO
    assert report.reported_amount is None


def test_push_without_reference_or_with_bad_amount():
    with pytest.raises(ValidationError) as missing:
        normalize_push_event({"status": "delivered", "cod_amount": 10})
    assert missing.value.code == "MISSING_REFERENCE"

    with pytest.raises(ValidationError) as negative:
        normalize_push_event({"awb": "AWB1", "status": "delivered", "cod_amount": "-5", "event_time": "2026-03-10"})
    assert negative.value.code == "INVALID_AMOUNT"

    with pytest.raises(ValidationError):
        normalize_push_event({"awb": "AWB1", "status": "delivered", "cod_amount": 5})  # no timestamp


def test_naive_file_dates_are_ist():
    mapping = resolve_column_mapping("delhivery")
    report = normalize_file_row(
        {"Waybill Number": "AWB9", "Total COD": "999", "Settlement Date": "11/03/2026"},
        mapping,
        carrier="delhivery",
    )

    assert report.collectible_ref == "AWB9"
    assert report.reported_amount == 999_00
    assert report.reported_at == datetime(2026, 3, 10, 18, 30, tzinfo=timezone.utc)


def test_file_row_with_unknown_status():
    with pytest.raises(ValidationError) as exc:
        normalize_file_row(
            {"awb": "AWB9", "amount": "10", "date": "2026-03-10", "status": "lost"},
            resolve_column_mapping("generic"),
        )
    assert exc.value.code == "UNSUPPORTED_STATUS"


def test_override_names_are_tried_first():
    mapping = resolve_column_mapping("velocity", {"amount": "Net Remitted", "ref": ["Docket"]})

    assert mapping["amount"][0] == "Net Remitted"
    assert mapping["ref"][0] == "Docket"
    assert "cod_amount" in mapping["amount"]


def test_poll_response_falls_back_to_requested_ref():
    report = normalize_poll_response(
        {"status": "delivered", "collected_amount": 1300, "delivered_at": "2026-03-10T09:00:00+05:30"},
        shipment_ref="AWB1001",
        carrier="velocity",
    )
    assert report.collectible_ref == "AWB1001"
    assert report.source == CollectionSource.POLL
    assert report.reported_amount == 1300_00


class StubPollClient:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def fetch(self, shipment_ref):
        self.calls.append(shipment_ref)
        return self.response


@pytest.mark.asyncio
async def test_poll_feeds_reconciliation(db, now, account):
    await create_collectible(
        db,
        shipment_ref="AWB1001",
        account_id="ACC-1",
        carrier="velocity",
        expected_base=1300_00,
        now=now,
    )
    client = StubPollClient(
        {"awb": "AWB1001", "status": "delivered", "cod_amount": 1300, "delivered_at": "2026-03-10T09:00:00+05:30"}
    )

    result = await poll_collection(db, carrier="velocity", shipment_ref="AWB1001", client=client, now=now)

    assert client.calls == ["AWB1001"]
    assert result["outcome"] == "reconciled"
    doc = await db.collectibles.find_one({"shipment_ref": "AWB1001"})
    assert doc["reconciled_source"] == "poll"


@pytest.mark.asyncio
async def test_poll_of_shipment_still_moving(db, now):
    client = StubPollClient({"status": "in_transit"})

    result = await poll_collection(db, carrier="velocity", shipment_ref="AWB1001", client=client, now=now)

    assert result["outcome"] == "not_terminal"


@pytest.mark.asyncio
async def test_poll_response_for_another_shipment(db, now):
    client = StubPollClient({"awb": "AWB2", "status": "delivered", "cod_amount": 1, "delivered_at": "2026-03-10"})

    with pytest.raises(ValidationError) as exc:
        await poll_collection(db, carrier="velocity", shipment_ref="AWB1001", client=client, now=now)
    assert exc.value.code == "REFERENCE_MISMATCH"
