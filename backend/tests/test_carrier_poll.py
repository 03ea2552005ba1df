import pytest

from utils import carriers
from utils.collectibles import create_collectible
from utils.errors import ExternalServiceError
from workers.carrier_poll_worker import poll_open_collections


class ScriptedPollClient:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def fetch(self, shipment_ref):
        self.calls.append(shipment_ref)
        response = self.responses[shipment_ref]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture(autouse=True)
def isolated_clients(monkeypatch):
    async def instant(_delay):
        return None

    monkeypatch.setattr("utils.retry.asyncio.sleep", instant)
    monkeypatch.setattr(carriers, "_POLL_CLIENTS", {})
    monkeypatch.setattr(carriers, "CARRIER_POLL_URLS", {})


@pytest.mark.asyncio
async def test_poll_sweep_reconciles_open_collections(db, now, account):
    for ref in ("AWB1", "AWB2", "AWB3"):
        await create_collectible(
            db,
            shipment_ref=ref,
            account_id="ACC-1",
            carrier="ekart",
            expected_base=500_00,
            now=now,
        )
    client = ScriptedPollClient({
        "AWB1": {"status": "delivered", "cod_amount": 500, "delivered_at": "2026-03-10T10:00:00+05:30"},
        "AWB2": ExternalServiceError("ekart poll failed (503)"),
        "AWB3": {"status": "in_transit"},
    })
    carriers.register_poll_client("ekart", client)

    summary = await poll_open_collections(db, carriers=["ekart", "unconfigured"], now=now)

    assert summary == {"polled": 2, "errors": 1}
    assert client.calls.count("AWB2") > 1

    statuses = {
        doc["shipment_ref"]: doc["status"]
        async for doc in db.collectibles.find({})
    }
    assert statuses == {"AWB1": "reconciled", "AWB2": "pending", "AWB3": "pending"}


@pytest.mark.asyncio
async def test_settled_collections_are_not_polled_again(db, now, seed_collectibles):
    await seed_collectibles(2, status="reconciled")
    client = ScriptedPollClient({})
    carriers.register_poll_client("velocity", client)

    summary = await poll_open_collections(db, carriers=["velocity"], now=now)

    assert summary == {"polled": 0, "errors": 0}
    assert client.calls == []


def test_http_client_built_from_configured_template(monkeypatch):
    monkeypatch.setattr(carriers, "CARRIER_POLL_URLS", {"shadowfax": "https://track.example/awb/{awb}"})

    client = carriers.get_poll_client("Shadowfax")

    assert isinstance(client, carriers.HttpPollClient)
    assert client.url_template.format(awb="X1") == "https://track.example/awb/X1"
    assert carriers.get_poll_client("shadowfax") is client
