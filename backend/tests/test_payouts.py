import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from config.env import (
    EXTERNAL_BACKOFF_BASE_SECONDS,
    EXTERNAL_MAX_ATTEMPTS,
    PAYOUT_LOCK_TTL_SECONDS,
    PROVIDER_TIMEOUT_SECONDS,
)
from utils.batching import approve_batch, create_remittance_batch
from utils.errors import AlreadyInProgress, ExternalTimeoutError, InvalidTransition, NotFoundError, PayoutError
from utils.payout_coordinator import (
    apply_settlement,
    execute_payout,
    payout_key,
    retry_failed_payout,
    sync_payout_status,
)
from utils.payouts import settlement_status


class FakeProvider:
    def __init__(self, status="processing", error=None):
        self.status = status
        self.error = error
        self.calls = []
        self.settled = {}

    def initiate_payout(self, *, target, amount, idempotency_key, metadata):
        self.calls.append({"amount": amount, "key": idempotency_key, "target": target})
        if self.error:
            raise self.error
        return {"provider_reference": f"pout_{len(self.calls)}", "status": self.status}

    def fetch_payout_status(self, reference):
        return {"provider_reference": reference, "status": self.settled.get(reference, "processing")}


@pytest.fixture(autouse=True)
def no_backoff_sleep(monkeypatch):
    async def instant(_delay):
        return None

    monkeypatch.setattr("utils.retry.asyncio.sleep", instant)


@pytest_asyncio.fixture
async def approved_batch(db, now, account, seed_collectibles):
    await seed_collectibles(2, amount=1300_00, shipping_cost=60_00)
    batch = await create_remittance_batch(db, account_id="ACC-1", now=now)
    await approve_batch(db, batch["_id"], actor="ops@acme")
    return batch


@pytest.mark.parametrize(
    "provider_status,expected",
    [
        ("processed", "completed"),
        ("reversed", "failed"),
        ("rejected", "failed"),
        ("queued", None),
        (None, None),
    ],
)
def test_settlement_status_mapping(provider_status, expected):
    assert settlement_status(provider_status) == expected


@pytest.mark.asyncio
async def test_payout_moves_money_once(db, approved_batch):
    provider = FakeProvider()

    first = await execute_payout(db, approved_batch["_id"], provider=provider)
    second = await execute_payout(db, approved_batch["_id"], provider=provider)

    assert len(provider.calls) == 1
    assert provider.calls[0]["key"] == payout_key(approved_batch["_id"], 1)
    assert provider.calls[0]["amount"] == approved_batch["net_payable"]
    assert first["provider_reference"] == second["provider_reference"] == "pout_1"
    assert first["idempotent_replay"] is False
    assert second["idempotent_replay"] is True

    batch = await db.remittance_batches.find_one({"_id": approved_batch["_id"]})
    assert batch["status"] == "payout_initiated"
    assert batch["payout"]["provider_reference"] == "pout_1"


@pytest.mark.asyncio
async def test_payout_needs_approval(db, now, account, seed_collectibles):
    await seed_collectibles(1)
    batch = await create_remittance_batch(db, account_id="ACC-1", now=now)

    with pytest.raises(InvalidTransition):
        await execute_payout(db, batch["_id"], provider=FakeProvider())


@pytest.mark.asyncio
async def test_settlement_replay_is_harmless(db, approved_batch):
    await execute_payout(db, approved_batch["_id"], provider=FakeProvider())

    for _ in range(3):
        batch = await apply_settlement(
            db,
            provider_reference="pout_1",
            settlement_token="evt_1",
            final_status="completed",
        )

    assert batch["status"] == "completed"
    assert len([t for t in batch["timeline"] if t["status"] == "completed"]) == 1
    assert await db.collectibles.count_documents({"batch_id": approved_batch["_id"], "status": "paid"}) == 2

    # a late contradicting callback does not move a settled batch
    late = await apply_settlement(db, provider_reference="pout_1", settlement_token="evt_2", final_status="failed")
    assert late["status"] == "completed"


@pytest.mark.asyncio
async def test_immediately_processed_payout_completes(db, approved_batch):
    result = await execute_payout(db, approved_batch["_id"], provider=FakeProvider(status="processed"))

    assert result["provider_reference"] == "pout_1"
    batch = await db.remittance_batches.find_one({"_id": approved_batch["_id"]})
    assert batch["status"] == "completed"


@pytest.mark.asyncio
async def test_rejected_payout_fails_then_retries_with_new_key(db, approved_batch):
    batch_id = approved_batch["_id"]
    rejecting = FakeProvider(error=PayoutError("beneficiary account closed"))

    with pytest.raises(PayoutError):
        await execute_payout(db, batch_id, provider=rejecting)

    batch = await db.remittance_batches.find_one({"_id": batch_id})
    assert batch["status"] == "failed"
    assert batch["payout"]["failure_reason"] == "beneficiary account closed"
    assert len(rejecting.calls) == 1

    await retry_failed_payout(db, batch_id, actor="ops@acme")
    provider = FakeProvider()
    result = await execute_payout(db, batch_id, provider=provider)

    assert provider.calls[0]["key"] == payout_key(batch_id, 2)
    assert result["provider_reference"] == "pout_1"
    attempts = await db.payout_attempts.find({"batch_id": batch_id}).sort("attempt", 1).to_list(None)
    assert [a["status"] for a in attempts] == ["rejected", "accepted"]


@pytest.mark.asyncio
async def test_timeout_leaves_batch_for_manual_follow_up(db, approved_batch):
    batch_id = approved_batch["_id"]
    provider = FakeProvider(error=ExternalTimeoutError("provider timed out"))

    with pytest.raises(ExternalTimeoutError):
        await execute_payout(db, batch_id, provider=provider)

    assert len(provider.calls) > 1
    assert {c["key"] for c in provider.calls} == {payout_key(batch_id, 1)}

    batch = await db.remittance_batches.find_one({"_id": batch_id})
    assert batch["status"] == "approved"
    assert batch["payout"]["requires_manual_intervention"] is True

    attempt = await db.payout_attempts.find_one({"_id": payout_key(batch_id, 1)})
    assert attempt["status"] == "unknown"

    # a later call reuses the same key
    recovered = FakeProvider()
    await execute_payout(db, batch_id, provider=recovered)
    assert recovered.calls[0]["key"] == payout_key(batch_id, 1)


@pytest.mark.asyncio
async def test_missing_payout_target(db, approved_batch):
    await db.accounts.update_one({"_id": "ACC-1"}, {"$unset": {"payout_target": ""}})

    with pytest.raises(NotFoundError):
        await execute_payout(db, approved_batch["_id"], provider=FakeProvider())


@pytest.mark.asyncio
async def test_status_sync_settles_in_flight_batches(db, approved_batch):
    provider = FakeProvider()
    await execute_payout(db, approved_batch["_id"], provider=provider)

    assert await sync_payout_status(db, provider=provider) == {"checked": 1, "settled": 0, "errors": 0}

    provider.settled["pout_1"] = "processed"
    assert await sync_payout_status(db, provider=provider) == {"checked": 1, "settled": 1, "errors": 0}

    batch = await db.remittance_batches.find_one({"_id": approved_batch["_id"]})
    assert batch["status"] == "completed"


class LeaseLosingProvider(FakeProvider):
    """Another worker takes the payout lease over while the call is in flight."""

    def __init__(self, store, lock_name, new_owner="successor"):
        super().__init__()
        self.store = store
        self.lock_name = lock_name
        self.new_owner = new_owner

    def initiate_payout(self, **kwargs):
        self.store.locks.update_one({"_id": self.lock_name}, {"$set": {"owner": self.new_owner}})
        return super().initiate_payout(**kwargs)


def test_payout_lease_outlives_provider_retry_window():
    backoff = sum(EXTERNAL_BACKOFF_BASE_SECONDS * 2 ** i for i in range(EXTERNAL_MAX_ATTEMPTS - 1))
    worst_case = EXTERNAL_MAX_ATTEMPTS * PROVIDER_TIMEOUT_SECONDS + backoff

    assert PAYOUT_LOCK_TTL_SECONDS > worst_case


@pytest.mark.asyncio
async def test_payout_is_not_committed_after_lease_taken_over(db, approved_batch):
    batch_id = approved_batch["_id"]
    lock_name = f"payout:{batch_id}"
    provider = LeaseLosingProvider(db.sync, lock_name)

    with pytest.raises(AlreadyInProgress):
        await execute_payout(db, batch_id, provider=provider)

    batch = await db.remittance_batches.find_one({"_id": batch_id})
    assert batch["status"] == "approved"
    assert (await db.locks.find_one({"_id": lock_name}))["owner"] == "successor"

    # once the other worker is gone, the accepted key is committed without a second transfer
    await db.locks.delete_one({"_id": lock_name})
    follow_up = FakeProvider()
    result = await execute_payout(db, batch_id, provider=follow_up)

    assert follow_up.calls == []
    assert result == {
        "batch_id": batch_id,
        "provider_reference": "pout_1",
        "status": "payout_initiated",
        "idempotent_replay": True,
    }
    batch = await db.remittance_batches.find_one({"_id": batch_id})
    assert batch["status"] == "payout_initiated"
    assert batch["payout"]["provider_reference"] == "pout_1"


@pytest.mark.asyncio
async def test_payout_commits_when_expired_lease_was_not_taken(db, approved_batch):
    batch_id = approved_batch["_id"]
    lock_name = f"payout:{batch_id}"

    class SlowProvider(FakeProvider):
        def initiate_payout(self, **kwargs):
            # lease ran out during the call but nobody claimed it
            db.sync.locks.update_one({"_id": lock_name}, {"$set": {"expires_at": datetime(2020, 1, 1, tzinfo=timezone.utc)}})
            return super().initiate_payout(**kwargs)

    result = await execute_payout(db, batch_id, provider=SlowProvider())

    assert result["status"] == "payout_initiated"
    assert result["idempotent_replay"] is False
    assert await db.locks.count_documents({"_id": lock_name}) == 0


@pytest.mark.asyncio
async def test_concurrent_payouts_call_provider_once(db, approved_batch):
    provider = FakeProvider()

    results = await asyncio.gather(
        execute_payout(db, approved_batch["_id"], provider=provider),
        execute_payout(db, approved_batch["_id"], provider=provider),
        return_exceptions=True,
    )

    payouts = [r for r in results if isinstance(r, dict)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(payouts) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], AlreadyInProgress)
    assert len(provider.calls) == 1

    batch = await db.remittance_batches.find_one({"_id": approved_batch["_id"]})
    assert batch["status"] == "payout_initiated"
