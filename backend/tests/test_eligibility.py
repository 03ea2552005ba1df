import pytest

from utils.eligibility import check_eligibility, evaluate_eligibility, gather_account_metrics
from utils.errors import NotFoundError


def _metrics(**overrides):
    metrics = {
        "account_age_days": 95,
        "cash_order_count": 360,
        "monthly_cod_orders": 120,
        "monthly_cod_volume": 12_00_000_00,
        "rto_percent": 18.0,
        "dispute_percent": 0.0,
    }
    metrics.update(overrides)
    return metrics


def test_high_rto_falls_back_to_standard():
    result = evaluate_eligibility(_metrics())

    assert result["eligible"] is False
    assert result["tier"] == "standard"
    assert result["reasons"] == ["rto_rate_too_high"]
    assert result["standard_allowed"] is True


def test_strictest_qualifying_tier_wins():
    result = evaluate_eligibility(_metrics(
        account_age_days=400,
        cash_order_count=1800,
        monthly_cod_orders=600,
        rto_percent=8.0,
        dispute_percent=1.0,
    ))

    assert result["eligible"] is True
    assert result["tier"] == "t_plus_1"
    assert result["fee_bps"] == 200
    assert result["lookback_days"] == 1
    assert result["credit_ceiling"] == 12_00_000_00


def test_middle_tier():
    result = evaluate_eligibility(_metrics(rto_percent=11.0, account_age_days=200, monthly_cod_orders=350))

    assert result["tier"] == "t_plus_2"
    assert result["credit_ceiling"] == 9_00_000_00


def test_no_cash_orders_is_not_zero_rto():
    result = evaluate_eligibility(_metrics(cash_order_count=0, rto_percent=None, monthly_cod_orders=0))

    assert result["eligible"] is False
    assert "insufficient_cod_history" in result["reasons"]
    assert "rto_rate_too_high" not in result["reasons"]


def test_every_failing_threshold_is_reported():
    result = evaluate_eligibility(_metrics(account_age_days=10, monthly_cod_orders=5, dispute_percent=9.0))

    assert result["reasons"] == [
        "account_too_new",
        "insufficient_order_volume",
        "rto_rate_too_high",
        "dispute_rate_too_high",
    ]


@pytest.mark.asyncio
async def test_metrics_from_collections(db, now, account, seed_collectibles):
    await seed_collectibles(297, status="paid")
    await seed_collectibles(3, status="rto")
    await seed_collectibles(5, status="reconciled", created_days_ago=120)  # outside the window

    metrics = await gather_account_metrics(db, "ACC-1", now)

    assert metrics["cash_order_count"] == 300
    assert metrics["monthly_cod_orders"] == 100.0
    assert metrics["monthly_cod_volume"] == 1000_00 * 100
    assert metrics["rto_percent"] == 1.0
    assert metrics["dispute_percent"] == 0.0
    assert metrics["account_age_days"] > 365

    result = await check_eligibility(db, "ACC-1", now)
    assert result["tier"] == "t_plus_3"
    assert result["metrics"]["cash_order_count"] == 300


@pytest.mark.asyncio
async def test_account_without_history(db, now, account):
    metrics = await gather_account_metrics(db, "ACC-1", now)

    assert metrics["cash_order_count"] == 0
    assert metrics["rto_percent"] is None
    assert not evaluate_eligibility(metrics)["eligible"]


@pytest.mark.asyncio
async def test_unknown_account(db, now):
    with pytest.raises(NotFoundError):
        await gather_account_metrics(db, "ACC-404", now)
