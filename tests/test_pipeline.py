from datetime import date, datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from ingestgate.db_models import LandingRecord, QualitySummaryRecord, ScrubRecord
from ingestgate.errors import CandidateLoadError, LandingWriteError, LockContentionError
from ingestgate.jobs import JOBS
from ingestgate.locks import sync_lock
from ingestgate.pipeline import IngestRunner
from ingestgate.schemas import JobParams
from ingestgate.store import get_quality_summary, upsert_landing_record


DAY = date(2026, 3, 1)
DAY_TS = 1772323200
ETH_TOKEN = "0x" + "a" * 40
ETH_COIN = f"ethereum:{ETH_TOKEN}"
SOL_TOKEN = "So11111111111111111111111111111111111111112"
SOL_COIN = f"solana:{SOL_TOKEN}"


def _price_node(price: float) -> dict[str, object]:
    return {"symbol": "AAA", "price": price, "timestamp": DAY_TS, "confidence": 0.99, "decimals": 18}


@pytest.fixture()
def token_candidates(write_candidates) -> None:
    write_candidates(
        "token_list_active.json",
        [
            {"chain": "ethereum", "address": ETH_TOKEN.upper().replace("0X", "0x")},
            {"chain": "ethereum", "address": "0xbad"},
            {"chain": "solana", "address": SOL_TOKEN},
        ],
    )


@pytest.mark.asyncio
async def test_token_batch_lands_clean_and_quarantines_rejects(
    runner: IngestRunner, db: AsyncSession, fake_market_data, token_candidates
) -> None:
    fake_market_data.prices[ETH_COIN] = _price_node(1.5)

    outcome = await runner.run_batch(JOBS["token_prices"], offset=0, limit=10, params=JobParams(day=DAY))

    assert outcome.success is True
    metrics = outcome.metrics
    assert metrics["total_records"] == 3
    assert metrics["clean_records"] == 1
    assert metrics["scrubbed_records"] == 1
    assert metrics["error_records"] == 1
    assert metrics["error_summary"] == {"invalid_address": 1, "missing_price": 1}
    assert fake_market_data.calls == [("prices", DAY_TS, (ETH_COIN, SOL_COIN))]

    landed = (await db.execute(select(LandingRecord))).scalar_one()
    assert landed.entity_id == ETH_COIN
    assert landed.observed_at == datetime(2026, 3, 1)
    assert landed.value == 1.5

    scrubbed = (await db.execute(select(ScrubRecord))).scalar_one()
    assert scrubbed.target_collection == "token_price_scrub"
    assert scrubbed.mapped_fields["coin_id"] == SOL_COIN
    assert "missing_price" in scrubbed.validation_errors

    summary = await get_quality_summary(db, job_name="token_prices", run_id=outcome.run_id)
    assert summary.total_records == 3
    assert summary.overall_quality_score == 33.33


@pytest.mark.asyncio
async def test_price_jump_against_landed_history_is_outlier(
    runner: IngestRunner, db: AsyncSession, fake_market_data, token_candidates
) -> None:
    await upsert_landing_record(
        db,
        entity_kind="price",
        entity_id=ETH_COIN,
        observed_at=datetime(2026, 2, 28),
        value=1.0,
        payload={},
        job_run_id="earlier",
    )
    fake_market_data.prices[ETH_COIN] = _price_node(1.7)

    outcome = await runner.run_batch(JOBS["token_prices"], offset=0, limit=1, params=JobParams(day=DAY))

    assert outcome.metrics["clean_records"] == 1
    assert outcome.metrics["outlier_records"] == 1


@pytest.mark.asyncio
async def test_landing_failure_reroutes_record_to_quarantine(
    runner: IngestRunner, db: AsyncSession, fake_market_data, token_candidates, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def failing_upsert(*args, **kwargs) -> None:
        raise LandingWriteError("unique violation")

    monkeypatch.setattr("ingestgate.pipeline.upsert_landing_record", failing_upsert)
    fake_market_data.prices[ETH_COIN] = _price_node(1.5)

    outcome = await runner.run_batch(JOBS["token_prices"], offset=0, limit=1, params=JobParams(day=DAY))

    assert outcome.metrics["clean_records"] == 0
    assert outcome.metrics["scrubbed_records"] == 1
    row = (await db.execute(select(ScrubRecord))).scalar_one()
    assert row.validation_errors == ["landing_write_failed"]


@pytest.mark.asyncio
async def test_fetch_failure_counts_group_as_errors(runner: IngestRunner, fake_market_data, token_candidates) -> None:
    fake_market_data.failing.add(ETH_COIN)

    outcome = await runner.run_batch(JOBS["token_prices"], offset=0, limit=10, params=JobParams(day=DAY))

    assert outcome.success is False
    assert outcome.metrics["error_records"] == 3
    assert outcome.metrics["error_summary"] == {"invalid_address": 1, "api_fetch_error": 2}


@pytest.mark.asyncio
async def test_missing_candidate_file_is_fatal(runner: IngestRunner) -> None:
    with pytest.raises(CandidateLoadError):
        await runner.run_batch(JOBS["etf_flows"], offset=0, limit=10)


@pytest.mark.asyncio
async def test_lending_series_is_filtered_and_checked_against_prior_point(
    runner: IngestRunner, fake_market_data, write_candidates
) -> None:
    write_candidates("poollist.json", [{"market_id": "m1"}])
    fake_market_data.lending["m1"] = [
        {"timestamp": "2026-02-27T00:00:00.000Z", "totalSupplyUsd": 1e6, "totalBorrowUsd": 4e5, "apyBase": 3.0},
        {"timestamp": "2026-02-28T00:00:00.000Z", "totalSupplyUsd": 1e6, "totalBorrowUsd": 5e5, "apyBase": 3.2},
        {"timestamp": "2026-03-01T00:00:00.000Z", "totalSupplyUsd": 1e6, "totalBorrowUsd": 5e5, "apyBase": 3.5},
        {"timestamp": "2026-03-02T00:00:00.000Z", "totalSupplyUsd": 1e6, "totalBorrowUsd": 5e5, "apyBase": 12000},
    ]

    single_day = await runner.run_batch(JOBS["lending_markets"], offset=0, limit=1, params=JobParams(day=DAY))
    assert single_day.metrics["total_records"] == 1
    assert single_day.metrics["clean_records"] == 1

    since = await runner.run_batch(
        JOBS["lending_markets"], offset=0, limit=1, params=JobParams(since=date(2026, 2, 28))
    )
    assert since.metrics["total_records"] == 3
    assert since.metrics["clean_records"] == 2
    assert since.metrics["scrubbed_records"] == 1
    assert since.metrics["outlier_records"] == 1
    assert since.metrics["error_summary"] == {"extreme_apy_change": 1}

    recent = await runner.run_batch(JOBS["lending_markets"], offset=0, limit=1, params=JobParams(full=True, recent_points=2))
    assert recent.metrics["total_records"] == 2


@pytest.mark.asyncio
async def test_full_sync_refuses_to_overlap(runner: IngestRunner, engine: AsyncEngine, write_candidates) -> None:
    write_candidates("poollist.json", [{"market_id": "m1"}, {"market_id": "m2"}])

    async with sync_lock(engine, "lending_markets:0-2", ttl_seconds=60):
        with pytest.raises(LockContentionError):
            await runner.run_batch(JOBS["lending_markets"], offset=0, limit=2, params=JobParams(full=True))


@pytest.mark.asyncio
async def test_protocol_tvl_skips_borrowed_and_staking_buckets(
    runner: IngestRunner, db: AsyncSession, fake_market_data, write_candidates
) -> None:
    write_candidates("protocolchaintvllist.json", [{"protocol_id": "p1", "slug": "aave", "name": "Aave"}])
    point = {"date": DAY_TS, "totalLiquidityUSD": 5e9}
    fake_market_data.protocols["aave"] = {
        "id": "p1",
        "name": "Aave",
        "category": "Lending",
        "symbol": "AAVE",
        "chainTvls": {
            "Ethereum": {"tvl": [{"date": DAY_TS - 86400, "totalLiquidityUSD": 4e9}, point]},
            "Ethereum-borrowed": {"tvl": [point]},
            "staking": {"tvl": [point]},
        },
    }

    outcome = await runner.run_batch(JOBS["protocol_tvl"], offset=0, limit=1, params=JobParams(day=DAY))

    assert outcome.metrics["total_records"] == 1
    assert outcome.metrics["clean_records"] == 1
    assert outcome.metrics["outlier_records"] == 1
    landed = (await db.execute(select(LandingRecord))).scalar_one()
    assert landed.entity_id == "p1:Ethereum"


@pytest.mark.asyncio
async def test_liquidity_pool_missing_from_snapshot_is_quarantined(
    runner: IngestRunner, db: AsyncSession, fake_market_data, write_candidates
) -> None:
    write_candidates("pool_list.json", [{"pool": "pool-1"}, {"pool": "pool-missing"}])
    fake_market_data.pools = [
        {
            "pool": "pool-1",
            "project": "uniswap-v3",
            "chain": "Ethereum",
            "symbol": "ETH-USDC",
            "tvlUsd": 5e7,
            "apy": 12.5,
            "apyBase": 10.0,
            "apyReward": 2.5,
        }
    ]

    outcome = await runner.run_batch(JOBS["liquidity_pools"], offset=0, limit=2)

    assert outcome.metrics["clean_records"] == 1
    assert outcome.metrics["scrubbed_records"] == 1
    row = (await db.execute(select(ScrubRecord))).scalar_one()
    assert row.target_collection == "cl_pool_hist_scrub"
    assert row.mapped_fields["pool_id"] == "pool-missing"
    assert "invalid_tvl" in row.validation_errors


@pytest.mark.asyncio
async def test_etf_flows_use_the_target_day_window(runner: IngestRunner, fake_market_data, write_candidates) -> None:
    write_candidates("etf_list.json", [{"gecko_id": "ibit"}])
    fake_market_data.etf_rows = [
        {"gecko_id": "ibit", "day": "2026-03-01T00:00:00.000Z", "total_flow_usd": 1.2e8},
        {"gecko_id": "ibit", "day": "2026-02-28T00:00:00.000Z", "total_flow_usd": 9e7},
        {"gecko_id": "fbtc", "day": "2026-03-01T00:00:00.000Z", "total_flow_usd": 3e7},
    ]

    outcome = await runner.run_batch(JOBS["etf_flows"], offset=0, limit=10, params=JobParams(day=DAY))

    assert fake_market_data.calls == [("etf", DAY_TS, DAY_TS + 86399)]
    assert outcome.metrics["total_records"] == 1
    assert outcome.metrics["clean_records"] == 1


@pytest.mark.asyncio
async def test_stablecoin_mcap_keeps_only_candidate_pegs(runner: IngestRunner, fake_market_data, write_candidates) -> None:
    write_candidates("stablecoin_pegs.json", ["peggedUSD"])
    fake_market_data.stablecoin_rows = [
        {"date": str(DAY_TS), "totalCirculatingUSD": {"peggedUSD": 2.5e11, "peggedEUR": 1e9}},
        {"date": str(DAY_TS - 86400), "totalCirculatingUSD": {"peggedUSD": 2.4e11}},
    ]

    outcome = await runner.run_batch(JOBS["stablecoin_mcap"], offset=0, limit=10, params=JobParams(day=DAY))

    assert outcome.metrics["total_records"] == 1
    assert outcome.metrics["clean_records"] == 1


@pytest.mark.asyncio
async def test_dispatch_runs_every_batch_and_records_totals(
    runner: IngestRunner, db: AsyncSession, fake_market_data, write_candidates
) -> None:
    addresses = ["0x" + str(digit) * 40 for digit in range(5)]
    write_candidates("token_list_active.json", [{"chain": "base", "address": address} for address in addresses])
    for address in addresses:
        fake_market_data.prices[f"base:{address}"] = _price_node(2.0)

    result = await runner.dispatch(JOBS["token_prices"], params=JobParams(day=DAY), batch_size=2, max_concurrency=2)

    assert result.summary.total_batches == 3
    assert result.summary.success is True
    assert [outcome.limit for outcome in result.summary.outcomes] == [2, 2, 1]
    assert result.metrics.clean_records == 5
    assert await db.scalar(select(func.count()).select_from(LandingRecord)) == 5

    dispatch_row = await get_quality_summary(db, job_name="token_prices_dispatch", run_id=result.summary.run_id)
    assert dispatch_row.clean_records == 5
    assert await db.scalar(select(func.count()).select_from(QualitySummaryRecord)) == 4
