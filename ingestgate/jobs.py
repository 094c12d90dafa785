from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, time
from typing import Protocol

from ingestgate.normalize import (
    SourceRecord,
    candidate_value,
    etf_records,
    lending_records,
    pool_records,
    prepare_tokens,
    price_records,
    protocol_tvl_records,
    stablecoin_records,
)
from ingestgate.schemas import JobParams


class MarketData(Protocol):
    async def fetch_historical_prices(self, timestamp: int, coin_ids: list[str]) -> dict[str, dict[str, object]]: ...

    async def fetch_lending_history(self, market_id: str) -> list[dict[str, object]]: ...

    async def fetch_pools(self) -> list[dict[str, object]]: ...

    async def fetch_protocol(self, slug: str) -> dict[str, object]: ...

    async def fetch_etf_flows(self, start: int, end: int) -> list[dict[str, object]]: ...

    async def fetch_stablecoin_charts(self) -> list[dict[str, object]]: ...


FetchFn = Callable[[MarketData, list[dict[str, object]], JobParams, datetime], Awaitable[list[SourceRecord]]]
PrepareFn = Callable[[list[dict[str, object]]], tuple[list[dict[str, object]], list[dict[str, object]]]]


def _unix(moment: datetime) -> int:
    return int(moment.replace(tzinfo=UTC).timestamp())


def _require_field(field: str) -> PrepareFn:
    def prepare(candidates: list[dict[str, object]]) -> tuple[list[dict[str, object]], list[dict[str, object]]]:
        valid: list[dict[str, object]] = []
        rejected: list[dict[str, object]] = []
        for candidate in candidates:
            value = candidate_value(candidate, field)
            if value is None:
                rejected.append(candidate)
            else:
                valid.append({**candidate, field: value})
        return valid, rejected

    return prepare


async def fetch_token_prices(client: MarketData, group, params: JobParams, now: datetime) -> list[SourceRecord]:
    ts = _unix(datetime.combine(params.target_day(now.date()), time.min))
    coin_ids = [str(candidate["coin_id"]) for candidate in group]
    nodes = await client.fetch_historical_prices(ts, coin_ids)
    return price_records(coin_ids, nodes, ts)


async def fetch_lending_markets(client: MarketData, group, params: JobParams, now: datetime) -> list[SourceRecord]:
    records: list[SourceRecord] = []
    for candidate in group:
        market_id = str(candidate["market_id"])
        points = await client.fetch_lending_history(market_id)
        records.extend(lending_records(market_id, points, params, today=now.date()))
    return records


async def fetch_liquidity_pools(client: MarketData, group, params: JobParams, now: datetime) -> list[SourceRecord]:
    pools = await client.fetch_pools()
    # One snapshot per hour keeps reruns idempotent.
    observed_at = now.replace(minute=0, second=0, microsecond=0)
    return pool_records([str(candidate["pool"]) for candidate in group], pools, observed_at)


async def fetch_protocol_tvl(client: MarketData, group, params: JobParams, now: datetime) -> list[SourceRecord]:
    records: list[SourceRecord] = []
    for candidate in group:
        slug = candidate_value(candidate, "slug", "protocol_id")
        detail = await client.fetch_protocol(slug)
        records.extend(protocol_tvl_records(candidate, detail, params, today=now.date()))
    return records


async def fetch_etf_flows(client: MarketData, group, params: JobParams, now: datetime) -> list[SourceRecord]:
    first, last = params.window(now.date())
    start = _unix(datetime.combine(first, time.min))
    end = _unix(datetime.combine(last, time.max))
    rows = await client.fetch_etf_flows(start, end)
    return etf_records({str(candidate["gecko_id"]) for candidate in group}, rows, params, today=now.date())


async def fetch_stablecoin_mcap(client: MarketData, group, params: JobParams, now: datetime) -> list[SourceRecord]:
    rows = await client.fetch_stablecoin_charts()
    return stablecoin_records({str(candidate["peg"]) for candidate in group}, rows, params, today=now.date())


@dataclass(frozen=True)
class JobSpec:
    name: str
    entity_kind: str
    scrub_collection: str
    candidate_file: str
    fetch: FetchFn
    prepare: PrepareFn
    # Fields identifying the entity; observed_field carries the observation time.
    natural_key: tuple[str, ...]
    observed_field: str
    value_field: str | None
    group_size: int | None = None
    rejected_code: str = "invalid_candidate"
    change_field: str | None = None
    check_freshness: bool = False
    locks_full_sync: bool = False

    def entity_id(self, record: dict[str, object]) -> str | None:
        parts: list[str] = []
        for field in self.natural_key:
            value = record.get(field)
            if value is None or not str(value).strip():
                return None
            parts.append(str(value).strip())
        return ":".join(parts)


JOBS: dict[str, JobSpec] = {
    spec.name: spec
    for spec in (
        JobSpec(
            name="token_prices",
            entity_kind="price",
            scrub_collection="token_price_scrub",
            candidate_file="token_list_active.json",
            fetch=fetch_token_prices,
            prepare=prepare_tokens,
            natural_key=("coin_id",),
            observed_field="timestamp",
            value_field="price",
            group_size=25,
            rejected_code="invalid_address",
            change_field="price",
        ),
        JobSpec(
            name="lending_markets",
            entity_kind="lending_market",
            scrub_collection="lending_market_scrub",
            candidate_file="poollist.json",
            fetch=fetch_lending_markets,
            prepare=_require_field("market_id"),
            natural_key=("market_id",),
            observed_field="timestamp",
            value_field="apyBase",
            group_size=1,
            change_field="apyBase",
            locks_full_sync=True,
        ),
        JobSpec(
            name="liquidity_pools",
            entity_kind="liquidity_pool",
            scrub_collection="cl_pool_hist_scrub",
            candidate_file="pool_list.json",
            fetch=fetch_liquidity_pools,
            prepare=_require_field("pool"),
            natural_key=("pool",),
            observed_field="timestamp",
            value_field="tvlUsd",
            check_freshness=True,
        ),
        JobSpec(
            name="protocol_tvl",
            entity_kind="protocol_tvl",
            scrub_collection="protocol_tvl_scrub",
            candidate_file="protocolchaintvllist.json",
            fetch=fetch_protocol_tvl,
            prepare=_require_field("slug"),
            natural_key=("protocol_id", "chain"),
            observed_field="ts",
            value_field="total_liquidity_usd",
            group_size=1,
            locks_full_sync=True,
        ),
        JobSpec(
            name="etf_flows",
            entity_kind="etf_flow",
            scrub_collection="etf_flow_scrub",
            candidate_file="etf_list.json",
            fetch=fetch_etf_flows,
            prepare=_require_field("gecko_id"),
            natural_key=("gecko_id",),
            observed_field="day",
            value_field="total_flow_usd",
        ),
        JobSpec(
            name="stablecoin_mcap",
            entity_kind="stablecoin_mcap",
            scrub_collection="stablecoin_mcap_scrub",
            candidate_file="stablecoin_pegs.json",
            fetch=fetch_stablecoin_mcap,
            prepare=_require_field("peg"),
            natural_key=("peg",),
            observed_field="day",
            value_field="amount_usd",
        ),
    )
}


def get_job(name: str) -> JobSpec:
    try:
        return JOBS[name]
    except KeyError:
        raise KeyError(f"unknown job '{name}'") from None
