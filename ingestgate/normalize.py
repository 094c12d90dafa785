from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import date, datetime
import json
from pathlib import Path
import re

from ingestgate.errors import CandidateLoadError
from ingestgate.schemas import JobParams, parse_timestamp


EVM_CHAINS = frozenset(
    {
        "ethereum",
        "unichain",
        "base",
        "arbitrum",
        "optimism",
        "polygon",
        "bsc",
        "avalanche",
        "linea",
        "scroll",
        "blast",
        "fantom",
        "celo",
        "gnosis",
        "zksync era",
        "metis",
        "mantle",
        "aurora",
    }
)
EVM_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
GENERIC_ADDRESS = re.compile(r"^[A-Za-z0-9:_-]{4,}$")
SKIPPED_TVL_BUCKETS = ("borrowed", "staking", "pool2")


@dataclass(frozen=True)
class SourceRecord:
    record: dict[str, object]
    raw: object


def load_candidates(path: Path) -> list[dict[str, object]]:
    if not path.exists():
        raise CandidateLoadError(f"candidate file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as infile:
            payload = json.load(infile)
    except (OSError, json.JSONDecodeError) as exc:
        raise CandidateLoadError(f"candidate file {path} is unreadable: {exc}") from exc

    if not isinstance(payload, list):
        raise CandidateLoadError(f"candidate file {path} must hold a JSON array")
    candidates: list[dict[str, object]] = []
    for item in payload:
        # Plain identifier lists are accepted too.
        if isinstance(item, str):
            candidates.append({"id": item})
        elif isinstance(item, dict):
            candidates.append(item)
        else:
            raise CandidateLoadError(f"candidate file {path} holds an entry that is neither object nor string")
    return candidates


def chunk(items: list[dict[str, object]], size: int) -> Iterator[list[dict[str, object]]]:
    for start in range(0, len(items), max(size, 1)):
        yield items[start : start + size]


def is_valid_address(chain: str, address: object) -> bool:
    if not isinstance(address, str):
        return False
    address = address.strip()
    if chain in EVM_CHAINS:
        return bool(EVM_ADDRESS.match(address))
    return bool(GENERIC_ADDRESS.match(address))


def coin_id(chain: str, address: str) -> str:
    address = address.strip()
    # Non-EVM addresses are case sensitive.
    return f"{chain}:{address.lower() if chain in EVM_CHAINS else address}"


def candidate_value(candidate: dict[str, object], *fields: str) -> str | None:
    for field in (*fields, "id"):
        value = candidate.get(field)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def prepare_tokens(candidates: list[dict[str, object]]) -> tuple[list[dict[str, object]], list[dict[str, object]]]:
    valid: list[dict[str, object]] = []
    rejected: list[dict[str, object]] = []
    for candidate in candidates:
        chain = str(candidate.get("chain") or "").strip().lower()
        address = candidate.get("address")
        if not chain or not is_valid_address(chain, address):
            rejected.append(candidate)
            continue
        valid.append({**candidate, "coin_id": coin_id(chain, str(address))})
    return valid, rejected


def _day_of(value: object) -> date | None:
    moment = parse_timestamp(value)
    return moment.date() if moment else None


def keep_recent(records: list[SourceRecord], recent_points: int | None, *, series_key: str, order_key: str) -> list[SourceRecord]:
    if not recent_points or recent_points <= 0:
        return records
    by_series: dict[object, list[SourceRecord]] = {}
    for item in records:
        by_series.setdefault(item.record.get(series_key), []).append(item)

    kept: set[int] = set()
    for series in by_series.values():
        ordered = sorted(series, key=lambda item: parse_timestamp(item.record.get(order_key)) or datetime.min)
        kept.update(id(item) for item in ordered[-recent_points:])
    return [item for item in records if id(item) in kept]


def price_records(coin_ids: list[str], nodes: dict[str, dict[str, object]], fallback_ts: int) -> list[SourceRecord]:
    records: list[SourceRecord] = []
    for identifier in coin_ids:
        node = nodes.get(identifier)
        if not isinstance(node, dict):
            # Keep the gap visible: a missing price lands in quarantine, not nowhere.
            records.append(SourceRecord({"coin_id": identifier, "price": None, "timestamp": fallback_ts}, {"coin_id": identifier}))
            continue
        records.append(
            SourceRecord(
                {
                    "coin_id": identifier,
                    "symbol": node.get("symbol"),
                    "price": node.get("price"),
                    "timestamp": node.get("timestamp") if node.get("timestamp") is not None else fallback_ts,
                    "confidence": node.get("confidence"),
                    "decimals": node.get("decimals"),
                },
                node,
            )
        )
    return records


LENDING_FIELDS = (
    "totalSupplyUsd",
    "totalBorrowUsd",
    "debtCeilingUsd",
    "apyBase",
    "apyReward",
    "apyBaseBorrow",
    "apyRewardBorrow",
)


def lending_records(market_id: str, points: Iterable[dict[str, object]], params: JobParams, *, today: date) -> list[SourceRecord]:
    records: list[SourceRecord] = []
    for point in points:
        observed = parse_timestamp(point.get("timestamp"))
        if observed is None or not params.keeps(observed.date(), today=today):
            continue
        record: dict[str, object] = {"market_id": market_id, "timestamp": observed.isoformat()}
        for field in LENDING_FIELDS:
            record[field] = point.get(field)
        records.append(SourceRecord(record, point))
    return keep_recent(records, params.recent_points, series_key="market_id", order_key="timestamp")


def pool_records(pool_ids: list[str], pools: Iterable[dict[str, object]], observed_at: datetime) -> list[SourceRecord]:
    by_id = {str(pool.get("pool")): pool for pool in pools if pool.get("pool")}
    stamp = observed_at.isoformat()
    records: list[SourceRecord] = []
    for pool_id in pool_ids:
        node = by_id.get(pool_id)
        if node is None:
            records.append(SourceRecord({"pool": pool_id, "timestamp": stamp}, {"pool": pool_id}))
            continue
        records.append(
            SourceRecord(
                {
                    "pool": pool_id,
                    "timestamp": stamp,
                    "project": node.get("project"),
                    "chain": node.get("chain"),
                    "symbol": node.get("symbol"),
                    "tvlUsd": node.get("tvlUsd"),
                    "apy": node.get("apy"),
                    "apyBase": node.get("apyBase"),
                    "apyReward": node.get("apyReward"),
                    "url": node.get("url"),
                    "lastUpdated": node.get("lastUpdated") or stamp,
                },
                node,
            )
        )
    return records


def is_skipped_bucket(chain: str) -> bool:
    lowered = chain.lower()
    return any(lowered == bucket or lowered.endswith(f"-{bucket}") for bucket in SKIPPED_TVL_BUCKETS)


def protocol_tvl_records(
    candidate: dict[str, object],
    detail: dict[str, object],
    params: JobParams,
    *,
    today: date,
) -> list[SourceRecord]:
    protocol_id = candidate_value(candidate, "protocol_id") or detail.get("id") or detail.get("slug")
    chain_tvls = detail.get("chainTvls")
    if not isinstance(chain_tvls, dict):
        return []

    records: list[SourceRecord] = []
    for chain, series in chain_tvls.items():
        if is_skipped_bucket(chain) or not isinstance(series, dict):
            continue
        for point in series.get("tvl") or []:
            if not isinstance(point, dict):
                continue
            day = _day_of(point.get("date"))
            if day is None or not params.keeps(day, today=today):
                continue
            records.append(
                SourceRecord(
                    {
                        "protocol_id": protocol_id,
                        "protocol_name": detail.get("name") or candidate.get("name"),
                        "chain": chain,
                        "series_type": "tvl",
                        "ts": day.isoformat(),
                        "total_liquidity_usd": point.get("totalLiquidityUSD"),
                        "category": detail.get("category"),
                        "symbol": detail.get("symbol"),
                    },
                    {"chain": chain, **point},
                )
            )
    return keep_recent(records, params.recent_points, series_key="chain", order_key="ts")


def etf_records(gecko_ids: set[str], rows: Iterable[dict[str, object]], params: JobParams, *, today: date) -> list[SourceRecord]:
    records: list[SourceRecord] = []
    for row in rows:
        gecko_id = row.get("gecko_id")
        day = _day_of(str(row.get("day") or "")[:10])
        if gecko_id not in gecko_ids or day is None or not params.keeps(day, today=today):
            continue
        records.append(
            SourceRecord(
                {"gecko_id": gecko_id, "day": day.isoformat(), "total_flow_usd": row.get("total_flow_usd")},
                row,
            )
        )
    return keep_recent(records, params.recent_points, series_key="gecko_id", order_key="day")


def stablecoin_records(pegs: set[str], rows: Iterable[dict[str, object]], params: JobParams, *, today: date) -> list[SourceRecord]:
    records: list[SourceRecord] = []
    for row in rows:
        day = _day_of(row.get("date"))
        if day is None or not params.keeps(day, today=today):
            continue
        circulating = row.get("totalCirculatingUSD")
        if not isinstance(circulating, dict):
            continue
        for peg, amount in circulating.items():
            if peg not in pegs:
                continue
            records.append(
                SourceRecord(
                    {"day": day.isoformat(), "peg": peg, "amount_usd": amount},
                    {"date": row.get("date"), "peg": peg, "amount": amount},
                )
            )
    return keep_recent(records, params.recent_points, series_key="peg", order_key="day")
