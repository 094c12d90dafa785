from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class FieldMapping:
    source_field: str
    target_column: str


# Columns every scrub row carries regardless of collection.
DIAGNOSTIC_COLUMNS = frozenset(
    {
        "id",
        "target_collection",
        "validation_errors",
        "quality_score",
        "is_outlier",
        "outlier_reason",
        "original_data",
        "processed_at",
        "job_run_id",
        "retry_count",
    }
)


def _fields(*pairs: tuple[str, str]) -> tuple[FieldMapping, ...]:
    return tuple(FieldMapping(source, target) for source, target in pairs)


SCRUB_FIELD_MAPPINGS: dict[str, tuple[FieldMapping, ...]] = {
    "token_price_scrub": _fields(
        ("coin_id", "coin_id"),
        ("symbol", "symbol"),
        ("price", "price_usd"),
        ("confidence", "confidence"),
        ("decimals", "decimals"),
        ("timestamp", "price_timestamp"),
    ),
    "lending_market_scrub": _fields(
        ("market_id", "market_id"),
        ("timestamp", "ts"),
        ("totalSupplyUsd", "total_supply_usd"),
        ("totalBorrowUsd", "total_borrow_usd"),
        ("debtCeilingUsd", "debt_ceiling_usd"),
        ("apyBase", "apy_base_supply"),
        ("apyReward", "apy_reward_supply"),
        ("apyBaseBorrow", "apy_base_borrow"),
        ("apyRewardBorrow", "apy_reward_borrow"),
    ),
    "protocol_tvl_scrub": _fields(
        ("protocol_id", "protocol_id"),
        ("protocol_name", "protocol_name"),
        ("chain", "chain"),
        ("series_type", "series_type"),
        ("ts", "ts"),
        ("total_liquidity_usd", "total_liquidity_usd"),
        ("category", "category"),
        ("symbol", "symbol"),
    ),
    "etf_flow_scrub": _fields(
        ("gecko_id", "gecko_id"),
        ("day", "day"),
        ("total_flow_usd", "total_flow_usd"),
    ),
    "stablecoin_mcap_scrub": _fields(
        ("day", "day"),
        ("peg", "peg"),
        ("amount_usd", "amount_usd"),
    ),
    "cl_pool_hist_scrub": _fields(
        ("pool", "pool_id"),
        ("timestamp", "ts"),
        ("project", "project"),
        ("chain", "chain"),
        ("symbol", "symbol"),
        ("tvlUsd", "tvl_usd"),
        ("apy", "apy"),
        ("apyBase", "apy_base"),
        ("url", "url"),
    ),
}


def validate_mappings(mappings: dict[str, tuple[FieldMapping, ...]]) -> None:
    for collection, fields in mappings.items():
        if not collection:
            raise ValueError("scrub collection names must be non-empty")
        if not fields:
            raise ValueError(f"scrub collection '{collection}' has no field mappings")

        targets = [mapping.target_column for mapping in fields]
        duplicates = sorted({target for target in targets if targets.count(target) > 1})
        if duplicates:
            raise ValueError(f"scrub collection '{collection}' maps twice onto: {', '.join(duplicates)}")

        reserved = sorted(set(targets) & DIAGNOSTIC_COLUMNS)
        if reserved:
            raise ValueError(f"scrub collection '{collection}' shadows diagnostic columns: {', '.join(reserved)}")


def map_fields(fields: tuple[FieldMapping, ...], record: Mapping[str, object]) -> dict[str, object]:
    mapped: dict[str, object] = {}
    for mapping in fields:
        value = record.get(mapping.source_field)
        if value is None:
            continue
        mapped[mapping.target_column] = value
    return mapped


validate_mappings(SCRUB_FIELD_MAPPINGS)
