from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
import math

from ingestgate.quality import PRICE_THRESHOLD, PROTOCOL_THRESHOLD, Violation, score_violations
from ingestgate.schemas import ValidationContext, ValidationResult, parse_timestamp


OUTLIER_CHANGE_FRACTION = 0.5
EXTREME_CHANGE_FRACTION = 0.9
CHANGE_OUTLIER_PENALTY = 20
EXTREME_CHANGE_PENALTY = 40
FRESHNESS_PENALTY_CAP = 30

MAX_USD_AMOUNT = 1e15
MAX_PRICE_USD = 1e9
HIGH_TVL_USD = 1e9
MAX_TVL_USD = 500e9
HIGH_POOL_TVL_USD = 100e9
LARGE_ETF_FLOW_USD = 5e9
HIGH_STABLECOIN_MCAP_USD = 500e9
OUTLIER_APY = 10_000
MAX_APY = 25_000

LENDING_AMOUNT_FIELDS = (
    ("totalSupplyUsd", "negative_supply"),
    ("totalBorrowUsd", "negative_borrow"),
    ("debtCeilingUsd", "negative_debt_ceiling"),
)
LENDING_APY_FIELDS = (
    ("apyBase", "apy_base"),
    ("apyReward", "apy_reward"),
    ("apyBaseBorrow", "apy_base_borrow"),
    ("apyRewardBorrow", "apy_reward_borrow"),
)

Check = Callable[[Mapping[str, object], ValidationContext | None], list[Violation]]


def as_number(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def require(record: Mapping[str, object], field: str, code: str, penalty: int) -> list[Violation]:
    if is_blank(record.get(field)):
        return [Violation(code, penalty, hard=True)]
    return []


def relative_change(
    value: float | None,
    context: ValidationContext | None,
    *,
    label: str,
    error_code: str,
) -> list[Violation]:
    if value is None or context is None or context.previous_value is None:
        return []
    previous = context.previous_value
    if previous == 0:
        return []

    fraction = abs(value - previous) / abs(previous)
    violations: list[Violation] = []
    if fraction > OUTLIER_CHANGE_FRACTION:
        violations.append(
            Violation(None, CHANGE_OUTLIER_PENALTY, outlier_reason=f"{label}_change_{fraction * 100:.1f}%")
        )
    if fraction > EXTREME_CHANGE_FRACTION:
        violations.append(Violation(error_code, EXTREME_CHANGE_PENALTY, hard=True))
    return violations


def freshness(observed_at: datetime | None, context: ValidationContext | None) -> list[Violation]:
    if observed_at is None or context is None or context.now is None or not context.freshness_window:
        return []
    window = context.freshness_window
    age = context.now - observed_at
    if age <= window:
        return []
    penalty = min(FRESHNESS_PENALTY_CAP, round(FRESHNESS_PENALTY_CAP * ((age - window) / window)))
    if penalty <= 0:
        return []
    return [Violation("stale_data", penalty)]


def _billions(value: float) -> str:
    return f"{value / 1e9:.1f}B"


def token_price_violations(record: Mapping[str, object], context: ValidationContext | None) -> list[Violation]:
    violations: list[Violation] = []
    price = as_number(record.get("price"))

    if price is None:
        violations.append(Violation("missing_price", 40, hard=True))
    elif price < 0:
        violations.append(Violation("negative_price", 50, hard=True))
    elif price == 0:
        violations.append(Violation("zero_price", 50, hard=True))
    else:
        if price > MAX_PRICE_USD:
            violations.append(Violation("unrealistic_price_high", 40, hard=True))
        violations.extend(relative_change(price, context, label="price", error_code="extreme_price_change"))

    confidence = as_number(record.get("confidence"))
    if confidence is not None and confidence < 0.5:
        violations.append(Violation("low_confidence", 10))

    violations.extend(freshness(parse_timestamp(record.get("timestamp")), context))
    return violations


def lending_market_violations(record: Mapping[str, object], context: ValidationContext | None) -> list[Violation]:
    violations: list[Violation] = []
    metric_fields = [field for field, _ in LENDING_AMOUNT_FIELDS] + [field for field, _ in LENDING_APY_FIELDS]
    if all(as_number(record.get(field)) is None for field in metric_fields):
        violations.append(Violation("missing_market_metrics", 40, hard=True))

    for field, negative_code in LENDING_AMOUNT_FIELDS:
        amount = as_number(record.get(field))
        if amount is None:
            continue
        if amount < 0:
            violations.append(Violation(negative_code, 30, hard=True))
        elif amount > MAX_USD_AMOUNT:
            violations.append(Violation("unrealistic_usd_amount", 30, hard=True))

    supply = as_number(record.get("totalSupplyUsd"))
    borrow = as_number(record.get("totalBorrowUsd"))
    if supply is not None and borrow is not None and supply > 0 and borrow > supply:
        violations.append(Violation(None, 10, outlier_reason="borrow_exceeds_supply"))

    for field, label in LENDING_APY_FIELDS:
        apy = as_number(record.get(field))
        if apy is None:
            continue
        if apy < -100:
            violations.append(Violation("impossible_negative_apy", 30, hard=True))
        elif apy > MAX_APY:
            violations.append(Violation("unrealistic_apy", 40, hard=True, outlier_reason=f"{label}_{apy:.1f}%"))
        elif apy > OUTLIER_APY:
            violations.append(Violation(None, 20, outlier_reason=f"{label}_{apy:.1f}%"))

    violations.extend(
        relative_change(as_number(record.get("apyBase")), context, label="apy", error_code="extreme_apy_change")
    )
    violations.extend(freshness(parse_timestamp(record.get("timestamp")), context))
    return violations


def protocol_tvl_violations(record: Mapping[str, object], context: ValidationContext | None) -> list[Violation]:
    violations: list[Violation] = []
    tvl = as_number(record.get("total_liquidity_usd"))

    if tvl is None:
        violations.append(Violation("missing_tvl", 30, hard=True))
    elif tvl < 0:
        violations.append(Violation("negative_tvl", 40, hard=True))
    elif tvl > MAX_TVL_USD:
        violations.append(
            Violation("unrealistic_tvl_high", 50, hard=True, outlier_reason=f"tvl_{_billions(tvl)}_exceeds_limit")
        )
    elif tvl > HIGH_TVL_USD:
        violations.append(Violation(None, 10, outlier_reason=f"high_tvl_{_billions(tvl)}"))

    violations.extend(freshness(parse_timestamp(record.get("ts")), context))
    return violations


def etf_flow_violations(record: Mapping[str, object], context: ValidationContext | None) -> list[Violation]:
    violations: list[Violation] = []
    flow = as_number(record.get("total_flow_usd"))

    if flow is None:
        violations.append(Violation("missing_flow", 20, hard=True))
    elif abs(flow) > MAX_USD_AMOUNT:
        violations.append(Violation("unrealistic_usd_amount", 40, hard=True))
    elif abs(flow) > LARGE_ETF_FLOW_USD:
        violations.append(Violation(None, 10, outlier_reason=f"large_flow_{_billions(flow)}"))

    violations.extend(freshness(parse_timestamp(record.get("day")), context))
    return violations


def stablecoin_mcap_violations(record: Mapping[str, object], context: ValidationContext | None) -> list[Violation]:
    violations: list[Violation] = []
    amount = as_number(record.get("amount_usd"))

    if amount is None:
        violations.append(Violation("missing_amount", 30, hard=True))
    elif amount < 0:
        violations.append(Violation("negative_amount", 40, hard=True))
    elif amount > MAX_USD_AMOUNT:
        violations.append(Violation("unrealistic_usd_amount", 50, hard=True))
    elif amount > HIGH_STABLECOIN_MCAP_USD:
        violations.append(Violation(None, 10, outlier_reason=f"high_mcap_{_billions(amount)}"))

    violations.extend(freshness(parse_timestamp(record.get("day")), context))
    return violations


def liquidity_pool_violations(record: Mapping[str, object], context: ValidationContext | None) -> list[Violation]:
    violations: list[Violation] = []
    violations.extend(require(record, "project", "missing_project", 20))
    violations.extend(require(record, "chain", "missing_chain", 20))

    tvl = as_number(record.get("tvlUsd"))
    if tvl is None or tvl <= 0:
        violations.append(Violation("invalid_tvl", 30, hard=True))
    elif tvl > HIGH_POOL_TVL_USD:
        violations.append(Violation(None, 10, outlier_reason=f"extremely_high_tvl_{_billions(tvl)}"))
    elif tvl < 1000:
        violations.append(Violation("low_tvl", 5))

    apy = as_number(record.get("apy"))
    if apy is not None:
        if apy < -50:
            violations.append(Violation("extreme_negative_apy", 20, hard=True))
        elif apy > OUTLIER_APY:
            violations.append(Violation("impossible_apy", 60, hard=True))
        elif apy > 500:
            violations.append(Violation(None, 10, outlier_reason=f"extreme_apy_{apy:.1f}%"))

    apy_base = as_number(record.get("apyBase"))
    if apy_base is not None and apy_base > 1000:
        violations.append(Violation("extreme_base_apy", 20, hard=True))
    apy_reward = as_number(record.get("apyReward"))
    if apy_reward is not None and apy_reward > 5000:
        violations.append(Violation("extreme_reward_apy", 20, hard=True))

    violations.extend(freshness(parse_timestamp(record.get("lastUpdated")), context))
    return violations


@dataclass(frozen=True)
class EntityRule:
    kind: str
    threshold: int
    check: Check
    # (field, error code, penalty) for the natural-key fields.
    identity: tuple[tuple[str, str, int], ...]

    def violations(
        self,
        record: Mapping[str, object],
        context: ValidationContext | None,
        *,
        require_identity: bool,
    ) -> list[Violation]:
        violations: list[Violation] = []
        if require_identity:
            for field, code, penalty in self.identity:
                violations.extend(require(record, field, code, penalty))
        violations.extend(self.check(record, context))
        return violations


REGISTRY: dict[str, EntityRule] = {
    "price": EntityRule(
        "price",
        PRICE_THRESHOLD,
        token_price_violations,
        (("coin_id", "missing_coin_id", 40), ("timestamp", "missing_timestamp", 20)),
    ),
    "lending_market": EntityRule(
        "lending_market",
        PRICE_THRESHOLD,
        lending_market_violations,
        (("market_id", "missing_market_id", 40), ("timestamp", "missing_timestamp", 20)),
    ),
    "protocol_tvl": EntityRule(
        "protocol_tvl",
        PROTOCOL_THRESHOLD,
        protocol_tvl_violations,
        (
            ("protocol_id", "missing_protocol_id", 30),
            ("chain", "missing_chain", 20),
            ("ts", "missing_timestamp", 20),
        ),
    ),
    "etf_flow": EntityRule(
        "etf_flow",
        PRICE_THRESHOLD,
        etf_flow_violations,
        (("gecko_id", "missing_gecko_id", 40), ("day", "missing_day", 30)),
    ),
    "stablecoin_mcap": EntityRule(
        "stablecoin_mcap",
        PROTOCOL_THRESHOLD,
        stablecoin_mcap_violations,
        (("peg", "missing_peg", 30), ("day", "missing_day", 30)),
    ),
    "liquidity_pool": EntityRule(
        "liquidity_pool",
        PROTOCOL_THRESHOLD,
        liquidity_pool_violations,
        (("pool", "missing_pool_id", 40),),
    ),
}


def validate(
    kind: str,
    record: object,
    context: ValidationContext | None = None,
    *,
    require_identity: bool = False,
) -> ValidationResult:
    rule = REGISTRY.get(kind)
    if rule is None:
        raise KeyError(f"no validator registered for entity kind '{kind}'")
    if not isinstance(record, Mapping):
        return ValidationResult(is_valid=False, errors=("invalid_data",), quality_score=0)
    violations = rule.violations(record, context, require_identity=require_identity)
    return score_violations(violations, rule.threshold)


def validate_token_price(record: object, context: ValidationContext | None = None) -> ValidationResult:
    return validate("price", record, context)


def validate_lending_market(record: object, context: ValidationContext | None = None) -> ValidationResult:
    return validate("lending_market", record, context)


def validate_protocol_tvl(record: object, context: ValidationContext | None = None) -> ValidationResult:
    return validate("protocol_tvl", record, context)


def validate_etf_flow(record: object, context: ValidationContext | None = None) -> ValidationResult:
    return validate("etf_flow", record, context)


def validate_stablecoin_mcap(record: object, context: ValidationContext | None = None) -> ValidationResult:
    return validate("stablecoin_mcap", record, context)


def validate_liquidity_pool(record: object, context: ValidationContext | None = None) -> ValidationResult:
    return validate("liquidity_pool", record, context)
