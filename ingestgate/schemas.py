from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
import time
import uuid


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def generate_run_id(prefix: str = "job") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: tuple[str, ...]
    quality_score: int
    is_outlier: bool = False
    outlier_reason: str | None = None

    def with_error(self, code: str, penalty: int = 0) -> "ValidationResult":
        errors = self.errors if code in self.errors else (*self.errors, code)
        return ValidationResult(
            is_valid=False,
            errors=errors,
            quality_score=max(0, self.quality_score - penalty),
            is_outlier=self.is_outlier,
            outlier_reason=self.outlier_reason,
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "quality_score": self.quality_score,
            "is_outlier": self.is_outlier,
            "outlier_reason": self.outlier_reason,
        }


@dataclass(frozen=True)
class ValidationContext:
    previous_value: float | None = None
    now: datetime | None = None
    freshness_window: timedelta | None = None


@dataclass
class RunMetrics:
    total_records: int = 0
    clean_records: int = 0
    scrubbed_records: int = 0
    error_records: int = 0
    outlier_records: int = 0
    processing_time_ms: int = 0
    error_summary: Counter[str] = field(default_factory=Counter)

    @property
    def overall_quality_score(self) -> float:
        if self.total_records <= 0:
            return 0.0
        return round(self.clean_records / self.total_records * 100, 2)

    def note_clean(self, result: ValidationResult) -> None:
        self.total_records += 1
        self.clean_records += 1
        if result.is_outlier:
            self.outlier_records += 1

    def note_rejected(self, result: ValidationResult, *, quarantined: bool) -> None:
        self.total_records += 1
        if quarantined:
            self.scrubbed_records += 1
        else:
            self.error_records += 1
            self.error_summary["scrub_write_failed"] += 1
        if result.is_outlier:
            self.outlier_records += 1
        self.error_summary.update(result.errors)

    def note_errors(self, code: str, count: int = 1) -> None:
        self.total_records += count
        self.error_records += count
        self.error_summary[code] += count

    def merge(self, other: "RunMetrics") -> None:
        self.total_records += other.total_records
        self.clean_records += other.clean_records
        self.scrubbed_records += other.scrubbed_records
        self.error_records += other.error_records
        self.outlier_records += other.outlier_records
        self.error_summary.update(other.error_summary)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "RunMetrics":
        return cls(
            total_records=int(data.get("total_records", 0)),
            clean_records=int(data.get("clean_records", 0)),
            scrubbed_records=int(data.get("scrubbed_records", 0)),
            error_records=int(data.get("error_records", 0)),
            outlier_records=int(data.get("outlier_records", 0)),
            processing_time_ms=int(data.get("processing_time_ms", 0)),
            error_summary=Counter(data.get("error_summary") or {}),
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "total_records": self.total_records,
            "clean_records": self.clean_records,
            "scrubbed_records": self.scrubbed_records,
            "error_records": self.error_records,
            "outlier_records": self.outlier_records,
            "overall_quality_score": self.overall_quality_score,
            "processing_time_ms": self.processing_time_ms,
            "error_summary": dict(self.error_summary),
        }


@dataclass
class RunContext:
    job_name: str
    run_id: str
    started_at: datetime = field(default_factory=utc_now)
    metrics: RunMetrics = field(default_factory=RunMetrics)

    def elapsed_ms(self) -> int:
        return int((utc_now() - self.started_at).total_seconds() * 1000)


@dataclass(frozen=True)
class BatchPlan:
    batch_index: int
    offset: int
    limit: int


@dataclass(frozen=True)
class BatchOutcome:
    batch_index: int
    success: bool
    offset: int = 0
    limit: int = 0
    state: str = "succeeded"
    run_id: str | None = None
    metrics: dict[str, object] | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "batch_index": self.batch_index,
            "offset": self.offset,
            "limit": self.limit,
            "success": self.success,
            "state": self.state,
            "run_id": self.run_id,
            "metrics": self.metrics,
            "error": self.error,
        }


@dataclass(frozen=True)
class DispatchSummary:
    run_id: str
    total_batches: int
    successful_batches: int
    failed_batches: int
    success_rate: float
    success: bool
    processing_time_ms: int
    outcomes: tuple[BatchOutcome, ...]

    def as_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "run_id": self.run_id,
            "total_batches": self.total_batches,
            "successful_batches": self.successful_batches,
            "failed_batches": self.failed_batches,
            "success_rate": self.success_rate,
            "processing_time_ms": self.processing_time_ms,
            "outcomes": [outcome.as_dict() for outcome in self.outcomes],
        }


def parse_timestamp(value: object) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(UTC).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        seconds = float(value)
        # Millisecond epochs show up in some API payloads.
        if seconds > 1e12:
            seconds /= 1000.0
        return datetime.fromtimestamp(seconds, UTC).replace(tzinfo=None)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            return parse_timestamp(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class JobParams:
    day: date | None = None
    since: date | None = None
    start_date: date | None = None
    end_date: date | None = None
    full: bool = False
    recent_points: int | None = None

    def target_day(self, today: date) -> date:
        return self.day or today - timedelta(days=1)

    def keeps(self, day: date, *, today: date) -> bool:
        if self.full:
            return True
        if self.start_date or self.end_date:
            if self.start_date and day < self.start_date:
                return False
            if self.end_date and day > self.end_date:
                return False
            return True
        if self.since:
            return day >= self.since
        return day == self.target_day(today)

    def window(self, today: date) -> tuple[date, date]:
        if self.full:
            return date(2018, 1, 1), today
        if self.start_date or self.end_date:
            return self.start_date or date(2018, 1, 1), self.end_date or today
        if self.since:
            return self.since, today
        target = self.target_day(today)
        return target, target

    @property
    def mode(self) -> str:
        if self.full:
            return "full"
        if self.start_date or self.end_date:
            return f"range:{self.start_date or ''}..{self.end_date or ''}"
        if self.since:
            return f"since:{self.since.isoformat()}"
        if self.day:
            return f"day:{self.day.isoformat()}"
        return "yesterday"
