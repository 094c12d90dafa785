from dataclasses import dataclass

from ingestgate.schemas import ValidationResult


MAX_SCORE = 100
PRICE_THRESHOLD = 70
PROTOCOL_THRESHOLD = 60


@dataclass(frozen=True)
class Violation:
    code: str | None
    penalty: int
    hard: bool = False
    outlier_reason: str | None = None


def score_violations(violations: list[Violation], threshold: int) -> ValidationResult:
    errors: list[str] = []
    reasons: list[str] = []
    penalty = 0

    for violation in violations:
        penalty += violation.penalty
        if violation.hard and violation.code and violation.code not in errors:
            errors.append(violation.code)
        if violation.outlier_reason and violation.outlier_reason not in reasons:
            reasons.append(violation.outlier_reason)

    # Clamp once after all penalties are summed.
    score = max(0, min(MAX_SCORE, MAX_SCORE - penalty))
    return ValidationResult(
        is_valid=not errors and score >= threshold,
        errors=tuple(errors),
        quality_score=score,
        is_outlier=bool(reasons),
        outlier_reason="; ".join(reasons) if reasons else None,
    )
