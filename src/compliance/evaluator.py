from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from compliance.data_models import (
    ComplianceAssessment,
    DeclarationCategory,
    DeclarationPreview,
    GapAnalysis,
    Severity,
)
from compliance.declarations import list_declarations


@dataclass(frozen=True)
class SeverityBand:
    """Ratio band of actual/allowed average gap; score is interpolated linearly inside the band."""

    upper_ratio: float
    severity: Severity
    score_at_lower: float
    score_at_upper: float


SCORE_FLOOR = 10.0

# Ordered; the first band whose upper_ratio >= ratio applies. Adjacent bands share
# their boundary score so the compliance score is continuous in the average gap.
SEVERITY_BANDS: tuple[SeverityBand, ...] = (
    SeverityBand(upper_ratio=1.00, severity=Severity.COMPLIANT, score_at_lower=100.0, score_at_upper=100.0),
    SeverityBand(upper_ratio=1.25, severity=Severity.WARNING, score_at_lower=100.0, score_at_upper=90.0),
    SeverityBand(upper_ratio=1.75, severity=Severity.CRITICAL, score_at_lower=90.0, score_at_upper=30.0),
    SeverityBand(upper_ratio=2.25, severity=Severity.VIOLATION, score_at_lower=30.0, score_at_upper=SCORE_FLOOR),
    SeverityBand(upper_ratio=math.inf, severity=Severity.VIOLATION, score_at_lower=SCORE_FLOOR, score_at_upper=SCORE_FLOOR),
)


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def score_average_gap(actual: float, allowed: float) -> tuple[Severity, float]:
    if allowed <= 0:
        raise ValueError("Declared gap threshold must be positive")
    ratio = max(0.0, actual) / allowed
    lower = 0.0
    for band in SEVERITY_BANDS:
        if ratio <= band.upper_ratio:
            if math.isinf(band.upper_ratio) or band.score_at_lower == band.score_at_upper:
                score = band.score_at_upper
            else:
                span = band.upper_ratio - lower
                score = band.score_at_lower + (ratio - lower) / span * (band.score_at_upper - band.score_at_lower)
            return band.severity, round(_clamp(score), 2)
        lower = band.upper_ratio
    raise AssertionError("severity bands must end with an unbounded band")


def excess_over_allowed(actual: float, allowed: float) -> int:
    return max(0, round(actual - allowed))


def evaluate_compliance(
    vehicle_id: str,
    analysis: GapAnalysis,
    category: DeclarationCategory,
) -> ComplianceAssessment:
    allowed = category.max_gap_miles
    if analysis.insufficient_data:
        return ComplianceAssessment(
            vehicle_id=vehicle_id,
            declaration_id=category.id,
            average_gap_miles=0.0,
            max_gap_miles=0,
            anomaly_count=0,
            total_intervals=0,
            compliance_score=100.0,
            severity=Severity.COMPLIANT,
            allowed_gap_miles=allowed,
            insufficient_data=True,
        )

    severity, score = score_average_gap(analysis.average_gap_miles, allowed)
    return ComplianceAssessment(
        vehicle_id=vehicle_id,
        declaration_id=category.id,
        average_gap_miles=analysis.average_gap_miles,
        max_gap_miles=analysis.max_gap_miles,
        anomaly_count=analysis.anomaly_count,
        total_intervals=analysis.total_intervals,
        compliance_score=score,
        severity=severity,
        allowed_gap_miles=allowed,
        excess_miles=excess_over_allowed(analysis.average_gap_miles, allowed),
        unauthorized_miles=analysis.unauthorized_miles,
    )


def preview_declarations(
    analysis: GapAnalysis,
    catalog: Iterable[DeclarationCategory] | None = None,
) -> list[DeclarationPreview]:
    """Score observed usage against every declaration, strictest first.

    A declaration would comply when the average gap is positive and within its
    threshold. Without a valid interval there is nothing to judge, so no entry
    is marked as complying.
    """
    categories = list_declarations() if catalog is None else list(catalog)
    previews: list[DeclarationPreview] = []
    for category in categories:
        allowed = category.max_gap_miles
        if analysis.insufficient_data:
            previews.append(DeclarationPreview(
                declaration_id=category.id,
                allowed_gap_miles=allowed,
                severity=Severity.COMPLIANT,
                compliance_score=100.0,
                would_comply=False,
                insufficient_data=True,
            ))
            continue
        average = analysis.average_gap_miles
        severity, score = score_average_gap(average, allowed)
        previews.append(DeclarationPreview(
            declaration_id=category.id,
            allowed_gap_miles=allowed,
            severity=severity,
            compliance_score=score,
            would_comply=0 < average <= allowed,
            excess_miles=excess_over_allowed(average, allowed),
        ))
    return previews
