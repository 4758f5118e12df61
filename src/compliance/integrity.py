from __future__ import annotations

from compliance.config import EngineConfig
from compliance.data_models import ComplianceAssessment, IntegrityScoreBreakdown, IntegrityTier


TIER_THRESHOLDS: tuple[tuple[float, IntegrityTier], ...] = (
    (90.0, IntegrityTier.EXCELLENT),
    (75.0, IntegrityTier.GOOD),
    (60.0, IntegrityTier.FAIR),
)


def score_to_tier(score: float) -> IntegrityTier:
    for minimum, tier in TIER_THRESHOLDS:
        if score >= minimum:
            return tier
    return IntegrityTier.NEEDS_ATTENTION


def gap_penalty(average_gap_miles: float, allowed_gap_miles: int, config: EngineConfig) -> float:
    if allowed_gap_miles <= 0:
        raise ValueError("Declared gap threshold must be positive")
    excess_pct = max(0.0, (average_gap_miles - allowed_gap_miles) / allowed_gap_miles) * 100.0
    return round(min(config.gap_penalty_cap, excess_pct * config.gap_penalty_per_excess_pct), 2)


def calculate_integrity(
    assessment: ComplianceAssessment,
    has_active_claim: bool,
    config: EngineConfig | None = None,
) -> IntegrityScoreBreakdown:
    cfg = config or EngineConfig()
    g_penalty = 0.0
    if not assessment.insufficient_data:
        g_penalty = gap_penalty(assessment.average_gap_miles, assessment.allowed_gap_miles, cfg)
    # Additive so an open claim still shows against a perfect mileage record.
    c_penalty = cfg.claim_penalty if has_active_claim else 0.0
    overall = max(0.0, min(100.0, assessment.compliance_score - g_penalty - c_penalty))
    overall = round(overall, 2)
    return IntegrityScoreBreakdown(
        compliance_score=assessment.compliance_score,
        gap_penalty=g_penalty,
        claim_penalty=c_penalty,
        overall_score=overall,
        tier=score_to_tier(overall),
        insufficient_data=assessment.insufficient_data,
    )
