from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal


class DeclarationId(str, Enum):
    RENTAL = "RENTAL"
    BUSINESS = "BUSINESS"
    MIXED = "MIXED"
    PERSONAL = "PERSONAL"


class Severity(str, Enum):
    COMPLIANT = "COMPLIANT"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    VIOLATION = "VIOLATION"


class IntegrityTier(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    NEEDS_ATTENTION = "NEEDS_ATTENTION"


class InsuranceType(str, Enum):
    NONE = "NONE"
    P2P = "P2P"
    COMMERCIAL = "COMMERCIAL"


class ClaimStatus(str, Enum):
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    GUEST_RESPONSE_PENDING = "GUEST_RESPONSE_PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    PAID = "PAID"
    RESOLVED = "RESOLVED"


class LockState(str, Enum):
    UNLOCKED = "UNLOCKED"
    LOCKED = "LOCKED"


FaultKind = Literal["negative_gap", "reading_reversed", "adjacent_to_reversed"]


@dataclass(frozen=True)
class DeclarationCategory:
    id: DeclarationId
    label: str
    description: str
    max_gap_miles: int
    tax_implication: str
    insurance_note: str
    claim_impact: str


@dataclass(frozen=True)
class DeclarationPeriod:
    declaration_id: DeclarationId
    effective_from: datetime


@dataclass(frozen=True)
class OdometerReading:
    trip_id: str
    vehicle_id: str
    start_mileage: int
    end_mileage: int
    started_at: datetime
    ended_at: datetime


@dataclass(frozen=True)
class MileageGapRecord:
    between_trip_ids: tuple[str, str]
    gap_miles: int
    is_anomalous: bool
    threshold_miles: int
    excess_miles: int = 0


@dataclass(frozen=True)
class DataIntegrityFault:
    """An interval or reading excluded from aggregates because the ledger data is inconsistent."""

    trip_ids: tuple[str, ...]
    kind: FaultKind
    detail: str
    value: int


@dataclass(frozen=True)
class GapAnalysis:
    gaps: tuple[MileageGapRecord, ...] = ()
    average_gap_miles: float = 0.0
    max_gap_miles: int = 0
    anomaly_count: int = 0
    total_intervals: int = 0
    unauthorized_miles: int = 0
    faults: tuple[DataIntegrityFault, ...] = ()
    trip_count: int = 0

    @property
    def insufficient_data(self) -> bool:
        return self.total_intervals == 0


@dataclass(frozen=True)
class ComplianceAssessment:
    vehicle_id: str
    declaration_id: DeclarationId
    average_gap_miles: float
    max_gap_miles: int
    anomaly_count: int
    total_intervals: int
    compliance_score: float
    severity: Severity
    allowed_gap_miles: int
    excess_miles: int = 0
    unauthorized_miles: int = 0
    insufficient_data: bool = False

    @property
    def verdict(self) -> str:
        if self.insufficient_data:
            return "INSUFFICIENT_DATA"
        return self.severity.value


@dataclass(frozen=True)
class DeclarationPreview:
    """How a vehicle's observed usage would score under one catalog declaration."""

    declaration_id: DeclarationId
    allowed_gap_miles: int
    severity: Severity
    compliance_score: float
    would_comply: bool
    excess_miles: int = 0
    insufficient_data: bool = False


@dataclass(frozen=True)
class IntegrityScoreBreakdown:
    compliance_score: float
    gap_penalty: float
    claim_penalty: float
    overall_score: float
    tier: IntegrityTier
    insufficient_data: bool = False


@dataclass(frozen=True)
class InsuranceTier:
    type: InsuranceType
    revenue_split_percent: int


@dataclass(frozen=True)
class ClaimReference:
    claim_id: str
    status: ClaimStatus | str
    filed_at: datetime
    estimated_cost: float | None = None


@dataclass(frozen=True)
class ClaimLockState:
    has_active_claim: bool
    state: LockState
    active_claim: ClaimReference | None = None
    reason: str = ""
    unlocks_when: str = ""

    @property
    def locked(self) -> bool:
        return self.state is LockState.LOCKED


@dataclass(frozen=True)
class VehicleRecord:
    vehicle_id: str
    host_id: str
    declaration_id: DeclarationId
    insurance_type: str = "none"
    insurance_verified: bool = False
    declaration_history: tuple[DeclarationPeriod, ...] = ()


@dataclass(frozen=True)
class VehicleAssessment:
    vehicle_id: str
    compliance_assessment: ComplianceAssessment
    integrity_score: IntegrityScoreBreakdown
    insurance_tier: InsuranceTier
    lock_state: ClaimLockState
    gap_analysis: GapAnalysis
    assessed_at: datetime


@dataclass(frozen=True)
class DeclarationUpdate:
    vehicle_id: str
    previous_declaration_id: DeclarationId
    declaration_id: DeclarationId
    changed: bool
    actor_id: str
