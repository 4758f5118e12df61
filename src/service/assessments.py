from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from compliance.activity import ComplianceActivity
from compliance.config import EngineConfig
from compliance.data_models import (
    ClaimLockState,
    DeclarationPreview,
    DeclarationUpdate,
    GapAnalysis,
    OdometerReading,
    VehicleAssessment,
    VehicleRecord,
)
from compliance.declarations import get_declaration
from compliance.errors import ComplianceError, DataUnavailable, DeclarationLocked, ValidationError, VehicleNotFound
from compliance.evaluator import evaluate_compliance, preview_declarations
from compliance.insurance import resolve_insurance_tier
from compliance.integrity import calculate_integrity
from compliance.lock_guard import check_declaration_change, resolve_lock_state
from compliance.mileage_gaps import analyze_gaps
from service.logging_config import bind_vehicle
from service.messaging import DECLARATION_CHANGES_TOPIC, KafkaBus
from service.storage import PostgresStore

logger = logging.getLogger(__name__)


async def _load_vehicle(store: PostgresStore, vehicle_id: str) -> VehicleRecord:
    try:
        vehicle = await store.get_vehicle(vehicle_id)
    except ComplianceError:
        raise
    except Exception as exc:
        raise DataUnavailable("vehicle_store", vehicle_id, exc) from exc
    if vehicle is None:
        raise VehicleNotFound(vehicle_id)
    return vehicle


async def _load_lock_state(store: PostgresStore, vehicle_id: str) -> ClaimLockState:
    try:
        claim = await store.get_active_claim(vehicle_id)
    except ComplianceError:
        raise
    except Exception as exc:
        raise DataUnavailable("claims_store", vehicle_id, exc) from exc
    return resolve_lock_state(claim)


async def _load_readings(store: PostgresStore, vehicle_id: str) -> list[OdometerReading]:
    try:
        return await store.list_odometer_readings(vehicle_id)
    except ComplianceError:
        raise
    except Exception as exc:
        raise DataUnavailable("trip_ledger", vehicle_id, exc) from exc


async def get_lock_state(store: PostgresStore, vehicle_id: str) -> ClaimLockState:
    await _load_vehicle(store, vehicle_id)
    return await _load_lock_state(store, vehicle_id)


async def assess_vehicle(
    store: PostgresStore,
    vehicle_id: str,
    config: EngineConfig | None = None,
) -> VehicleAssessment:
    cfg = config or EngineConfig()
    with bind_vehicle(vehicle_id):
        vehicle = await _load_vehicle(store, vehicle_id)
        category = get_declaration(vehicle.declaration_id)
        readings = await _load_readings(store, vehicle_id)
        lock_state = await _load_lock_state(store, vehicle_id)

        analysis = analyze_gaps(readings, category, vehicle.declaration_history)
        compliance = evaluate_compliance(vehicle_id, analysis, category)
        integrity = calculate_integrity(compliance, lock_state.has_active_claim, cfg)
        insurance = resolve_insurance_tier(vehicle.insurance_type if vehicle.insurance_verified else None)

        logger.info(
            "Assessed %s: %s score=%.2f tier=%s intervals=%d faults=%d",
            vehicle_id, compliance.verdict, integrity.overall_score, integrity.tier.value,
            analysis.total_intervals, len(analysis.faults),
        )
        return VehicleAssessment(
            vehicle_id=vehicle_id,
            compliance_assessment=compliance,
            integrity_score=integrity,
            insurance_tier=insurance,
            lock_state=lock_state,
            gap_analysis=analysis,
            assessed_at=datetime.now(timezone.utc),
        )


async def preview_vehicle_declarations(
    store: PostgresStore,
    vehicle_id: str,
) -> tuple[VehicleRecord, GapAnalysis, list[DeclarationPreview]]:
    """Show how the vehicle's recorded usage would fare under each declaration.

    Read-only: nothing is persisted or published, and the claim lock does not
    apply since no declaration changes.
    """
    with bind_vehicle(vehicle_id):
        vehicle = await _load_vehicle(store, vehicle_id)
        readings = await _load_readings(store, vehicle_id)
        analysis = analyze_gaps(readings, get_declaration(vehicle.declaration_id), vehicle.declaration_history)
        previews = preview_declarations(analysis)
        logger.debug(
            "Previewed declarations for %s: %s would comply",
            vehicle_id, [p.declaration_id.value for p in previews if p.would_comply],
        )
        return vehicle, analysis, previews


async def update_declaration(
    store: PostgresStore,
    vehicle_id: str,
    new_declaration_id: str,
    actor_id: str,
    kafka: KafkaBus | None = None,
) -> DeclarationUpdate:
    if not actor_id or not actor_id.strip():
        raise ValidationError("actor_id", "an acting user is required to change a declaration")
    target = get_declaration(new_declaration_id).id

    with bind_vehicle(vehicle_id):
        vehicle = await _load_vehicle(store, vehicle_id)
        lock_state = await _load_lock_state(store, vehicle_id)
        try:
            needs_write = check_declaration_change(vehicle_id, lock_state, vehicle.declaration_id, target)
        except DeclarationLocked as exc:
            logger.info("Declaration change by %s refused: claim %s is %s", actor_id, exc.claim_id, exc.claim_status)
            raise

        if not needs_write:
            return DeclarationUpdate(
                vehicle_id=vehicle_id,
                previous_declaration_id=vehicle.declaration_id,
                declaration_id=target,
                changed=False,
                actor_id=actor_id,
            )

        now = datetime.now(timezone.utc)
        audit = ComplianceActivity(
            id=str(uuid4()),
            vehicle_id=vehicle_id,
            action="DECLARATION_UPDATED",
            description=f"Usage declaration changed from {vehicle.declaration_id.value} to {target.value}",
            performed_by=actor_id,
            occurred_at=now,
            previous_declaration_id=vehicle.declaration_id.value,
            declaration_id=target.value,
        )
        try:
            blocking = await store.commit_declaration_change(vehicle_id, target, actor_id, activity=audit)
        except ComplianceError:
            raise
        except Exception as exc:
            raise DataUnavailable("vehicle_store", vehicle_id, exc) from exc
        if blocking is not None:
            logger.info("Declaration change by %s refused at commit: claim %s filed concurrently", actor_id, blocking.claim_id)
            raise DeclarationLocked(vehicle_id, blocking)

        if kafka is not None:
            event: dict[str, Any] = {
                "vehicle_id": vehicle_id,
                "host_id": vehicle.host_id,
                "previous_declaration_id": vehicle.declaration_id.value,
                "declaration_id": target.value,
                "actor_id": actor_id,
                "changed_at": now.isoformat(),
            }
            await kafka.publish(DECLARATION_CHANGES_TOPIC, event, key=vehicle_id)
        logger.info("Declaration for %s changed to %s by %s", vehicle_id, target.value, actor_id)
        return DeclarationUpdate(
            vehicle_id=vehicle_id,
            previous_declaration_id=vehicle.declaration_id,
            declaration_id=target,
            changed=True,
            actor_id=actor_id,
        )


def assessment_to_dict(assessment: VehicleAssessment) -> dict[str, Any]:
    compliance = assessment.compliance_assessment
    integrity = assessment.integrity_score
    lock = assessment.lock_state
    return {
        "vehicle_id": assessment.vehicle_id,
        "assessed_at": assessment.assessed_at.isoformat(),
        "compliance_assessment": {
            "declaration_id": compliance.declaration_id.value,
            "average_gap_miles": compliance.average_gap_miles,
            "max_gap_miles": compliance.max_gap_miles,
            "allowed_gap_miles": compliance.allowed_gap_miles,
            "excess_miles": compliance.excess_miles,
            "unauthorized_miles": compliance.unauthorized_miles,
            "anomaly_count": compliance.anomaly_count,
            "total_intervals": compliance.total_intervals,
            "compliance_score": compliance.compliance_score,
            "severity": compliance.severity.value,
            "insufficient_data": compliance.insufficient_data,
            "verdict": compliance.verdict,
        },
        "integrity_score": {
            "compliance_score": integrity.compliance_score,
            "gap_penalty": integrity.gap_penalty,
            "claim_penalty": integrity.claim_penalty,
            "overall_score": integrity.overall_score,
            "tier": integrity.tier.value,
            "insufficient_data": integrity.insufficient_data,
        },
        "insurance_tier": {
            "type": assessment.insurance_tier.type.value,
            "revenue_split_percent": assessment.insurance_tier.revenue_split_percent,
        },
        "lock_state": lock_state_to_dict(lock),
        "gaps": [
            {
                "between_trip_ids": list(g.between_trip_ids),
                "gap_miles": g.gap_miles,
                "threshold_miles": g.threshold_miles,
                "is_anomalous": g.is_anomalous,
                "excess_miles": g.excess_miles,
            }
            for g in assessment.gap_analysis.gaps
        ],
        "data_integrity_faults": [
            {"trip_ids": list(f.trip_ids), "kind": f.kind, "detail": f.detail, "value": f.value}
            for f in assessment.gap_analysis.faults
        ],
    }


def lock_state_to_dict(lock: ClaimLockState) -> dict[str, Any]:
    claim = lock.active_claim
    return {
        "state": lock.state.value,
        "locked": lock.locked,
        "has_active_claim": lock.has_active_claim,
        "reason": lock.reason,
        "unlocks_when": lock.unlocks_when,
        "active_claim": None if claim is None else {
            "claim_id": claim.claim_id,
            "status": getattr(claim.status, "value", str(claim.status)),
            "filed_at": claim.filed_at.isoformat(),
            "estimated_cost": claim.estimated_cost,
        },
    }


def preview_to_dict(vehicle: VehicleRecord, analysis: GapAnalysis, previews: list[DeclarationPreview]) -> dict[str, Any]:
    return {
        "vehicle_id": vehicle.vehicle_id,
        "current_declaration_id": vehicle.declaration_id.value,
        "average_gap_miles": analysis.average_gap_miles,
        "total_intervals": analysis.total_intervals,
        "insufficient_data": analysis.insufficient_data,
        "declarations": [
            {
                "declaration_id": p.declaration_id.value,
                "allowed_gap_miles": p.allowed_gap_miles,
                "severity": p.severity.value,
                "compliance_score": p.compliance_score,
                "excess_miles": p.excess_miles,
                "would_comply": p.would_comply,
                "is_current": p.declaration_id is vehicle.declaration_id,
            }
            for p in previews
        ],
    }
