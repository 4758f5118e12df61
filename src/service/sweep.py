from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Sequence

import pandas as pd

from compliance.config import EngineConfig
from compliance.data_models import Severity, VehicleAssessment
from compliance.errors import DataUnavailable
from service.assessments import assess_vehicle
from service.messaging import COMPLIANCE_ALERTS_TOPIC, INTEGRITY_SNAPSHOTS_TOPIC, KafkaBus
from service.storage import PostgresStore, RedisCache

logger = logging.getLogger(__name__)

SWEEP_CACHE_KEY = "sweep:last"
ALERT_SEVERITIES = frozenset({Severity.CRITICAL, Severity.VIOLATION})


def summarize_results(rows: list[dict[str, Any]]) -> dict[str, Any]:
    if not rows:
        return {"by_tier": {}, "by_verdict": {}, "mean_overall_score": None}
    frame = pd.DataFrame(rows)
    return {
        "by_tier": {str(k): int(v) for k, v in frame.groupby("tier").size().items()},
        "by_verdict": {str(k): int(v) for k, v in frame.groupby("verdict").size().items()},
        "mean_overall_score": round(float(frame["overall_score"].mean()), 2),
    }


async def _score_one(
    store: PostgresStore,
    kafka: KafkaBus | None,
    vehicle_id: str,
    config: EngineConfig,
) -> dict[str, Any]:
    assessment: VehicleAssessment = await assess_vehicle(store, vehicle_id, config)
    compliance = assessment.compliance_assessment
    integrity = assessment.integrity_score
    record = {
        "vehicle_id": vehicle_id,
        "overall_score": integrity.overall_score,
        "tier": integrity.tier.value,
        "compliance_score": compliance.compliance_score,
        "severity": compliance.severity.value,
        "verdict": compliance.verdict,
        "insufficient_data": compliance.insufficient_data,
        "has_active_claim": assessment.lock_state.has_active_claim,
        "details_json": {
            "average_gap_miles": compliance.average_gap_miles,
            "max_gap_miles": compliance.max_gap_miles,
            "anomaly_count": compliance.anomaly_count,
            "unauthorized_miles": compliance.unauthorized_miles,
            "gap_penalty": integrity.gap_penalty,
            "claim_penalty": integrity.claim_penalty,
            "faults": len(assessment.gap_analysis.faults),
        },
    }
    await store.insert_integrity_snapshot(record)
    if kafka is not None:
        await kafka.publish(INTEGRITY_SNAPSHOTS_TOPIC, record, key=vehicle_id)
        if not compliance.insufficient_data and compliance.severity in ALERT_SEVERITIES:
            await kafka.publish(
                COMPLIANCE_ALERTS_TOPIC,
                {
                    "vehicle_id": vehicle_id,
                    "severity": compliance.severity.value,
                    "declaration_id": compliance.declaration_id.value,
                    "average_gap_miles": compliance.average_gap_miles,
                    "allowed_gap_miles": compliance.allowed_gap_miles,
                    "excess_miles": compliance.excess_miles,
                },
                key=vehicle_id,
            )
    return record


async def run_integrity_sweep(
    *,
    store: PostgresStore,
    kafka: KafkaBus | None = None,
    cache: RedisCache | None = None,
    vehicle_ids: Sequence[str] | None = None,
    config: EngineConfig | None = None,
    concurrency: int | None = None,
    cache_ttl_seconds: int = 172_800,
) -> dict[str, Any]:
    cfg = config or EngineConfig()
    started = datetime.now(timezone.utc)
    targets = list(vehicle_ids) if vehicle_ids is not None else await store.list_vehicle_ids()
    if not targets:
        return {"status": "skipped", "reason": "no_vehicles"}

    semaphore = asyncio.Semaphore(max(1, concurrency or cfg.sweep_concurrency))

    async def _bounded(vehicle_id: str) -> dict[str, Any]:
        async with semaphore:
            return await _score_one(store, kafka, vehicle_id, cfg)

    outcomes = await asyncio.gather(*(_bounded(v) for v in targets), return_exceptions=True)

    scored: list[dict[str, Any]] = []
    failures: list[dict[str, str]] = []
    for vehicle_id, outcome in zip(targets, outcomes):
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            logger.error("Integrity sweep failed for %s: %s", vehicle_id, outcome)
            failures.append({"vehicle_id": vehicle_id, "error": type(outcome).__name__, "detail": str(outcome)})
            continue
        scored.append(outcome)

    summary = {
        "status": "ok" if not failures else "partial",
        "started_at": started.isoformat(),
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "vehicles": len(targets),
        "scored": len(scored),
        "failed": len(failures),
        "failures": failures,
        **summarize_results(scored),
    }
    if cache is not None:
        await cache.set_json(SWEEP_CACHE_KEY, summary, ttl_seconds=cache_ttl_seconds)
    logger.info("Integrity sweep finished: %d scored, %d failed", len(scored), len(failures))
    return summary


async def run_sweep_safely(**kwargs: Any) -> dict[str, Any]:
    """Sweep entry point for the scheduler and the trigger consumer.

    Those callers have nobody to raise to, so an aborted sweep comes back as
    an error summary naming the source that failed.
    """
    try:
        return await run_integrity_sweep(**kwargs)
    except DataUnavailable as exc:
        logger.error("Integrity sweep aborted: %s", exc)
        return {"status": "error", "source": exc.source, "detail": str(exc)}
    except Exception as exc:
        logger.exception("Integrity sweep aborted")
        return {"status": "error", "source": "sweep", "error": type(exc).__name__, "detail": str(exc)}
