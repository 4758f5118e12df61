from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from compliance.config import EngineConfig
from compliance.declarations import list_declarations
from compliance.errors import DataIntegrityError, DataUnavailable, DeclarationLocked, ValidationError, VehicleNotFound
from compliance.insurance import resolve_insurance_tier
from compliance.scheduler import build_nightly_sweep_scheduler
from service.assessments import (
    assess_vehicle,
    assessment_to_dict,
    get_lock_state,
    lock_state_to_dict,
    preview_to_dict,
    preview_vehicle_declarations,
    update_declaration,
)
from service.auth import APIKeyAuth, RateLimiter, parse_api_keys, require_actor
from service.logging_config import configure_logging, correlation_id
from service.messaging import SWEEP_TRIGGERS_TOPIC, KafkaBus
from service.settings import ServiceSettings
from service.storage import PostgresStore, RedisCache
from service.sweep import SWEEP_CACHE_KEY, run_integrity_sweep, run_sweep_safely

logger = logging.getLogger(__name__)


# ── Request / Response Models ───────────────────────────────────────

class DeclarationUpdateRequest(BaseModel):
    declaration_id: str = Field(min_length=1, max_length=32)


class DeclarationUpdateResponse(BaseModel):
    vehicle_id: str
    previous_declaration_id: str
    declaration_id: str
    changed: bool
    actor_id: str


class DeclarationResponse(BaseModel):
    id: str
    label: str
    description: str
    max_gap_miles: int
    tax_implication: str
    insurance_note: str
    claim_impact: str


class InsuranceTierResponse(BaseModel):
    type: str
    revenue_split_percent: int


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


class SweepTriggerResponse(BaseModel):
    scheduled: bool
    message: str


class SweepRunRequest(BaseModel):
    vehicle_ids: list[str] | None = None


# ── Prometheus-style Metrics ────────────────────────────────────────

# Latency summaries cover the most recent observations only.
LATENCY_WINDOW = 10_000

_prom_counters: dict[str, int] = defaultdict(int)
_prom_histograms: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=LATENCY_WINDOW))


def _record_latency(name: str, seconds: float) -> None:
    _prom_histograms[name].append(seconds)
    _prom_counters[f"{name}_count"] += 1


def _prometheus_text() -> str:
    lines: list[str] = []
    for k, v in sorted(_prom_counters.items()):
        safe = k.replace(".", "_").replace("-", "_")
        lines.append(f"# TYPE integrity_{safe} counter")
        lines.append(f"integrity_{safe} {v}")

    for name, vals in sorted(_prom_histograms.items()):
        if not vals:
            continue
        safe = name.replace(".", "_").replace("-", "_")
        sorted_vals = sorted(vals)
        n = len(sorted_vals)
        lines.append(f"# TYPE integrity_{safe}_seconds summary")
        for q in (0.5, 0.9, 0.95, 0.99):
            idx = min(int(n * q), n - 1)
            lines.append(f'integrity_{safe}_seconds{{quantile="{q}"}} {sorted_vals[idx]:.6f}')
        lines.append(f"integrity_{safe}_seconds_count {n}")
        lines.append(f"integrity_{safe}_seconds_sum {sum(sorted_vals):.6f}")

    return "\n".join(lines) + "\n"


# ── App Factory ─────────────────────────────────────────────────────

def create_app() -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    cfg = EngineConfig(
        claim_penalty=settings.claim_penalty,
        gap_penalty_per_excess_pct=settings.gap_penalty_per_excess_pct,
        gap_penalty_cap=settings.gap_penalty_cap,
        sweep_cron=settings.sweep_cron,
        sweep_concurrency=settings.sweep_concurrency,
    )
    cache = RedisCache(redis_url=settings.redis_url)
    store = PostgresStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
    )

    auth = APIKeyAuth(allowed_keys=parse_api_keys(settings.api_keys))
    limiter = RateLimiter(requests_per_minute=settings.rate_limit_rpm)

    stop_event = asyncio.Event()

    async def _sweep(_: dict[str, Any] | None = None) -> dict[str, Any]:
        t0 = time.monotonic()
        summary = await run_sweep_safely(
            store=store, kafka=kafka, cache=cache, config=cfg,
            cache_ttl_seconds=settings.sweep_cache_ttl_seconds,
        )
        _record_latency("sweep", time.monotonic() - t0)
        if summary["status"] == "error":
            _prom_counters["sweep_aborted"] += 1
        return summary

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect(allow_memory_fallback=settings.allow_memory_fallback)
        await kafka.connect()

        consumer_task = asyncio.create_task(kafka.consume_sweep_triggers_forever(_sweep, stop_event))
        scheduler = None
        if settings.sweep_scheduler_enabled:
            scheduler = build_nightly_sweep_scheduler(cfg.sweep_cron, _sweep)
            scheduler.start()
        try:
            yield
        finally:
            stop_event.set()
            consumer_task.cancel()
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="Usage Integrity & Compliance API", version="0.3.0", lifespan=lifespan)
    app.state.store = store
    app.state.kafka = kafka
    app.state.cache = cache

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex[:12]
        correlation_id.set(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next: Any) -> Response:
        return await limiter.middleware(request, call_next)

    # ── Error Mapping ───────────────────────────────────────────────

    @app.exception_handler(DeclarationLocked)
    async def _locked_handler(_: Request, exc: DeclarationLocked) -> JSONResponse:
        _prom_counters["declaration_locked"] += 1
        return JSONResponse(status_code=status.HTTP_423_LOCKED, content=exc.to_dict())

    @app.exception_handler(ValidationError)
    async def _validation_handler(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"error": "validation_error", "field": exc.field, "detail": exc.message},
        )

    @app.exception_handler(VehicleNotFound)
    async def _not_found_handler(_: Request, exc: VehicleNotFound) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "vehicle_not_found", "vehicle_id": exc.vehicle_id},
        )

    @app.exception_handler(DataUnavailable)
    async def _unavailable_handler(_: Request, exc: DataUnavailable) -> JSONResponse:
        _prom_counters["data_unavailable"] += 1
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "data_unavailable", "source": exc.source, "retryable": True},
            headers={"Retry-After": "5"},
        )

    @app.exception_handler(DataIntegrityError)
    async def _integrity_handler(_: Request, exc: DataIntegrityError) -> JSONResponse:
        logger.error("Undecodable store record: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "data_integrity", "detail": str(exc)},
        )

    # ── Catalog ─────────────────────────────────────────────────────

    @app.get("/declarations", response_model=list[DeclarationResponse])
    async def get_declarations() -> list[DeclarationResponse]:
        return [
            DeclarationResponse(
                id=c.id.value,
                label=c.label,
                description=c.description,
                max_gap_miles=c.max_gap_miles,
                tax_implication=c.tax_implication,
                insurance_note=c.insurance_note,
                claim_impact=c.claim_impact,
            )
            for c in list_declarations()
        ]

    @app.get("/insurance-tier", response_model=InsuranceTierResponse)
    async def get_insurance_tier(insurance_type: str = "") -> InsuranceTierResponse:
        tier = resolve_insurance_tier(insurance_type)
        return InsuranceTierResponse(type=tier.type.value, revenue_split_percent=tier.revenue_split_percent)

    # ── Vehicle Integrity ───────────────────────────────────────────

    @app.get("/vehicles/{vehicle_id}/assessment")
    async def get_assessment(vehicle_id: str, _: str | None = Depends(auth)) -> dict[str, Any]:
        t0 = time.monotonic()
        assessment = await assess_vehicle(store, vehicle_id, cfg)
        _record_latency("assess", time.monotonic() - t0)
        _prom_counters[f"verdict_{assessment.compliance_assessment.verdict.lower()}"] += 1
        return assessment_to_dict(assessment)

    @app.get("/vehicles/{vehicle_id}/lock")
    async def get_lock(vehicle_id: str, _: str | None = Depends(auth)) -> dict[str, Any]:
        lock = await get_lock_state(store, vehicle_id)
        return {"vehicle_id": vehicle_id, **lock_state_to_dict(lock)}

    @app.get("/vehicles/{vehicle_id}/declaration-preview")
    async def get_declaration_preview(vehicle_id: str, _: str | None = Depends(auth)) -> dict[str, Any]:
        vehicle, analysis, previews = await preview_vehicle_declarations(store, vehicle_id)
        return preview_to_dict(vehicle, analysis, previews)

    @app.put("/vehicles/{vehicle_id}/declaration", response_model=DeclarationUpdateResponse)
    async def put_declaration(
        vehicle_id: str,
        req: DeclarationUpdateRequest,
        _: str | None = Depends(auth),
        actor_id: str = Depends(require_actor),
    ) -> DeclarationUpdateResponse:
        result = await update_declaration(store, vehicle_id, req.declaration_id, actor_id, kafka=kafka)
        if result.changed:
            _prom_counters["declaration_changed"] += 1
        return DeclarationUpdateResponse(
            vehicle_id=result.vehicle_id,
            previous_declaration_id=result.previous_declaration_id.value,
            declaration_id=result.declaration_id.value,
            changed=result.changed,
            actor_id=result.actor_id,
        )

    @app.get("/vehicles/{vehicle_id}/activity")
    async def get_activity(vehicle_id: str, limit: int = 50, _: str | None = Depends(auth)) -> dict[str, Any]:
        if await store.get_vehicle(vehicle_id) is None:
            raise VehicleNotFound(vehicle_id)
        activity = await store.list_activity(vehicle_id, limit=min(limit, 200))
        return {"vehicle_id": vehicle_id, "count": len(activity), "activity": [a.model_dump(mode="json") for a in activity]}

    @app.get("/vehicles/{vehicle_id}/integrity-history")
    async def get_integrity_history(vehicle_id: str, limit: int = 30, _: str | None = Depends(auth)) -> dict[str, Any]:
        rows = await store.fetch_integrity_snapshots(vehicle_id, limit=min(limit, 365))
        sanitized = []
        for r in rows:
            entry = dict(r)
            for k, v in entry.items():
                if hasattr(v, "isoformat"):
                    entry[k] = v.isoformat()
            sanitized.append(entry)
        return {"vehicle_id": vehicle_id, "snapshots": sanitized}

    # ── Fleet Sweep ─────────────────────────────────────────────────

    @app.post("/sweep/trigger", response_model=SweepTriggerResponse)
    async def trigger_sweep(_: str | None = Depends(auth)) -> SweepTriggerResponse:
        await kafka.publish(SWEEP_TRIGGERS_TOPIC, {"source": "api_manual"})
        return SweepTriggerResponse(scheduled=True, message="integrity sweep trigger published")

    @app.post("/sweep/run")
    async def run_sweep_now(req: SweepRunRequest | None = None, _: str | None = Depends(auth)) -> dict[str, Any]:
        t0 = time.monotonic()
        result = await run_integrity_sweep(
            store=store, kafka=kafka, cache=cache, config=cfg,
            vehicle_ids=req.vehicle_ids if req else None,
            cache_ttl_seconds=settings.sweep_cache_ttl_seconds,
        )
        _record_latency("sweep", time.monotonic() - t0)
        return result

    @app.get("/sweep/latest")
    async def get_latest_sweep(_: str | None = Depends(auth)) -> dict[str, Any]:
        summary = await cache.get_json(SWEEP_CACHE_KEY)
        if summary is None:
            raise HTTPException(status_code=404, detail="No sweep has completed yet")
        return summary

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Operational Metrics ─────────────────────────────────────────

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        latencies = sorted(_prom_histograms.get("assess", []))
        return {
            "counters": dict(_prom_counters),
            "assess_latency": {
                "count": len(latencies),
                "p50_ms": round(latencies[len(latencies) // 2] * 1000, 1) if latencies else 0,
                "p95_ms": round(latencies[min(int(len(latencies) * 0.95), len(latencies) - 1)] * 1000, 1) if latencies else 0,
                "p99_ms": round(latencies[min(int(len(latencies) * 0.99), len(latencies) - 1)] * 1000, 1) if latencies else 0,
            },
        }

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=_prometheus_text(), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
