from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, MetaData, String, Table, Column, and_, exists, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from compliance.activity import Activity, decode_activity, encode_activity
from compliance.data_models import (
    ClaimReference,
    ClaimStatus,
    DeclarationId,
    DeclarationPeriod,
    OdometerReading,
    VehicleRecord,
)
from compliance.declarations import get_declaration
from compliance.errors import DataIntegrityError, DataUnavailable, VehicleNotFound
from compliance.lock_guard import TERMINAL_CLAIM_STATUSES, is_active_status, normalize_claim_status

try:
    import redis.asyncio as redis
except ModuleNotFoundError:  # pragma: no cover
    redis = None

logger = logging.getLogger(__name__)

metadata = MetaData()

vehicles_table = Table(
    "vehicles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("host_id", String(36), nullable=False, index=True),
    Column("declaration_id", String(32), nullable=False),
    Column("insurance_type", String(32), nullable=False, default="none"),
    Column("insurance_verified", Boolean, nullable=False, default=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("updated_by", String(64), nullable=True),
)

declaration_history_table = Table(
    "declaration_history",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), nullable=False, index=True),
    Column("declaration_id", String(32), nullable=False),
    Column("effective_from", DateTime(timezone=True), nullable=False),
    Column("actor_id", String(64), nullable=False),
)

odometer_readings_table = Table(
    "odometer_readings",
    metadata,
    Column("trip_id", String(36), primary_key=True),
    Column("vehicle_id", String(36), nullable=False, index=True),
    Column("start_mileage", Integer, nullable=False),
    Column("end_mileage", Integer, nullable=False),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("ended_at", DateTime(timezone=True), nullable=False),
)

claims_table = Table(
    "claims",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), nullable=False, index=True),
    Column("status", String(32), nullable=False),
    Column("filed_at", DateTime(timezone=True), nullable=False),
    Column("estimated_cost", Float, nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

vehicle_activity_table = Table(
    "vehicle_activity",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), nullable=False, index=True),
    Column("category", String(32), nullable=False),
    Column("payload_json", JSON, nullable=False),
    Column("occurred_at", DateTime(timezone=True), nullable=False),
)

integrity_snapshots_table = Table(
    "integrity_snapshots",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), nullable=False, index=True),
    Column("overall_score", Float, nullable=False),
    Column("tier", String(32), nullable=False),
    Column("compliance_score", Float, nullable=False),
    Column("severity", String(32), nullable=False),
    Column("insufficient_data", Boolean, nullable=False, default=False),
    Column("has_active_claim", Boolean, nullable=False, default=False),
    Column("details_json", JSON, nullable=False, default=dict),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

_TERMINAL_VALUES = [s.value for s in TERMINAL_CLAIM_STATUSES]


class RedisCache:
    def __init__(self, redis_url: str, namespace: str = "integrity") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        if redis is None:
            return
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            logger.info("Redis unreachable at %s; using in-process cache", self.redis_url)
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                return None
        now = asyncio.get_running_loop().time()
        if full_key in self._expiry and now > self._expiry[full_key]:
            self._mem.pop(full_key, None)
            self._expiry.pop(full_key, None)
            return None
        raw = self._mem.get(full_key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value, default=str)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception:
                logger.warning("Redis write failed for %s; keeping value in process", full_key)
        self._mem[full_key] = payload
        self._expiry[full_key] = asyncio.get_running_loop().time() + ttl_seconds


def _decode_declaration(value: str, vehicle_id: str) -> DeclarationId:
    try:
        return DeclarationId(value)
    except ValueError as exc:
        raise DataIntegrityError(f"Vehicle {vehicle_id} has unknown declaration {value!r}") from exc


def _claim_from_row(row: dict[str, Any]) -> ClaimReference:
    status = normalize_claim_status(row["status"]) or row["status"]
    cost = row.get("estimated_cost")
    return ClaimReference(
        claim_id=row["id"],
        status=status,
        filed_at=row["filed_at"],
        estimated_cost=None if cost is None else float(cost),
    )


def _reading_from_row(row: dict[str, Any]) -> OdometerReading:
    return OdometerReading(
        trip_id=row["trip_id"],
        vehicle_id=row["vehicle_id"],
        start_mileage=int(row["start_mileage"]),
        end_mileage=int(row["end_mileage"]),
        started_at=row["started_at"],
        ended_at=row["ended_at"],
    )


class PostgresStore:
    """Trip ledger, claims store and vehicle record store behind one connection.

    Without an engine (development, tests) the same API is served from memory.
    Once an engine is attached, any database failure surfaces as DataUnavailable.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._write_lock = asyncio.Lock()
        self._mem_vehicles: dict[str, dict[str, Any]] = {}
        self._mem_history: list[dict[str, Any]] = []
        self._mem_readings: dict[str, dict[str, Any]] = {}
        self._mem_claims: dict[str, dict[str, Any]] = {}
        self._mem_activity: list[dict[str, Any]] = []
        self._mem_snapshots: list[dict[str, Any]] = []

    async def connect(self, allow_memory_fallback: bool = True) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception as exc:
            self.engine = None
            if not allow_memory_fallback:
                raise DataUnavailable("postgres", cause=exc) from exc
            logger.warning("Postgres unavailable (%s); serving from in-memory store", exc)
            self._fallback_mode = True

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None:
            return False
        if self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    @asynccontextmanager
    async def _guard(self, source: str, vehicle_id: str | None = None) -> AsyncIterator[None]:
        try:
            yield
        except (SQLAlchemyError, OSError) as exc:
            logger.error("%s query failed for vehicle %s: %s", source, vehicle_id, exc)
            raise DataUnavailable(source, vehicle_id, exc) from exc

    # ── Vehicle record store ────────────────────────────────────────

    async def upsert_vehicle(
        self,
        *,
        vehicle_id: str,
        host_id: str,
        declaration_id: DeclarationId | str,
        insurance_type: str = "none",
        insurance_verified: bool = False,
    ) -> None:
        """Register a vehicle or refresh its host and insurance fields.

        The declaration is only taken on first registration; afterwards it
        changes solely through commit_declaration_change.
        """
        now = datetime.now(timezone.utc)
        declared = get_declaration(declaration_id).id.value
        row = {
            "id": vehicle_id,
            "host_id": host_id,
            "declaration_id": declared,
            "insurance_type": insurance_type,
            "insurance_verified": bool(insurance_verified),
            "updated_at": now,
            "updated_by": None,
        }
        history = {
            "id": str(uuid4()),
            "vehicle_id": vehicle_id,
            "declaration_id": declared,
            "effective_from": now,
            "actor_id": "registration",
        }
        refresh = {k: row[k] for k in ("host_id", "insurance_type", "insurance_verified", "updated_at")}
        if self.engine is None:
            async with self._write_lock:
                existing = self._mem_vehicles.get(vehicle_id)
                if existing is None:
                    self._mem_vehicles[vehicle_id] = row
                    self._mem_history.append(history)
                else:
                    existing.update(refresh)
            return
        async with self._guard("vehicle_store", vehicle_id):
            async with self.engine.begin() as conn:
                existing = (await conn.execute(
                    select(vehicles_table.c.id).where(vehicles_table.c.id == vehicle_id).with_for_update()
                )).first()
                if existing is None:
                    await conn.execute(insert(vehicles_table).values(**row))
                    await conn.execute(insert(declaration_history_table).values(**history))
                else:
                    await conn.execute(
                        update(vehicles_table).where(vehicles_table.c.id == vehicle_id).values(**refresh)
                    )

    async def get_vehicle(self, vehicle_id: str) -> VehicleRecord | None:
        if self.engine is None:
            row = self._mem_vehicles.get(vehicle_id)
            if row is None:
                return None
            history = [h for h in self._mem_history if h["vehicle_id"] == vehicle_id]
            return self._vehicle_from_rows(row, history)

        async with self._guard("vehicle_store", vehicle_id):
            async with self.engine.connect() as conn:
                row = (await conn.execute(
                    select(vehicles_table).where(vehicles_table.c.id == vehicle_id)
                )).first()
                if row is None:
                    return None
                history_rows = (await conn.execute(
                    select(declaration_history_table)
                    .where(declaration_history_table.c.vehicle_id == vehicle_id)
                    .order_by(declaration_history_table.c.effective_from)
                )).all()
        return self._vehicle_from_rows(dict(row._mapping), [dict(h._mapping) for h in history_rows])

    @staticmethod
    def _vehicle_from_rows(row: dict[str, Any], history: list[dict[str, Any]]) -> VehicleRecord:
        vehicle_id = row["id"]
        periods = tuple(
            DeclarationPeriod(
                declaration_id=_decode_declaration(h["declaration_id"], vehicle_id),
                effective_from=h["effective_from"],
            )
            for h in sorted(history, key=lambda h: h["effective_from"])
        )
        return VehicleRecord(
            vehicle_id=vehicle_id,
            host_id=row["host_id"],
            declaration_id=_decode_declaration(row["declaration_id"], vehicle_id),
            insurance_type=row.get("insurance_type") or "none",
            insurance_verified=bool(row.get("insurance_verified")),
            declaration_history=periods,
        )

    async def list_vehicle_ids(self) -> list[str]:
        if self.engine is None:
            return sorted(self._mem_vehicles)
        async with self._guard("vehicle_store"):
            async with self.engine.connect() as conn:
                rows = (await conn.execute(select(vehicles_table.c.id).order_by(vehicles_table.c.id))).all()
        return [r.id for r in rows]

    async def commit_declaration_change(
        self,
        vehicle_id: str,
        new_declaration_id: DeclarationId,
        actor_id: str,
        activity: Activity | None = None,
    ) -> ClaimReference | None:
        """Write a new declaration unless an active claim exists at commit time.

        Returns the blocking claim instead of writing when one is found, so a
        claim filed after the caller's lock check still prevents the change.
        The history period and the audit activity row are written in the same
        transaction as the declaration, so either all of them land or none do.
        """
        now = datetime.now(timezone.utc)
        history = {
            "id": str(uuid4()),
            "vehicle_id": vehicle_id,
            "declaration_id": new_declaration_id.value,
            "effective_from": now,
            "actor_id": actor_id,
        }
        if self.engine is None:
            async with self._write_lock:
                row = self._mem_vehicles.get(vehicle_id)
                if row is None:
                    raise VehicleNotFound(vehicle_id)
                blocking = self._mem_active_claim(vehicle_id)
                if blocking is not None:
                    return blocking
                # Build every row before mutating anything.
                activity_row = None if activity is None else self._activity_row(activity)
                row["declaration_id"] = new_declaration_id.value
                row["updated_at"] = now
                row["updated_by"] = actor_id
                self._mem_history.append(history)
                if activity_row is not None:
                    self._mem_activity.append(activity_row)
            return None

        activity_row = None if activity is None else self._activity_row(activity)
        no_active_claim = ~exists(
            select(claims_table.c.id).where(and_(
                claims_table.c.vehicle_id == vehicle_id,
                ~claims_table.c.status.in_(_TERMINAL_VALUES),
            ))
        )
        async with self._guard("claims_store", vehicle_id):
            async with self.engine.begin() as conn:
                locked_row = (await conn.execute(
                    select(vehicles_table.c.id).where(vehicles_table.c.id == vehicle_id).with_for_update()
                )).first()
                if locked_row is None:
                    raise VehicleNotFound(vehicle_id)
                result = await conn.execute(
                    update(vehicles_table)
                    .where(vehicles_table.c.id == vehicle_id)
                    .where(no_active_claim)
                    .values(declaration_id=new_declaration_id.value, updated_at=now, updated_by=actor_id)
                )
                if result.rowcount == 0:
                    claim_row = (await conn.execute(
                        select(claims_table)
                        .where(claims_table.c.vehicle_id == vehicle_id)
                        .where(~claims_table.c.status.in_(_TERMINAL_VALUES))
                        .order_by(claims_table.c.filed_at.desc())
                        .limit(1)
                    )).first()
                    return _claim_from_row(dict(claim_row._mapping)) if claim_row else None
                await conn.execute(insert(declaration_history_table).values(**history))
                if activity_row is not None:
                    await conn.execute(insert(vehicle_activity_table).values(**activity_row))
        return None

    # ── Trip ledger ─────────────────────────────────────────────────

    async def insert_odometer_reading(self, reading: OdometerReading) -> str:
        row = {
            "trip_id": reading.trip_id,
            "vehicle_id": reading.vehicle_id,
            "start_mileage": int(reading.start_mileage),
            "end_mileage": int(reading.end_mileage),
            "started_at": reading.started_at,
            "ended_at": reading.ended_at,
        }
        if self.engine is None:
            self._mem_readings[reading.trip_id] = row
            return reading.trip_id
        async with self._guard("trip_ledger", reading.vehicle_id):
            async with self.engine.begin() as conn:
                await conn.execute(insert(odometer_readings_table).values(**row))
        return reading.trip_id

    async def list_odometer_readings(self, vehicle_id: str) -> list[OdometerReading]:
        if self.engine is None:
            rows = [r for r in self._mem_readings.values() if r["vehicle_id"] == vehicle_id]
            return [_reading_from_row(r) for r in sorted(rows, key=lambda r: r["started_at"])]
        stmt = (
            select(odometer_readings_table)
            .where(odometer_readings_table.c.vehicle_id == vehicle_id)
            .order_by(odometer_readings_table.c.started_at)
        )
        async with self._guard("trip_ledger", vehicle_id):
            async with self.engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        return [_reading_from_row(dict(r._mapping)) for r in rows]

    # ── Claims store ────────────────────────────────────────────────

    async def upsert_claim(
        self,
        *,
        claim_id: str,
        vehicle_id: str,
        status: ClaimStatus | str,
        filed_at: datetime | None = None,
        estimated_cost: float | None = None,
    ) -> str:
        now = datetime.now(timezone.utc)
        normalized = normalize_claim_status(status)
        status_value = normalized.value if normalized is not None else str(status)
        if self.engine is None:
            async with self._write_lock:
                existing = self._mem_claims.get(claim_id)
                self._mem_claims[claim_id] = {
                    "id": claim_id,
                    "vehicle_id": vehicle_id,
                    "status": status_value,
                    "filed_at": filed_at or (existing["filed_at"] if existing else now),
                    "estimated_cost": estimated_cost if estimated_cost is not None else (existing or {}).get("estimated_cost"),
                    "updated_at": now,
                }
            return claim_id

        async with self._guard("claims_store", vehicle_id):
            async with self.engine.begin() as conn:
                # Serialize with declaration commits on the same vehicle.
                await conn.execute(
                    select(vehicles_table.c.id).where(vehicles_table.c.id == vehicle_id).with_for_update()
                )
                existing = (await conn.execute(
                    select(claims_table.c.id).where(claims_table.c.id == claim_id)
                )).first()
                values: dict[str, Any] = {"vehicle_id": vehicle_id, "status": status_value, "updated_at": now}
                if estimated_cost is not None:
                    values["estimated_cost"] = float(estimated_cost)
                if existing is None:
                    await conn.execute(insert(claims_table).values(
                        id=claim_id, filed_at=filed_at or now, **values,
                    ))
                else:
                    if filed_at is not None:
                        values["filed_at"] = filed_at
                    await conn.execute(update(claims_table).where(claims_table.c.id == claim_id).values(**values))
        return claim_id

    def _mem_active_claim(self, vehicle_id: str) -> ClaimReference | None:
        active = [
            c for c in self._mem_claims.values()
            if c["vehicle_id"] == vehicle_id and is_active_status(c["status"])
        ]
        if not active:
            return None
        latest = max(active, key=lambda c: c["filed_at"])
        return _claim_from_row(latest)

    async def get_active_claim(self, vehicle_id: str) -> ClaimReference | None:
        if self.engine is None:
            return self._mem_active_claim(vehicle_id)
        stmt = (
            select(claims_table)
            .where(claims_table.c.vehicle_id == vehicle_id)
            .where(~claims_table.c.status.in_(_TERMINAL_VALUES))
            .order_by(claims_table.c.filed_at.desc())
            .limit(1)
        )
        async with self._guard("claims_store", vehicle_id):
            async with self.engine.connect() as conn:
                row = (await conn.execute(stmt)).first()
        return _claim_from_row(dict(row._mapping)) if row else None

    # ── Activity log ────────────────────────────────────────────────

    @staticmethod
    def _activity_row(activity: Activity) -> dict[str, Any]:
        return {
            "id": activity.id,
            "vehicle_id": activity.vehicle_id,
            "category": activity.category,
            "payload_json": encode_activity(activity),
            "occurred_at": activity.occurred_at,
        }

    async def record_activity(self, activity: Activity) -> str:
        row = self._activity_row(activity)
        if self.engine is None:
            self._mem_activity.append(row)
            return activity.id
        async with self._guard("activity_log", activity.vehicle_id):
            async with self.engine.begin() as conn:
                await conn.execute(insert(vehicle_activity_table).values(**row))
        return activity.id

    async def list_activity(self, vehicle_id: str, limit: int = 50) -> list[Activity]:
        if self.engine is None:
            rows = [r for r in self._mem_activity if r["vehicle_id"] == vehicle_id]
            rows = sorted(rows, key=lambda r: r["occurred_at"], reverse=True)[:limit]
        else:
            stmt = (
                select(vehicle_activity_table)
                .where(vehicle_activity_table.c.vehicle_id == vehicle_id)
                .order_by(vehicle_activity_table.c.occurred_at.desc())
                .limit(limit)
            )
            async with self._guard("activity_log", vehicle_id):
                async with self.engine.connect() as conn:
                    rows = [dict(r._mapping) for r in (await conn.execute(stmt)).all()]
        out: list[Activity] = []
        for row in rows:
            try:
                out.append(decode_activity(row["payload_json"]))
            except PydanticValidationError as exc:
                raise DataIntegrityError(f"Activity {row['id']} has an invalid {row['category']} payload") from exc
        return out

    # ── Integrity snapshots ─────────────────────────────────────────

    async def insert_integrity_snapshot(self, record: dict[str, Any]) -> str:
        row_id = str(uuid4())
        row = {
            "id": row_id,
            "vehicle_id": record["vehicle_id"],
            "overall_score": float(record["overall_score"]),
            "tier": record["tier"],
            "compliance_score": float(record["compliance_score"]),
            "severity": record["severity"],
            "insufficient_data": bool(record.get("insufficient_data", False)),
            "has_active_claim": bool(record.get("has_active_claim", False)),
            "details_json": record.get("details_json", {}),
            "created_at": datetime.now(timezone.utc),
        }
        if self.engine is None:
            self._mem_snapshots.append(row)
            return row_id
        async with self._guard("snapshot_store", record["vehicle_id"]):
            async with self.engine.begin() as conn:
                await conn.execute(insert(integrity_snapshots_table).values(**row))
        return row_id

    async def fetch_integrity_snapshots(self, vehicle_id: str, limit: int = 30) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [r for r in self._mem_snapshots if r["vehicle_id"] == vehicle_id]
            return sorted(rows, key=lambda r: r["created_at"], reverse=True)[:limit]
        stmt = (
            select(integrity_snapshots_table)
            .where(integrity_snapshots_table.c.vehicle_id == vehicle_id)
            .order_by(integrity_snapshots_table.c.created_at.desc())
            .limit(limit)
        )
        async with self._guard("snapshot_store", vehicle_id):
            async with self.engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]
