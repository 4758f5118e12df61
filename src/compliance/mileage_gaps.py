from __future__ import annotations

import bisect
import logging
from datetime import datetime
from typing import Sequence

import numpy as np

from compliance.data_models import (
    DataIntegrityFault,
    DeclarationCategory,
    DeclarationPeriod,
    GapAnalysis,
    MileageGapRecord,
    OdometerReading,
)
from compliance.declarations import get_declaration

logger = logging.getLogger(__name__)


class _ThresholdTimeline:
    """Resolves the declared gap threshold in force at a point in time."""

    def __init__(self, category: DeclarationCategory, history: Sequence[DeclarationPeriod] | None) -> None:
        self.current = category.max_gap_miles
        periods = sorted(history or (), key=lambda p: p.effective_from)
        self._starts: list[datetime] = [p.effective_from for p in periods]
        self._thresholds: list[int] = [get_declaration(p.declaration_id).max_gap_miles for p in periods]

    def at(self, when: datetime) -> int:
        if not self._starts:
            return self.current
        idx = bisect.bisect_right(self._starts, when) - 1
        if idx < 0:
            # Trip predates recorded history; the earliest declaration is the best known.
            return self._thresholds[0]
        return self._thresholds[idx]


def compute_gap(previous: OdometerReading, following: OdometerReading) -> int:
    return following.start_mileage - previous.end_mileage


def analyze_gaps(
    readings: Sequence[OdometerReading],
    category: DeclarationCategory,
    history: Sequence[DeclarationPeriod] | None = None,
) -> GapAnalysis:
    ordered = sorted(readings, key=lambda r: r.started_at)
    faults: list[DataIntegrityFault] = []

    reversed_trips: set[str] = set()
    for reading in ordered:
        if reading.end_mileage < reading.start_mileage:
            logger.warning(
                "Excluding trip %s on %s: end mileage %d below start mileage %d",
                reading.trip_id, reading.vehicle_id, reading.end_mileage, reading.start_mileage,
            )
            faults.append(DataIntegrityFault(
                trip_ids=(reading.trip_id,),
                kind="reading_reversed",
                detail="end mileage below start mileage",
                value=reading.end_mileage - reading.start_mileage,
            ))
            reversed_trips.add(reading.trip_id)

    timeline = _ThresholdTimeline(category, history)
    gaps: list[MileageGapRecord] = []
    for previous, following in zip(ordered, ordered[1:]):
        gap = compute_gap(previous, following)
        # A reversed trip is a break point: neither interval touching it is trusted.
        if previous.trip_id in reversed_trips or following.trip_id in reversed_trips:
            faults.append(DataIntegrityFault(
                trip_ids=(previous.trip_id, following.trip_id),
                kind="adjacent_to_reversed",
                detail="interval borders a trip with a reversed odometer reading",
                value=gap,
            ))
            continue
        if gap < 0:
            logger.warning(
                "Odometer rollback between trips %s and %s on %s: gap %d miles excluded",
                previous.trip_id, following.trip_id, following.vehicle_id, gap,
            )
            faults.append(DataIntegrityFault(
                trip_ids=(previous.trip_id, following.trip_id),
                kind="negative_gap",
                detail="next trip starts below previous trip's end mileage",
                value=gap,
            ))
            continue
        threshold = timeline.at(following.started_at)
        anomalous = gap > threshold
        gaps.append(MileageGapRecord(
            between_trip_ids=(previous.trip_id, following.trip_id),
            gap_miles=gap,
            is_anomalous=anomalous,
            threshold_miles=threshold,
            excess_miles=gap - threshold if anomalous else 0,
        ))

    if not gaps:
        return GapAnalysis(faults=tuple(faults), trip_count=len(ordered))

    values = np.asarray([g.gap_miles for g in gaps], dtype=float)
    return GapAnalysis(
        gaps=tuple(gaps),
        average_gap_miles=round(float(np.mean(values)), 2),
        max_gap_miles=int(np.max(values)),
        anomaly_count=sum(1 for g in gaps if g.is_anomalous),
        total_intervals=len(gaps),
        unauthorized_miles=sum(g.excess_miles for g in gaps),
        faults=tuple(faults),
        trip_count=len(ordered),
    )
