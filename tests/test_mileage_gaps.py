from datetime import datetime, timedelta, timezone

import pytest

from compliance.data_models import DeclarationId, DeclarationPeriod, OdometerReading, Severity
from compliance.declarations import get_declaration
from compliance.evaluator import evaluate_compliance
from compliance.mileage_gaps import analyze_gaps, compute_gap

BASE = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _readings(gaps, vehicle_id="veh-1", start=12_000, trip_length=100):
    out = []
    mileage = start
    for i in range(len(gaps) + 1):
        out.append(OdometerReading(
            trip_id=f"trip-{i}",
            vehicle_id=vehicle_id,
            start_mileage=mileage,
            end_mileage=mileage + trip_length,
            started_at=BASE + timedelta(days=3 * i),
            ended_at=BASE + timedelta(days=3 * i, hours=6),
        ))
        if i < len(gaps):
            mileage += trip_length + gaps[i]
    return out


RENTAL = get_declaration(DeclarationId.RENTAL)


def test_gap_is_next_start_minus_previous_end():
    prev, nxt = _readings([340])
    assert compute_gap(prev, nxt) == nxt.start_mileage - prev.end_mileage == 340


def test_zero_trips_is_insufficient():
    result = analyze_gaps([], RENTAL)
    assert result.gaps == ()
    assert result.average_gap_miles == 0
    assert result.max_gap_miles == 0
    assert result.anomaly_count == 0
    assert result.insufficient_data is True


def test_single_trip_is_insufficient():
    result = analyze_gaps(_readings([]), RENTAL)
    assert result.total_intervals == 0
    assert result.average_gap_miles == 0
    assert result.trip_count == 1
    assert result.insufficient_data is True


def test_aggregates_for_mixed_gaps():
    result = analyze_gaps(_readings([200, 900, 300]), RENTAL)
    assert [g.gap_miles for g in result.gaps] == [200, 900, 300]
    assert result.average_gap_miles == pytest.approx(466.67, abs=0.01)
    assert result.max_gap_miles == 900
    assert result.anomaly_count == 1
    assert result.total_intervals == 3
    assert result.unauthorized_miles == 400
    assert result.gaps[1].between_trip_ids == ("trip-1", "trip-2")
    assert result.gaps[1].is_anomalous is True
    assert result.gaps[1].excess_miles == 400


def test_gap_equal_to_threshold_is_not_anomalous():
    result = analyze_gaps(_readings([500]), RENTAL)
    assert result.gaps[0].is_anomalous is False
    assert result.unauthorized_miles == 0


def test_unsorted_input_is_ordered_by_start_time():
    readings = _readings([150, 250])
    result = analyze_gaps(list(reversed(readings)), RENTAL)
    assert [g.gap_miles for g in result.gaps] == [150, 250]


def test_negative_gap_is_excluded_and_recorded():
    readings = _readings([200, 300])
    rolled_back = OdometerReading(
        trip_id="trip-rollback",
        vehicle_id="veh-1",
        start_mileage=readings[-1].end_mileage - 1_000,
        end_mileage=readings[-1].end_mileage - 900,
        started_at=readings[-1].started_at + timedelta(days=2),
        ended_at=readings[-1].started_at + timedelta(days=2, hours=3),
    )
    result = analyze_gaps(readings + [rolled_back], RENTAL)
    assert [g.gap_miles for g in result.gaps] == [200, 300]
    assert result.average_gap_miles == 250
    assert len(result.faults) == 1
    assert result.faults[0].kind == "negative_gap"
    assert result.faults[0].value == -1_000
    assert all(g.gap_miles >= 0 for g in result.gaps)


def test_negative_gap_logs_warning(caplog):
    prev, nxt = _readings([100])
    broken = OdometerReading(
        trip_id="trip-x",
        vehicle_id="veh-1",
        start_mileage=prev.end_mileage - 50,
        end_mileage=prev.end_mileage + 10,
        started_at=nxt.started_at,
        ended_at=nxt.ended_at,
    )
    with caplog.at_level("WARNING", logger="compliance.mileage_gaps"):
        result = analyze_gaps([prev, broken], RENTAL)
    assert result.insufficient_data is True
    assert "rollback" in caplog.text


def test_reversed_reading_breaks_both_neighbouring_intervals():
    readings = _readings([200, 200])
    bad = OdometerReading(
        trip_id="trip-1",
        vehicle_id="veh-1",
        start_mileage=readings[1].start_mileage,
        end_mileage=readings[1].start_mileage - 20,
        started_at=readings[1].started_at,
        ended_at=readings[1].ended_at,
    )
    result = analyze_gaps([readings[0], bad, readings[2]], RENTAL)
    assert result.gaps == ()
    assert result.insufficient_data is True
    assert [f.kind for f in result.faults] == ["reading_reversed", "adjacent_to_reversed", "adjacent_to_reversed"]
    assert [f.trip_ids for f in result.faults[1:]] == [("trip-0", "trip-1"), ("trip-1", "trip-2")]


def _trip(trip_id, start, end, day):
    return OdometerReading(
        trip_id=trip_id,
        vehicle_id="veh-1",
        start_mileage=start,
        end_mileage=end,
        started_at=BASE + timedelta(days=day),
        ended_at=BASE + timedelta(days=day, hours=4),
    )


def test_mistyped_end_mileage_does_not_inflate_the_score():
    # t1 really ran to 900; the ledger recorded 140.
    readings = [
        _trip("t0", 0, 100, 0),
        _trip("t1", 150, 140, 2),
        _trip("t2", 950, 1_050, 4),
        _trip("t3", 1_100, 1_200, 6),
    ]
    result = analyze_gaps(readings, RENTAL)
    assert [(g.between_trip_ids, g.gap_miles) for g in result.gaps] == [(("t2", "t3"), 50)]
    assert result.anomaly_count == 0
    assessment = evaluate_compliance("veh-1", result, RENTAL)
    assert assessment.severity is Severity.COMPLIANT
    assert assessment.compliance_score == 100


def test_threshold_follows_declaration_history():
    readings = _readings([1_200, 1_200])
    history = [
        DeclarationPeriod(DeclarationId.PERSONAL, BASE - timedelta(days=30)),
        DeclarationPeriod(DeclarationId.RENTAL, readings[2].started_at - timedelta(hours=1)),
    ]
    result = analyze_gaps(readings, RENTAL, history)
    assert result.gaps[0].threshold_miles == 3_000
    assert result.gaps[0].is_anomalous is False
    assert result.gaps[1].threshold_miles == 500
    assert result.gaps[1].is_anomalous is True
    assert result.anomaly_count == 1


def test_trip_before_history_uses_earliest_declaration():
    readings = _readings([800])
    history = [DeclarationPeriod(DeclarationId.MIXED, BASE + timedelta(days=365))]
    result = analyze_gaps(readings, RENTAL, history)
    assert result.gaps[0].threshold_miles == 1_500
