from dataclasses import replace
from datetime import timedelta

import pytest
from pydantic import ValidationError as EvidenceError

from tripsafety.detection.events import EarlyCompletion, RouteDeviation, SpeedSample, SpeedViolation
from tripsafety.errors import AuthorizationError, InvalidTransitionError
from tripsafety.models import SafetyViolation, Strike
from tripsafety.services import recorder

from conftest import T0


def speed_violation(severity="moderate", max_excess=15.0):
    samples = tuple(SpeedSample(timestamp=T0 + timedelta(seconds=s), speed=50 + max_excess,
                                speed_limit=50.0, excess=max_excess) for s in range(0, 13))
    return SpeedViolation(
        id="spd_abc", trip_id="trip_1", start_time=T0, end_time=T0 + timedelta(seconds=12),
        duration=12.0, max_speed=50 + max_excess, speed_limit=50.0, max_excess_speed=max_excess,
        average_excess_speed=max_excess, location=(14.6, 121.0), severity=severity, samples=samples,
    )


def deviation(response="pending"):
    return RouteDeviation(
        id="dev_abc", trip_id="trip_1", timestamp=T0 + timedelta(seconds=30),
        planned_location=(14.6, 121.0), actual_location=(14.6, 121.002),
        deviation_distance=215.0, duration=30.0, rider_response=response, alert_shown=True,
    )


class TestDetectorRecords:
    """Test persistence of detector output as violations."""

    def test_speed_violation_maps_severity(self, db, make_trip):
        make_trip()
        violation = recorder.record_speed_violation(db, speed_violation())
        assert violation.id == "viol_spd_abc"
        assert violation.type == "speed_excessive"
        assert violation.severity == "medium"
        assert violation.status == "pending"
        assert violation.evidence[0]["kind"] == "speed_log"
        assert len(violation.evidence[0]["readings"]) == 13

    def test_rerecording_is_idempotent(self, db, make_trip):
        make_trip()
        recorder.record_speed_violation(db, speed_violation())
        recorder.record_speed_violation(db, speed_violation())
        assert db.query(SafetyViolation).count() == 1

    def test_deviation_severity_follows_rider_response(self, db, make_trip):
        make_trip()
        violation = recorder.record_route_deviation(db, deviation(), [(14.6, 121.0), (14.7, 121.0)])
        assert violation.severity == "medium"
        violation = recorder.record_route_deviation(db, deviation("sos"))
        assert violation.severity == "critical"
        assert db.query(SafetyViolation).count() == 1

    def test_clear_deviation(self, db, make_trip):
        make_trip()
        recorder.record_route_deviation(db, deviation())
        record = recorder.clear_route_deviation(db, "dev_abc", T0 + timedelta(minutes=2))
        assert not record.active
        assert record.cleared_at == T0 + timedelta(minutes=2)

    def test_early_completion_holds_payment(self, db, make_trip):
        trip = make_trip(destination=(14.7, 121.0))
        completion = EarlyCompletion(
            id="early_abc", trip_id="trip_1", timestamp=T0, destination_location=(14.7, 121.0),
            actual_location=(14.6, 121.0), distance_from_destination=11000.0,
            response_deadline=T0 + timedelta(seconds=60),
        )
        recorder.record_early_completion(db, replace(completion, rider_response="sos",
                                                     payment_held=True, resolved=True))
        assert trip.payment_status == "held"
        violation = db.get(SafetyViolation, "viol_early_abc")
        assert violation.severity == "critical"


class TestRiderReports:
    """Test rider-filed reports."""

    def test_report_with_evidence(self, db, make_trip):
        make_trip()
        violation = recorder.submit_rider_report(
            db, "trip_1", "rider_1", "harassment", "high", "Driver was aggressive",
            evidence=[{"kind": "report_text", "text": "Shouted at me"},
                      {"kind": "media_ref", "media_type": "audio", "url": "https://cdn.example/a.m4a"}],
        )
        assert violation.driver_id == "driver_1"
        assert recorder.describe_evidence(violation.evidence) == [
            "Report: Shouted at me", "Audio: https://cdn.example/a.m4a",
        ]

    def test_only_trip_rider_may_report(self, db, make_trip):
        make_trip()
        with pytest.raises(AuthorizationError):
            recorder.submit_rider_report(db, "trip_1", "rider_2", "rider_report", "low", "x")


class TestReview:
    """Test the reviewer workflow and strike issuance."""

    def test_confirming_issues_strike(self, db, make_trip, reviewer):
        make_trip()
        violation = recorder.record_speed_violation(db, speed_violation())
        recorder.review_violation(db, violation.id, "investigating", reviewer, now=T0)
        recorder.review_violation(db, violation.id, "confirmed", reviewer, resolution="Confirmed by GPS", now=T0)
        assert violation.strike_issued
        strike = db.get(Strike, violation.strike_id)
        assert strike.type == "speed_violation"
        assert strike.violation_id == violation.id
        assert strike.expires_at == T0 + timedelta(days=90)

    def test_low_severity_confirmation_skips_strike(self, db, make_trip, reviewer):
        make_trip()
        violation = recorder.record_speed_violation(db, speed_violation("minor", 5.0))
        recorder.review_violation(db, violation.id, "confirmed", reviewer, now=T0)
        assert not violation.strike_issued
        assert db.query(Strike).count() == 0

    def test_strike_override(self, db, make_trip, reviewer):
        make_trip()
        violation = recorder.record_speed_violation(db, speed_violation("minor", 5.0))
        recorder.review_violation(db, violation.id, "confirmed", reviewer, issue_strike_override=True, now=T0)
        assert violation.strike_issued

    def test_dismissed_is_final(self, db, make_trip, reviewer):
        make_trip()
        violation = recorder.record_speed_violation(db, speed_violation())
        recorder.review_violation(db, violation.id, "dismissed", reviewer, now=T0)
        with pytest.raises(InvalidTransitionError):
            recorder.review_violation(db, violation.id, "confirmed", reviewer, now=T0)

    def test_reviewed_violation_is_not_overwritten(self, db, make_trip, reviewer):
        make_trip()
        violation = recorder.record_speed_violation(db, speed_violation())
        recorder.review_violation(db, violation.id, "dismissed", reviewer, now=T0)
        recorder.record_speed_violation(db, speed_violation("severe", 25.0))
        assert violation.severity == "medium"

    def test_unknown_evidence_kind(self):
        with pytest.raises(EvidenceError):
            recorder.describe_evidence([{"kind": "hologram"}])
