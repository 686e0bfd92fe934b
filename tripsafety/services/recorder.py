"""Turns detector output and rider reports into SafetyViolation records.

Detector writes are upserts keyed on the episode id, so persisting the same
detection twice (a retried write, a re-raised alert) updates one record
instead of creating another.
"""
import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..auth import Reviewer, require_reviewer
from ..config import EnforcementPolicy, config
from ..detection.events import EarlyCompletion, RouteDeviation, SpeedViolation
from ..errors import AuthorizationError, InvalidTransitionError, ValidationError
from ..models import (
    EarlyCompletionRecord,
    PaymentDispute,
    RouteDeviationRecord,
    SafetyViolation,
    SpeedViolationRecord,
    Trip,
)
from ..persistence import get_or_404, get_trip
from ..schemas import (
    VIOLATION_SEVERITIES,
    VIOLATION_TYPES,
    ChatLogEvidence,
    MediaRefEvidence,
    ReportTextEvidence,
    RouteTraceEvidence,
    SpeedLogEvidence,
    SpeedLogReading,
    dump_evidence,
    parse_evidence,
)
from ..utils import new_id, utcnow
from .profiles import refresh_profile
from .strikes import issue_strike

logger = logging.getLogger(__name__)

SPEED_SEVERITY = {"minor": "low", "moderate": "medium", "severe": "high"}
RESPONSE_SEVERITY = {"okay": "low", "pending": "medium", "no_response": "high", "sos": "critical"}

STRIKE_TYPE_FOR_VIOLATION = {
    "speed_excessive": "speed_violation",
    "route_deviation": "route_deviation",
    "early_completion": "early_completion",
    "rider_report": "rider_report",
}

REVIEW_TRANSITIONS = {
    "pending": ("investigating", "confirmed", "dismissed"),
    "investigating": ("confirmed", "dismissed"),
}


def violation_id_for(source_id: str) -> str:
    return f"viol_{source_id}"


def severity_rank(severity: str) -> int:
    return VIOLATION_SEVERITIES.index(severity)


def _upsert_violation(
    db: Session,
    trip: Trip,
    source_id: str,
    violation_type: str,
    severity: str,
    description: str,
    evidence: List[Any],
    timestamp: datetime,
    location=None,
) -> SafetyViolation:
    violation = db.get(SafetyViolation, violation_id_for(source_id))
    if violation is None:
        violation = SafetyViolation(
            id=violation_id_for(source_id),
            trip_id=trip.id,
            driver_id=trip.driver_id,
            rider_id=trip.rider_id,
            type=violation_type,
            timestamp=timestamp,
            lat=location[0] if location else None,
            lon=location[1] if location else None,
            source_id=source_id,
            status="pending",
            strike_issued=False,
        )
        db.add(violation)
    if violation.status in ("pending", "investigating"):
        violation.severity = severity
        violation.description = description
        violation.evidence = dump_evidence(evidence)
    db.flush()
    return violation


def record_speed_violation(db: Session, violation: SpeedViolation) -> SafetyViolation:
    trip = get_trip(db, violation.trip_id)
    record = db.get(SpeedViolationRecord, violation.id)
    if record is None:
        record = SpeedViolationRecord(
            id=violation.id,
            trip_id=trip.id,
            driver_id=trip.driver_id,
            start_time=violation.start_time,
            end_time=violation.end_time,
            duration=violation.duration,
            max_speed=violation.max_speed,
            speed_limit=violation.speed_limit,
            max_excess_speed=violation.max_excess_speed,
            average_excess_speed=violation.average_excess_speed,
            lat=violation.location[0],
            lon=violation.location[1],
            severity=violation.severity,
        )
        db.add(record)

    evidence = [SpeedLogEvidence(readings=[
        SpeedLogReading(timestamp=s.timestamp, speed=s.speed, speed_limit=s.speed_limit)
        for s in violation.samples
    ])]
    result = _upsert_violation(
        db, trip, violation.id, "speed_excessive",
        SPEED_SEVERITY[violation.severity],
        f"Exceeded the speed limit by up to {violation.max_excess_speed:.0f} "
        f"for {violation.duration:.0f}s ({violation.severity})",
        evidence, violation.start_time, violation.location,
    )
    logger.info(f"Speed violation {violation.id} recorded for trip {trip.id} ({violation.severity})")
    refresh_profile(db, trip.driver_id)
    return result


def record_route_deviation(db: Session, deviation: RouteDeviation,
                           planned_route: Sequence = ()) -> SafetyViolation:
    trip = get_trip(db, deviation.trip_id)
    record = db.get(RouteDeviationRecord, deviation.id)
    if record is None:
        record = RouteDeviationRecord(id=deviation.id, trip_id=trip.id, driver_id=trip.driver_id,
                                      timestamp=deviation.timestamp, active=True)
        db.add(record)
    record.planned_lat, record.planned_lon = deviation.planned_location
    record.actual_lat, record.actual_lon = deviation.actual_location
    record.deviation_distance = deviation.deviation_distance
    record.duration = deviation.duration
    record.rider_response = deviation.rider_response
    record.response_timestamp = deviation.response_timestamp
    record.alert_shown = deviation.alert_shown
    record.auto_alert_sent = record.auto_alert_sent or deviation.auto_alert_sent

    evidence = [RouteTraceEvidence(
        points=[deviation.planned_location, deviation.actual_location],
        planned_route=list(planned_route),
    )]
    result = _upsert_violation(
        db, trip, deviation.id, "route_deviation",
        RESPONSE_SEVERITY[deviation.rider_response],
        f"Off route by {deviation.deviation_distance:.0f} for {deviation.duration:.0f}s; "
        f"rider response: {deviation.rider_response}",
        evidence, deviation.timestamp, deviation.actual_location,
    )
    refresh_profile(db, trip.driver_id)
    return result


def clear_route_deviation(db: Session, deviation_id: str, now: Optional[datetime] = None):
    record = db.get(RouteDeviationRecord, deviation_id)
    if record is None or not record.active:
        return record
    record.active = False
    record.cleared_at = now or utcnow()
    db.flush()
    return record


def record_early_completion(db: Session, completion: EarlyCompletion) -> SafetyViolation:
    trip = get_trip(db, completion.trip_id)
    record = db.get(EarlyCompletionRecord, completion.id)
    if record is None:
        record = EarlyCompletionRecord(id=completion.id, trip_id=trip.id, timestamp=completion.timestamp)
        db.add(record)
    record.destination_lat, record.destination_lon = completion.destination_location
    record.actual_lat, record.actual_lon = completion.actual_location
    record.distance_from_destination = completion.distance_from_destination
    record.rider_response = completion.rider_response
    record.response_timestamp = completion.response_timestamp
    record.payment_held = completion.payment_held
    record.resolved = completion.resolved
    record.needs_review = completion.needs_review

    if completion.payment_held and trip.payment_status == "pending":
        trip.payment_status = "held"
    elif not completion.payment_held and trip.payment_status == "held":
        open_dispute = db.query(PaymentDispute).filter(
            PaymentDispute.trip_id == trip.id,
            PaymentDispute.status.in_(("pending", "under_review", "escalated")),
        ).first()
        if open_dispute is None:
            trip.payment_status = "pending"

    evidence = [RouteTraceEvidence(points=[completion.actual_location, completion.destination_location])]
    result = _upsert_violation(
        db, trip, completion.id, "early_completion",
        RESPONSE_SEVERITY[completion.rider_response],
        f"Trip completed {completion.distance_from_destination:.0f} from the destination; "
        f"rider response: {completion.rider_response}",
        evidence, completion.timestamp, completion.actual_location,
    )
    refresh_profile(db, trip.driver_id)
    return result


def submit_rider_report(
    db: Session,
    trip_id: str,
    rider_id: str,
    violation_type: str,
    severity: str,
    description: str,
    evidence: Optional[List[Any]] = None,
    location=None,
    now: Optional[datetime] = None,
) -> SafetyViolation:
    """File a rider's report against the trip's driver."""
    if violation_type not in VIOLATION_TYPES:
        raise ValidationError(f"Unknown violation type: {violation_type}")
    if severity not in VIOLATION_SEVERITIES:
        raise ValidationError(f"Unknown severity: {severity}")
    trip = get_trip(db, trip_id)
    if trip.rider_id != rider_id:
        raise AuthorizationError("Only the trip's rider may report on it")

    violation = SafetyViolation(
        id=new_id("viol"),
        trip_id=trip.id,
        driver_id=trip.driver_id,
        rider_id=rider_id,
        type=violation_type,
        severity=severity,
        description=description,
        evidence=dump_evidence(parse_evidence(evidence)),
        timestamp=now or utcnow(),
        lat=location[0] if location else None,
        lon=location[1] if location else None,
        status="pending",
        strike_issued=False,
    )
    db.add(violation)
    db.flush()
    logger.info(f"Rider {rider_id} reported {violation_type} on trip {trip_id}")
    refresh_profile(db, trip.driver_id, now)
    return violation


def review_violation(
    db: Session,
    violation_id: str,
    status: str,
    reviewer: Reviewer,
    resolution: Optional[str] = None,
    issue_strike_override: Optional[bool] = None,
    now: Optional[datetime] = None,
    policy: Optional[EnforcementPolicy] = None,
) -> SafetyViolation:
    """Move a violation through review.

    Confirming a violation at or above the strike severity floor issues a
    strike keyed on the violation id; ``issue_strike_override`` forces the
    decision either way.
    """
    require_reviewer(reviewer)
    now = now or utcnow()
    policy = policy or config.enforcement_policy()
    violation = get_or_404(db, SafetyViolation, violation_id, "Violation")

    allowed = REVIEW_TRANSITIONS.get(violation.status, ())
    if status not in allowed:
        raise InvalidTransitionError(f"Violation {violation_id} cannot move from {violation.status} to {status}")

    violation.status = status
    violation.reviewed_by = reviewer.id
    violation.reviewed_at = now
    if resolution is not None:
        violation.resolution = resolution

    if status == "confirmed":
        if issue_strike_override is None:
            wants_strike = severity_rank(violation.severity) >= severity_rank(policy.strike_min_severity)
        else:
            wants_strike = issue_strike_override
        if wants_strike:
            strike = issue_strike(
                db, violation.driver_id, violation.trip_id,
                STRIKE_TYPE_FOR_VIOLATION.get(violation.type, "safety_incident"),
                violation.severity,
                violation.description or violation.type,
                violation_id=violation.id, now=now, policy=policy,
            )
            violation.strike_issued = True
            violation.strike_id = strike.id
    db.flush()

    logger.info(f"Violation {violation_id} marked {status} by {reviewer.id}")
    if not violation.strike_issued:
        refresh_profile(db, violation.driver_id, now)
    return violation


def describe_evidence(items: List[Any]) -> List[str]:
    """Human-readable one-liners for every evidence item."""
    lines = []
    for item in parse_evidence(items):
        if isinstance(item, SpeedLogEvidence):
            peak = max((r.speed for r in item.readings), default=0.0)
            lines.append(f"Speed log: {len(item.readings)} readings, peak {peak:.0f}")
        elif isinstance(item, RouteTraceEvidence):
            lines.append(f"Route trace: {len(item.points)} points against "
                         f"{len(item.planned_route)} planned")
        elif isinstance(item, ChatLogEvidence):
            lines.append(f"Chat log: {len(item.messages)} messages")
        elif isinstance(item, MediaRefEvidence):
            lines.append(f"{item.media_type.capitalize()}: {item.url}")
        elif isinstance(item, ReportTextEvidence):
            lines.append(f"Report: {item.text}")
        else:
            raise ValueError(f"Unhandled evidence kind: {getattr(item, 'kind', item)!r}")
    return lines
