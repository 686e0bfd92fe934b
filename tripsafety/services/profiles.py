"""Driver safety profile: a materialised view over strikes, suspensions,
ratings and per-trip detections.

Only ``refresh_profile`` writes the aggregate. It is called from inside the
transaction that changed a contributing record, and the profile's version
column turns a concurrent refresh into a StaleDataError instead of a lost
update.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import AuthorizationError, ConflictError
from ..models import (
    DriverSafetyProfile,
    RouteDeviationRecord,
    SafetyRating,
    SafetyViolation,
    SpeedViolationRecord,
    Strike,
    Suspension,
    Trip,
)
from ..persistence import get_trip
from ..utils import utcnow

logger = logging.getLogger(__name__)

RECENT_TRIPS_WINDOW = 100

BADGE_DESCRIPTIONS = {
    "safety_champion": "Perfect 5.0 safety rating across 100+ trips",
    "trusted_driver": "Safety rating of 4.8 or higher",
    "route_master": "99%+ route adherence",
    "speed_conscious": "100% speed compliance",
    "streak_50": "50 trips in a row without a safety violation",
    "streak_100": "100 trips in a row without a safety violation",
}


def get_or_create_profile(db: Session, driver_id: str) -> DriverSafetyProfile:
    profile = db.get(DriverSafetyProfile, driver_id)
    if profile is None:
        profile = DriverSafetyProfile(
            driver_id=driver_id,
            safety_rating=5.0,
            total_safety_ratings=0,
            rating_distribution={str(i): 0 for i in range(1, 6)},
            route_adherence_score=100,
            speed_compliance_score=100,
            strike_ids=[],
            active_strikes=0,
            suspension_status="active",
            badges=[],
            safe_trips_streak=0,
        )
        db.add(profile)
        db.flush()
    return profile


def active_strikes(db: Session, driver_id: str, now: datetime) -> List[Strike]:
    return db.query(Strike).filter(
        Strike.driver_id == driver_id,
        Strike.status == "active",
        Strike.expires_at > now,
    ).order_by(Strike.issued_at).all()


def current_suspension(db: Session, driver_id: str) -> Optional[Suspension]:
    return db.query(Suspension).filter(
        Suspension.driver_id == driver_id,
        Suspension.status == "active",
    ).order_by(Suspension.started_at.desc()).first()


def _trip_scores(db: Session, driver_id: str):
    trips = db.query(Trip).filter(
        Trip.driver_id == driver_id,
        Trip.status == "completed",
    ).order_by(Trip.completed_at.desc()).limit(RECENT_TRIPS_WINDOW).all()
    if not trips:
        return 100, 100, 0, 0

    trip_ids = [t.id for t in trips]
    deviated = {row[0] for row in db.query(RouteDeviationRecord.trip_id).filter(
        RouteDeviationRecord.trip_id.in_(trip_ids),
        RouteDeviationRecord.alert_shown.is_(True),
    ).distinct()}
    speeding = {row[0] for row in db.query(SpeedViolationRecord.trip_id).filter(
        SpeedViolationRecord.trip_id.in_(trip_ids),
    ).distinct()}

    streak = 0
    for trip in trips:
        if trip.id in deviated or trip.id in speeding:
            break
        streak += 1

    total = len(trips)
    adherence = round((total - len(deviated)) / total * 100)
    compliance = round((total - len(speeding)) / total * 100)
    return adherence, compliance, streak, total


def _compute_badges(profile: DriverSafetyProfile, completed_trips: int, now: datetime) -> List[Dict]:
    earned = []
    if profile.safety_rating >= 5.0 and profile.total_safety_ratings > 0 and completed_trips >= 100:
        earned.append("safety_champion")
    if profile.safety_rating >= 4.8 and profile.total_safety_ratings > 0:
        earned.append("trusted_driver")
    if completed_trips > 0 and profile.route_adherence_score >= 99:
        earned.append("route_master")
    if completed_trips > 0 and profile.speed_compliance_score == 100:
        earned.append("speed_conscious")
    if profile.safe_trips_streak >= 50:
        earned.append("streak_50")
    if profile.safe_trips_streak >= 100:
        earned.append("streak_100")

    previous = {b["type"]: b for b in (profile.badges or [])}
    return [
        previous.get(badge) or {
            "type": badge,
            "earned_at": now.isoformat(),
            "description": BADGE_DESCRIPTIONS[badge],
        }
        for badge in earned
    ]


def refresh_profile(db: Session, driver_id: str, now: Optional[datetime] = None) -> DriverSafetyProfile:
    """Recompute every field of the driver's profile from its sources."""
    now = now or utcnow()
    profile = get_or_create_profile(db, driver_id)

    ratings = db.query(SafetyRating.overall_safety_score).filter(SafetyRating.driver_id == driver_id).all()
    distribution = {str(i): 0 for i in range(1, 6)}
    for (score,) in ratings:
        distribution[str(score)] += 1
    profile.total_safety_ratings = len(ratings)
    profile.safety_rating = round(sum(s for (s,) in ratings) / len(ratings), 1) if ratings else 5.0
    profile.rating_distribution = distribution

    adherence, compliance, streak, completed_trips = _trip_scores(db, driver_id)
    profile.route_adherence_score = adherence
    profile.speed_compliance_score = compliance
    profile.safe_trips_streak = streak

    strikes = active_strikes(db, driver_id, now)
    profile.strike_ids = [s.id for s in strikes]
    profile.active_strikes = len(strikes)

    suspension = current_suspension(db, driver_id)
    if suspension is None:
        profile.suspension_status = "active"
        profile.current_suspension_id = None
    else:
        profile.suspension_status = "suspended_perm" if suspension.type == "permanent" else "suspended_temp"
        profile.current_suspension_id = suspension.id

    last = db.query(SafetyViolation.timestamp).filter(
        SafetyViolation.driver_id == driver_id,
        SafetyViolation.status != "dismissed",
    ).order_by(SafetyViolation.timestamp.desc()).first()
    profile.last_violation_at = last[0] if last else None

    profile.badges = _compute_badges(profile, completed_trips, now)
    profile.updated_at = now
    db.flush()
    return profile


def record_safety_rating(
    db: Session,
    trip_id: str,
    rider_id: str,
    overall_safety_score: int,
    traffic_laws_followed: Optional[int] = None,
    felt_safe: Optional[int] = None,
    speed_appropriate: Optional[int] = None,
    route_as_expected: Optional[int] = None,
    comments: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SafetyRating:
    trip = get_trip(db, trip_id)
    if trip.rider_id != rider_id:
        raise AuthorizationError("Only the trip's rider may rate its safety")
    existing = db.query(SafetyRating).filter(
        SafetyRating.trip_id == trip_id, SafetyRating.rider_id == rider_id
    ).first()
    if existing is not None:
        raise ConflictError(f"Trip {trip_id} already has a safety rating")

    rating = SafetyRating(
        trip_id=trip_id,
        driver_id=trip.driver_id,
        rider_id=rider_id,
        overall_safety_score=overall_safety_score,
        traffic_laws_followed=traffic_laws_followed,
        felt_safe=felt_safe,
        speed_appropriate=speed_appropriate,
        route_as_expected=route_as_expected,
        comments=comments,
        timestamp=now or utcnow(),
    )
    db.add(rating)
    try:
        db.flush()
    except IntegrityError:
        raise ConflictError(f"Trip {trip_id} already has a safety rating") from None
    refresh_profile(db, trip.driver_id, now)
    return rating
