import logging
import time
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .config import config
from .errors import ConflictError, NotFoundError
from .models import (
    Appeal,
    EarlyCompletionRecord,
    EmergencyAlert,
    PaymentDispute,
    RouteDeviationRecord,
    SafetyViolation,
    SpeedViolationRecord,
    Strike,
    Suspension,
    Trip,
)
from .utils import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (OperationalError, StaleDataError, IntegrityError)


def backoff(attempt: int, base_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based), doubling each time."""
    return base_delay * (2 ** attempt)


def retry_write(operation: Callable[[], T], attempts: Optional[int] = None,
                base_delay: Optional[float] = None, sleep: Callable[[float], None] = time.sleep) -> T:
    """Run a transactional write, retrying transient database failures.

    ``operation`` must open and commit its own transaction so a retry starts
    from a clean session; the writes it performs are idempotent.
    """
    attempts = attempts or config.persist_retry_attempts
    base_delay = config.persist_retry_base_seconds if base_delay is None else base_delay
    for attempt in range(attempts):
        try:
            return operation()
        except RETRYABLE_ERRORS as e:
            if attempt == attempts - 1:
                raise
            delay = backoff(attempt, base_delay)
            logger.warning(f"Write failed ({e.__class__.__name__}), retry {attempt + 1}/{attempts - 1} in {delay:.2f}s")
            sleep(delay)


def get_or_404(db: Session, model, record_id, label: Optional[str] = None):
    record = db.get(model, record_id)
    if record is None:
        raise NotFoundError(f"{label or model.__name__} {record_id} not found")
    return record


def get_trip(db: Session, trip_id: str) -> Trip:
    return get_or_404(db, Trip, trip_id, "Trip")


def create_trip(
    db: Session,
    trip_id: str,
    driver_id: str,
    rider_id: str,
    fare_amount: float,
    destination=None,
    started_at: Optional[datetime] = None,
) -> Trip:
    """Register a trip so its detections can be attributed."""
    if db.get(Trip, trip_id) is not None:
        raise ConflictError(f"Trip {trip_id} already exists")

    trip = Trip(
        id=trip_id,
        driver_id=driver_id,
        rider_id=rider_id,
        fare_amount=fare_amount,
        destination_lat=destination[0] if destination else None,
        destination_lon=destination[1] if destination else None,
        started_at=started_at or utcnow(),
        status="active",
        payment_status="pending",
    )
    db.add(trip)
    db.flush()
    return trip


def complete_trip(db: Session, trip_id: str, completed_at: datetime) -> Trip:
    trip = get_trip(db, trip_id)
    if trip.status == "active":
        trip.status = "completed"
        trip.completed_at = completed_at
    return trip


def list_violations(
    db: Session,
    driver_id: Optional[str] = None,
    trip_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[SafetyViolation]:
    query = db.query(SafetyViolation)
    if driver_id:
        query = query.filter(SafetyViolation.driver_id == driver_id)
    if trip_id:
        query = query.filter(SafetyViolation.trip_id == trip_id)
    if status:
        query = query.filter(SafetyViolation.status == status)
    return query.order_by(SafetyViolation.timestamp.desc()).offset(offset).limit(limit).all()


def get_driver_strikes(db: Session, driver_id: str, status: Optional[str] = None) -> List[Strike]:
    query = db.query(Strike).filter(Strike.driver_id == driver_id)
    if status:
        query = query.filter(Strike.status == status)
    return query.order_by(Strike.issued_at.desc()).all()


def get_driver_suspensions(db: Session, driver_id: str) -> List[Suspension]:
    return db.query(Suspension).filter(
        Suspension.driver_id == driver_id
    ).order_by(Suspension.started_at.desc()).all()


def list_appeals(db: Session, status: Optional[str] = None, driver_id: Optional[str] = None,
                 limit: int = 100, offset: int = 0) -> List[Appeal]:
    query = db.query(Appeal)
    if status:
        query = query.filter(Appeal.status == status)
    if driver_id:
        query = query.filter(Appeal.driver_id == driver_id)
    return query.order_by(Appeal.submitted_at.desc()).offset(offset).limit(limit).all()


def list_disputes(db: Session, status: Optional[str] = None, trip_id: Optional[str] = None,
                  limit: int = 100, offset: int = 0) -> List[PaymentDispute]:
    query = db.query(PaymentDispute)
    if status:
        query = query.filter(PaymentDispute.status == status)
    if trip_id:
        query = query.filter(PaymentDispute.trip_id == trip_id)
    return query.order_by(PaymentDispute.created_at.desc()).offset(offset).limit(limit).all()


def list_alerts(db: Session, active_only: bool = False, trip_id: Optional[str] = None,
                limit: int = 100, offset: int = 0) -> List[EmergencyAlert]:
    query = db.query(EmergencyAlert)
    if active_only:
        query = query.filter(EmergencyAlert.resolved.is_(False))
    if trip_id:
        query = query.filter(EmergencyAlert.trip_id == trip_id)
    return query.order_by(EmergencyAlert.timestamp.desc()).offset(offset).limit(limit).all()


def get_trip_safety_data(db: Session, trip_id: str) -> dict:
    """Everything the detectors produced for one trip."""
    trip = get_trip(db, trip_id)
    speed = db.query(SpeedViolationRecord).filter(
        SpeedViolationRecord.trip_id == trip_id
    ).order_by(SpeedViolationRecord.start_time).all()
    deviations = db.query(RouteDeviationRecord).filter(
        RouteDeviationRecord.trip_id == trip_id
    ).order_by(RouteDeviationRecord.timestamp).all()
    completion = db.query(EarlyCompletionRecord).filter(
        EarlyCompletionRecord.trip_id == trip_id
    ).order_by(EarlyCompletionRecord.timestamp.desc()).first()
    return {
        "trip": trip.to_dict(),
        "speed_violations": [v.to_dict() for v in speed],
        "route_deviations": [d.to_dict() for d in deviations],
        "early_completion": completion.to_dict() if completion else None,
    }
