import logging
from typing import Callable, Dict, Iterable, NamedTuple, Optional, Sequence, Type

from sqlalchemy.orm import Session

from .db import SessionLocal, atomic
from .detection.events import (
    DeviationAlertRaised,
    DeviationCleared,
    DeviationNoResponse,
    DeviationResponded,
    DeviationSOS,
    EarlyCompletionDetected,
    EarlyCompletionNoResponse,
    EarlyCompletionResolved,
    EarlyCompletionSOS,
    SafetyEvent,
    SpeedViolationDetected,
)
from .models import EmergencyAlert
from .persistence import get_trip, retry_write
from .services import emergency, recorder

logger = logging.getLogger(__name__)


class AlertFollowUp(NamedTuple):
    alert_id: str
    hold_reason: str = "sos_triggered"
    hold_description: Optional[str] = None


class SafetyEventHandler:
    """Persists detector events and triggers their consequences.

    Each event is written in its own transaction, retried with backoff on
    transient database errors. A write that still fails is logged and
    dropped so the trip's monitoring loop keeps running. Calls to outside
    collaborators (notifier, emergency line, payment processor) run once,
    after the write has committed.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 route_lookup: Optional[Callable[[str], Sequence]] = None):
        self.session_factory = session_factory
        self.route_lookup = route_lookup
        self.handlers: Dict[Type[SafetyEvent], Callable[[Session, SafetyEvent], Optional[AlertFollowUp]]] = {
            SpeedViolationDetected: self._speed_violation,
            DeviationAlertRaised: self._deviation_update,
            DeviationResponded: self._deviation_update,
            DeviationNoResponse: self._deviation_no_response,
            DeviationSOS: self._deviation_sos,
            DeviationCleared: self._deviation_cleared,
            EarlyCompletionDetected: self._completion_update,
            EarlyCompletionResolved: self._completion_update,
            EarlyCompletionSOS: self._completion_sos,
            EarlyCompletionNoResponse: self._completion_no_response,
        }

    def handle_all(self, events: Iterable[SafetyEvent]):
        for event in events:
            self.handle(event)

    def handle(self, event: SafetyEvent) -> bool:
        handler = self.handlers.get(type(event))
        if handler is None:
            return False

        def write():
            db = self.session_factory()
            try:
                with atomic(db):
                    return handler(db, event)
            finally:
                db.close()

        try:
            follow_up = retry_write(write)
        except Exception:
            logger.exception(f"Failed to persist {event.kind} for trip {event.trip_id}")
            return False
        if follow_up is not None:
            self._follow_up(event, follow_up)
        return True

    def _follow_up(self, event: SafetyEvent, follow_up: AlertFollowUp):
        db = self.session_factory()
        try:
            with atomic(db):
                alert = db.get(EmergencyAlert, follow_up.alert_id)
                emergency.follow_up_alert(db, alert, follow_up.hold_reason, follow_up.hold_description)
        except Exception:
            logger.exception(f"Follow-up for alert {follow_up.alert_id} on trip {event.trip_id} failed")
        finally:
            db.close()

    def _planned_route(self, trip_id: str) -> Sequence:
        return self.route_lookup(trip_id) if self.route_lookup else ()

    def _speed_violation(self, db: Session, event: SpeedViolationDetected):
        recorder.record_speed_violation(db, event.violation)

    def _deviation_update(self, db: Session, event):
        recorder.record_route_deviation(db, event.deviation, self._planned_route(event.trip_id))

    def _deviation_no_response(self, db: Session, event: DeviationNoResponse) -> AlertFollowUp:
        recorder.record_route_deviation(db, event.deviation, self._planned_route(event.trip_id))
        trip = get_trip(db, event.trip_id)
        alert = emergency.record_alert(
            db, trip.id, trip.rider_id, "rider", "no_response_alert",
            location=event.deviation.actual_location,
            context=_deviation_context(event.deviation), now=event.timestamp,
        )
        return AlertFollowUp(alert.id)

    def _deviation_sos(self, db: Session, event: DeviationSOS) -> AlertFollowUp:
        recorder.record_route_deviation(db, event.deviation, self._planned_route(event.trip_id))
        trip = get_trip(db, event.trip_id)
        alert = emergency.record_alert(
            db, trip.id, trip.rider_id, "rider", "route_deviation_sos",
            location=event.deviation.actual_location,
            context=_deviation_context(event.deviation), now=event.timestamp,
        )
        return AlertFollowUp(alert.id)

    def _deviation_cleared(self, db: Session, event: DeviationCleared):
        if event.deviation_id:
            recorder.clear_route_deviation(db, event.deviation_id, event.timestamp)

    def _completion_update(self, db: Session, event):
        recorder.record_early_completion(db, event.completion)

    def _completion_sos(self, db: Session, event: EarlyCompletionSOS) -> AlertFollowUp:
        recorder.record_early_completion(db, event.completion)
        trip = get_trip(db, event.trip_id)
        alert = emergency.record_alert(
            db, trip.id, trip.rider_id, "rider", "early_completion_sos",
            location=event.completion.actual_location,
            context=_completion_context(event.completion), now=event.timestamp,
        )
        return AlertFollowUp(alert.id)

    def _completion_no_response(self, db: Session, event: EarlyCompletionNoResponse) -> AlertFollowUp:
        recorder.record_early_completion(db, event.completion)
        trip = get_trip(db, event.trip_id)
        alert = emergency.record_alert(
            db, trip.id, trip.rider_id, "rider", "no_response_alert",
            location=event.completion.actual_location,
            context=_completion_context(event.completion), now=event.timestamp,
        )
        return AlertFollowUp(alert.id, "early_completion",
                             "Rider did not confirm an early completion; held for manual review")


def _deviation_context(deviation) -> Dict:
    return {
        "deviation_id": deviation.id,
        "deviation_distance": deviation.deviation_distance,
        "duration": deviation.duration,
        "rider_response": deviation.rider_response,
    }


def _completion_context(completion) -> Dict:
    return {
        "early_completion_id": completion.id,
        "distance_from_destination": completion.distance_from_destination,
        "rider_response": completion.rider_response,
    }
