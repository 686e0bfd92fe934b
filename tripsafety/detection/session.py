import logging
from datetime import datetime
from typing import List, Optional, Sequence

from ..config import DetectionPolicy
from . import completion, route, speed
from .events import LocationTick, Point, SafetyEvent

logger = logging.getLogger(__name__)


class TripSafetySession:
    """Detector state for a single trip.

    The session is the only holder of per-trip detector state. Tick handling
    never raises: a detector failure is logged and that detector simply yields
    no events for the tick.
    """

    def __init__(self, trip_id: str, driver_id: str, policy: DetectionPolicy,
                 route_points: Sequence[Point] = (), destination: Optional[Point] = None):
        self.trip_id = trip_id
        self.driver_id = driver_id
        self.policy = policy
        self.destination = tuple(destination) if destination else None
        self.speed = speed.SpeedMonitorState(trip_id=trip_id)
        self.route = route.new_state(trip_id, route_points)
        self.completion = completion.CompletionState(trip_id=trip_id)
        self.closed = False
        self.last_location: Optional[Point] = None
        self.last_timestamp: Optional[datetime] = None

    def handle_tick(self, tick: LocationTick) -> List[SafetyEvent]:
        if self.closed:
            return []
        events: List[SafetyEvent] = []
        try:
            self.speed, speed_events = speed.step(self.speed, tick, self.policy)
            events.extend(speed_events)
        except Exception:
            logger.exception(f"Speed monitor failed on trip {self.trip_id}")
        try:
            self.route, route_events = route.step(self.route, tick, self.policy)
            events.extend(route_events)
        except Exception:
            logger.exception(f"Route monitor failed on trip {self.trip_id}")
        self.last_location = tick.location
        self.last_timestamp = tick.timestamp
        return events

    def update_route(self, route_points: Sequence[Point]):
        self.route = route.replace_route(self.route, route_points)

    def respond_to_deviation(self, response: str, now: datetime) -> List[SafetyEvent]:
        self.route, events = route.respond(self.route, response, now, self.policy)
        return events

    def expire(self, now: datetime) -> List[SafetyEvent]:
        """Apply response timeouts that are due at ``now``."""
        events: List[SafetyEvent] = []
        try:
            self.route, route_events = route.check_timeout(self.route, now, self.policy)
            events.extend(route_events)
        except Exception:
            logger.exception(f"Route timeout check failed on trip {self.trip_id}")
        events.extend(self.expire_completion(now))
        return events

    def teardown(self, now: datetime) -> List[SafetyEvent]:
        """Close every open detector episode."""
        events: List[SafetyEvent] = []
        try:
            self.speed, speed_events = speed.finish(self.speed, self.policy, now)
            events.extend(speed_events)
        except Exception:
            logger.exception(f"Speed monitor teardown failed on trip {self.trip_id}")
        self.route, route_events = route.finish(self.route, now)
        events.extend(route_events)
        return events

    def complete(self, location: Optional[Point], now: datetime) -> List[SafetyEvent]:
        events = self.teardown(now)
        self.closed = True
        location = tuple(location) if location else self.last_location
        if location is None:
            return events
        try:
            self.completion, completion_events = completion.check_completion(
                self.completion, self.destination, location, now, self.policy)
            events.extend(completion_events)
        except Exception:
            logger.exception(f"Early completion check failed on trip {self.trip_id}")
        return events

    def respond_to_completion(self, response: str, now: datetime) -> List[SafetyEvent]:
        self.completion, events = completion.respond(self.completion, response, now)
        return events

    def expire_completion(self, now: datetime) -> List[SafetyEvent]:
        self.completion, events = completion.expire(self.completion, now)
        return events

    @property
    def awaiting_response(self) -> bool:
        return self.route.phase == route.ALERTING or self.completion.awaiting_response

    def snapshot(self) -> dict:
        return {
            "trip_id": self.trip_id,
            "driver_id": self.driver_id,
            "closed": self.closed,
            "speed_alert_level": self.speed.alert_level,
            "consecutive_violation_seconds": self.speed.consecutive_violation_seconds,
            "route_phase": self.route.phase,
            "deviation_distance": self.route.last_distance,
            "deviation_id": self.route.deviation.id if self.route.deviation else None,
            "early_completion_id": self.completion.completion.id if self.completion.completion else None,
        }
