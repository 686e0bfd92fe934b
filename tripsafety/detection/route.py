"""Route deviation monitor.

Phases::

    IDLE -> DEVIATING -> ALERTING -> RESOLVED
      ^___________________________________|   (return to route / trip end)

Everything scoped to a deviation episode lives on ``RouteMonitorState`` and is
wiped by ``_reset`` whenever the episode ends, so timers and cooldowns cannot
carry over into the next episode.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from ..config import DetectionPolicy
from ..errors import InvalidTransitionError, ValidationError
from ..geometry import closest_route_point
from ..utils import episode_id
from .events import (
    DeviationAlertRaised,
    DeviationCleared,
    DeviationNoResponse,
    DeviationResponded,
    DeviationSOS,
    DeviationStarted,
    LocationTick,
    Point,
    RecalculateRoute,
    RouteDeviation,
    SafetyEvent,
)

IDLE = "idle"
DEVIATING = "deviating"
ALERTING = "alerting"
RESOLVED = "resolved"


@dataclass(frozen=True)
class RouteMonitorState:
    trip_id: str
    route: Tuple[Point, ...] = ()
    phase: str = IDLE
    deviation_started_at: Optional[datetime] = None
    last_recalc_at: Optional[datetime] = None
    suppressed_until: Optional[datetime] = None
    alert_raised_at: Optional[datetime] = None
    escalated: bool = False
    deviation: Optional[RouteDeviation] = None
    last_distance: Optional[float] = None


def new_state(trip_id: str, route: Sequence[Point] = ()) -> RouteMonitorState:
    return RouteMonitorState(trip_id=trip_id, route=tuple(tuple(p) for p in route))


def _reset(state: RouteMonitorState) -> RouteMonitorState:
    return RouteMonitorState(trip_id=state.trip_id, route=state.route)


def replace_route(state: RouteMonitorState, route: Sequence[Point]) -> RouteMonitorState:
    """Swap in a recalculated route; the current episode is re-judged on the next tick."""
    return replace(state, route=tuple(tuple(p) for p in route))


def _check_timeout(state: RouteMonitorState, now: datetime,
                   policy: DetectionPolicy) -> Tuple[RouteMonitorState, List[SafetyEvent]]:
    if state.phase != ALERTING or state.escalated or state.alert_raised_at is None:
        return state, []
    if (now - state.alert_raised_at).total_seconds() < policy.alert_response_timeout_seconds:
        return state, []

    deviation = replace(state.deviation, rider_response="no_response",
                        response_timestamp=now, auto_alert_sent=True)
    state = replace(state, phase=RESOLVED, escalated=True, deviation=deviation)
    return state, [DeviationNoResponse(trip_id=state.trip_id, timestamp=now, deviation=deviation)]


def step(state: RouteMonitorState, tick: LocationTick,
         policy: DetectionPolicy) -> Tuple[RouteMonitorState, List[SafetyEvent]]:
    now = tick.timestamp
    location = tick.location
    closest = closest_route_point(location, state.route, policy.distance_metric)
    if closest is None:
        return state, []
    planned, distance = closest

    events: List[SafetyEvent] = []
    if distance <= policy.route_deviation_threshold:
        if state.phase != IDLE:
            deviation_id = state.deviation.id if state.deviation else None
            events.append(DeviationCleared(trip_id=state.trip_id, timestamp=now, deviation_id=deviation_id))
        return _reset(state), events

    if state.phase == IDLE:
        state = replace(state, phase=DEVIATING, deviation_started_at=now)
        events.append(DeviationStarted(trip_id=state.trip_id, timestamp=now, distance=distance))
    state = replace(state, last_distance=distance)

    if (state.last_recalc_at is None or
            (now - state.last_recalc_at).total_seconds() >= policy.route_recalc_cooldown_seconds):
        state = replace(state, last_recalc_at=now)
        events.append(RecalculateRoute(trip_id=state.trip_id, timestamp=now, location=location, distance=distance))

    duration = (now - state.deviation_started_at).total_seconds()
    if state.deviation is not None:
        state = replace(state, deviation=replace(
            state.deviation, actual_location=location, planned_location=planned,
            deviation_distance=distance, duration=duration,
        ))

    state, timeout_events = _check_timeout(state, now, policy)
    events.extend(timeout_events)

    can_alert = (
        state.phase in (DEVIATING, RESOLVED)
        and not state.escalated
        and duration >= policy.route_alert_delay_seconds
        and (state.suppressed_until is None or now >= state.suppressed_until)
    )
    if can_alert:
        if state.deviation is None:
            deviation = RouteDeviation(
                id=episode_id("dev", state.trip_id, state.deviation_started_at),
                trip_id=state.trip_id,
                timestamp=now,
                planned_location=planned,
                actual_location=location,
                deviation_distance=distance,
                duration=duration,
                alert_shown=True,
            )
        else:
            deviation = replace(state.deviation, rider_response="pending",
                                response_timestamp=None, alert_shown=True)
        state = replace(state, phase=ALERTING, alert_raised_at=now, deviation=deviation)
        events.append(DeviationAlertRaised(trip_id=state.trip_id, timestamp=now, deviation=deviation))

    return state, events


def check_timeout(state: RouteMonitorState, now: datetime,
                  policy: DetectionPolicy) -> Tuple[RouteMonitorState, List[SafetyEvent]]:
    """Apply the rider-response timeout without a new location fix."""
    return _check_timeout(state, now, policy)


def respond(state: RouteMonitorState, response: str, now: datetime,
            policy: DetectionPolicy) -> Tuple[RouteMonitorState, List[SafetyEvent]]:
    if response not in ("okay", "sos"):
        raise ValidationError(f"Unsupported rider response: {response}")
    if state.phase != ALERTING or state.deviation is None:
        raise InvalidTransitionError("No route deviation alert is awaiting a response")

    deviation = replace(state.deviation, rider_response=response, response_timestamp=now)
    if response == "okay":
        suppressed_until = now + timedelta(seconds=policy.route_realert_cooldown_seconds)
        state = replace(state, phase=RESOLVED, deviation=deviation,
                        suppressed_until=suppressed_until, alert_raised_at=None)
        return state, [DeviationResponded(trip_id=state.trip_id, timestamp=now, deviation=deviation)]

    state = replace(state, phase=RESOLVED, deviation=deviation, escalated=True, alert_raised_at=None)
    return state, [DeviationSOS(trip_id=state.trip_id, timestamp=now, deviation=deviation)]


def finish(state: RouteMonitorState, now: datetime) -> Tuple[RouteMonitorState, List[SafetyEvent]]:
    events: List[SafetyEvent] = []
    if state.phase != IDLE:
        deviation_id = state.deviation.id if state.deviation else None
        events.append(DeviationCleared(trip_id=state.trip_id, timestamp=now, deviation_id=deviation_id))
    return _reset(state), events
