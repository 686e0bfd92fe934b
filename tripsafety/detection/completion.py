from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from ..config import DetectionPolicy
from ..errors import InvalidTransitionError, ValidationError
from ..geometry import get_metric
from ..utils import episode_id
from .events import (
    EarlyCompletion,
    EarlyCompletionDetected,
    EarlyCompletionNoResponse,
    EarlyCompletionResolved,
    EarlyCompletionSOS,
    Point,
    SafetyEvent,
)


@dataclass(frozen=True)
class CompletionState:
    trip_id: str
    completion: Optional[EarlyCompletion] = None

    @property
    def awaiting_response(self) -> bool:
        return (self.completion is not None
                and not self.completion.resolved
                and self.completion.rider_response == "pending")


def check_completion(state: CompletionState, destination: Optional[Point], location: Point,
                     now: datetime, policy: DetectionPolicy) -> Tuple[CompletionState, List[SafetyEvent]]:
    """Judge the completion location against the agreed destination."""
    if destination is None:
        return state, []
    if state.completion is not None and not state.completion.resolved:
        return state, []

    distance = get_metric(policy.distance_metric)(location, destination)
    if distance <= policy.early_completion_tolerance:
        return state, []

    completion = EarlyCompletion(
        id=episode_id("early", state.trip_id, now),
        trip_id=state.trip_id,
        timestamp=now,
        destination_location=tuple(destination),
        actual_location=tuple(location),
        distance_from_destination=distance,
        response_deadline=now + timedelta(seconds=policy.alert_response_timeout_seconds),
    )
    state = replace(state, completion=completion)
    return state, [EarlyCompletionDetected(trip_id=state.trip_id, timestamp=now, completion=completion)]


def respond(state: CompletionState, response: str, now: datetime) -> Tuple[CompletionState, List[SafetyEvent]]:
    if response not in ("okay", "sos"):
        raise ValidationError(f"Unsupported rider response: {response}")
    if not state.awaiting_response:
        raise InvalidTransitionError("No early completion is awaiting a response")

    if response == "okay":
        completion = replace(state.completion, rider_response="okay", response_timestamp=now,
                             payment_held=False, resolved=True)
        event = EarlyCompletionResolved(trip_id=state.trip_id, timestamp=now, completion=completion)
    else:
        # Funds stay held until the resulting dispute is settled.
        completion = replace(state.completion, rider_response="sos", response_timestamp=now,
                             payment_held=True, resolved=True)
        event = EarlyCompletionSOS(trip_id=state.trip_id, timestamp=now, completion=completion)
    return replace(state, completion=completion), [event]


def expire(state: CompletionState, now: datetime) -> Tuple[CompletionState, List[SafetyEvent]]:
    if not state.awaiting_response or now < state.completion.response_deadline:
        return state, []
    completion = replace(state.completion, rider_response="no_response", response_timestamp=now,
                         payment_held=True, needs_review=True)
    return replace(state, completion=completion), [
        EarlyCompletionNoResponse(trip_id=state.trip_id, timestamp=now, completion=completion)
    ]
