from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

Point = Tuple[float, float]

RIDER_RESPONSES = ("okay", "sos", "no_response", "pending")


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "__dataclass_fields__"):
        return {f.name: _plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass(frozen=True)
class LocationTick:
    """One location feed sample for an active trip."""
    trip_id: str
    timestamp: datetime
    lat: float
    lon: float
    speed: Optional[float] = None
    speed_limit: Optional[float] = None
    heading: Optional[float] = None

    @property
    def location(self) -> Point:
        return (self.lat, self.lon)


@dataclass(frozen=True)
class SpeedSample:
    timestamp: datetime
    speed: float
    speed_limit: float
    excess: float


@dataclass(frozen=True)
class SpeedViolation:
    id: str
    trip_id: str
    start_time: datetime
    end_time: datetime
    duration: float
    max_speed: float
    speed_limit: float
    max_excess_speed: float
    average_excess_speed: float
    location: Point
    severity: str
    samples: Tuple[SpeedSample, ...] = ()


@dataclass(frozen=True)
class RouteDeviation:
    id: str
    trip_id: str
    timestamp: datetime
    planned_location: Point
    actual_location: Point
    deviation_distance: float
    duration: float
    rider_response: str = "pending"
    response_timestamp: Optional[datetime] = None
    alert_shown: bool = False
    auto_alert_sent: bool = False


@dataclass(frozen=True)
class EarlyCompletion:
    id: str
    trip_id: str
    timestamp: datetime
    destination_location: Point
    actual_location: Point
    distance_from_destination: float
    response_deadline: datetime
    rider_response: str = "pending"
    response_timestamp: Optional[datetime] = None
    payment_held: bool = True
    resolved: bool = False
    needs_review: bool = False


@dataclass(frozen=True)
class SafetyEvent:
    """Base for everything a detector emits."""
    trip_id: str
    timestamp: datetime

    kind = "event"

    def to_dict(self) -> Dict[str, Any]:
        payload = _plain(self)
        payload["kind"] = self.kind
        return payload


@dataclass(frozen=True)
class AlertLevelChanged(SafetyEvent):
    previous: str = "normal"
    level: str = "normal"
    speed: float = 0.0
    speed_limit: Optional[float] = None
    excess: float = 0.0

    kind = "alert_level_changed"


@dataclass(frozen=True)
class SpeedEpisodeOpened(SafetyEvent):
    started_at: Optional[datetime] = None

    kind = "speed_episode_opened"


@dataclass(frozen=True)
class SpeedViolationDetected(SafetyEvent):
    violation: Optional[SpeedViolation] = None

    kind = "speed_violation"


@dataclass(frozen=True)
class DeviationStarted(SafetyEvent):
    distance: float = 0.0

    kind = "deviation_started"


@dataclass(frozen=True)
class RecalculateRoute(SafetyEvent):
    location: Point = (0.0, 0.0)
    distance: float = 0.0

    kind = "recalculate_route"


@dataclass(frozen=True)
class DeviationAlertRaised(SafetyEvent):
    deviation: Optional[RouteDeviation] = None

    kind = "deviation_alert"


@dataclass(frozen=True)
class DeviationResponded(SafetyEvent):
    deviation: Optional[RouteDeviation] = None

    kind = "deviation_okay"


@dataclass(frozen=True)
class DeviationSOS(SafetyEvent):
    deviation: Optional[RouteDeviation] = None

    kind = "deviation_sos"


@dataclass(frozen=True)
class DeviationNoResponse(SafetyEvent):
    deviation: Optional[RouteDeviation] = None

    kind = "deviation_no_response"


@dataclass(frozen=True)
class DeviationCleared(SafetyEvent):
    deviation_id: Optional[str] = None

    kind = "deviation_cleared"


@dataclass(frozen=True)
class EarlyCompletionDetected(SafetyEvent):
    completion: Optional[EarlyCompletion] = None

    kind = "early_completion"


@dataclass(frozen=True)
class EarlyCompletionResolved(SafetyEvent):
    completion: Optional[EarlyCompletion] = None

    kind = "early_completion_okay"


@dataclass(frozen=True)
class EarlyCompletionSOS(SafetyEvent):
    completion: Optional[EarlyCompletion] = None

    kind = "early_completion_sos"


@dataclass(frozen=True)
class EarlyCompletionNoResponse(SafetyEvent):
    completion: Optional[EarlyCompletion] = None

    kind = "early_completion_no_response"
