from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union, get_args

from pydantic import BaseModel, Field, TypeAdapter

Coordinate = Tuple[float, float]

ViolationType = Literal[
    "speed_excessive", "route_deviation", "early_completion", "rider_report",
    "unsafe_driving", "impaired_driving", "harassment", "vehicle_condition", "other",
]
ViolationSeverity = Literal["low", "medium", "high", "critical"]
StrikeType = Literal[
    "speed_violation", "route_deviation", "early_completion", "rider_report",
    "safety_incident", "terms_violation",
]
DisputeReason = Literal[
    "safety_violation", "terms_breach", "fraud", "route_abuse", "early_completion",
    "overcharge", "service_not_received", "sos_triggered", "other",
]
EmergencyAlertType = Literal[
    "sos_pressed", "route_deviation_sos", "early_completion_sos",
    "no_response_alert", "panic_button", "auto_alert",
]
RiderResponse = Literal["okay", "sos"]

VIOLATION_TYPES = get_args(ViolationType)
VIOLATION_SEVERITIES = get_args(ViolationSeverity)
STRIKE_TYPES = get_args(StrikeType)
DISPUTE_REASONS = get_args(DisputeReason)
EMERGENCY_ALERT_TYPES = get_args(EmergencyAlertType)


# Evidence: a closed union discriminated on ``kind``

class SpeedLogReading(BaseModel):
    timestamp: datetime
    speed: float
    speed_limit: Optional[float] = None


class SpeedLogEvidence(BaseModel):
    kind: Literal["speed_log"] = "speed_log"
    readings: List[SpeedLogReading]


class RouteTraceEvidence(BaseModel):
    kind: Literal["route_trace"] = "route_trace"
    points: List[Coordinate]
    planned_route: List[Coordinate] = []


class ChatMessage(BaseModel):
    sender: str
    text: str
    timestamp: Optional[datetime] = None


class ChatLogEvidence(BaseModel):
    kind: Literal["chat_log"] = "chat_log"
    messages: List[ChatMessage]


class MediaRefEvidence(BaseModel):
    kind: Literal["media_ref"] = "media_ref"
    media_type: Literal["photo", "video", "audio"]
    url: str


class ReportTextEvidence(BaseModel):
    kind: Literal["report_text"] = "report_text"
    text: str


Evidence = Annotated[
    Union[SpeedLogEvidence, RouteTraceEvidence, ChatLogEvidence, MediaRefEvidence, ReportTextEvidence],
    Field(discriminator="kind"),
]

_evidence_list = TypeAdapter(List[Evidence])


def parse_evidence(items: Optional[List[Any]]) -> List[Evidence]:
    """Validate stored or submitted evidence into typed variants."""
    return _evidence_list.validate_python(items or [])


def dump_evidence(items: List[Evidence]) -> List[Dict[str, Any]]:
    return _evidence_list.dump_python(items, mode="json")


# Trip lifecycle

class TripCreate(BaseModel):
    trip_id: str
    driver_id: str
    rider_id: str
    fare_amount: float = Field(0.0, ge=0)
    route: List[Coordinate] = []
    destination: Optional[Coordinate] = None
    started_at: Optional[datetime] = None


class TickIn(BaseModel):
    timestamp: datetime
    lat: float
    lon: float
    speed: Optional[float] = None
    speed_limit: Optional[float] = None
    heading: Optional[float] = None


class RouteUpdate(BaseModel):
    route: List[Coordinate]


class RiderResponseIn(BaseModel):
    response: RiderResponse
    timestamp: Optional[datetime] = None


class CompleteTripIn(BaseModel):
    lat: Optional[float] = None
    lon: Optional[float] = None
    timestamp: Optional[datetime] = None


class SOSIn(BaseModel):
    user_id: str
    user_type: Literal["rider", "driver"]
    type: EmergencyAlertType = "sos_pressed"
    lat: Optional[float] = None
    lon: Optional[float] = None
    context: Dict[str, Any] = {}


# Violations, strikes, suspensions, appeals

class RiderReportIn(BaseModel):
    rider_id: str
    type: ViolationType = "rider_report"
    severity: ViolationSeverity = "medium"
    description: str
    evidence: List[Evidence] = []
    lat: Optional[float] = None
    lon: Optional[float] = None


class ViolationReviewIn(BaseModel):
    status: Literal["investigating", "confirmed", "dismissed"]
    resolution: Optional[str] = None
    issue_strike: Optional[bool] = None


class ReasonIn(BaseModel):
    reason: str = Field(..., min_length=1)


class AcknowledgeIn(BaseModel):
    driver_id: str


class AppealIn(BaseModel):
    driver_id: str
    reason: str = Field(..., min_length=1)
    strike_id: Optional[str] = None
    suspension_id: Optional[str] = None
    evidence: List[Evidence] = []


class AppealResolveIn(BaseModel):
    decision: Literal["approved", "denied"]
    resolution: str


# Disputes & emergencies

class DisputeIn(BaseModel):
    trip_id: str
    rider_id: str
    reason: DisputeReason
    description: str = ""
    evidence: List[Evidence] = []


class DisputeResolveIn(BaseModel):
    decision: Literal["approved", "denied"]
    refund_amount: float = Field(0.0, ge=0)
    resolution: str
    issue_strike: bool = False


class AlertResolveIn(BaseModel):
    resolution: str = Field(..., min_length=1)


class EmergencyContactIn(BaseModel):
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    relationship: Optional[str] = None


class EmergencyContactsIn(BaseModel):
    contacts: List[EmergencyContactIn]


class SafetyRatingIn(BaseModel):
    trip_id: str
    rider_id: str
    overall_safety_score: int = Field(..., ge=1, le=5)
    traffic_laws_followed: Optional[int] = Field(None, ge=1, le=5)
    felt_safe: Optional[int] = Field(None, ge=1, le=5)
    speed_appropriate: Optional[int] = Field(None, ge=1, le=5)
    route_as_expected: Optional[int] = Field(None, ge=1, le=5)
    comments: Optional[str] = None


# Operations

class MaintenanceIn(BaseModel):
    now: Optional[datetime] = None


class ReplayIn(BaseModel):
    csv_path: str
    trip_id: Optional[str] = None
    interval: Optional[float] = None
