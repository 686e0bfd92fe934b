import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from ..auth import Reviewer, require_reviewer
from ..config import config
from ..db import atomic, get_db
from ..detection.events import LocationTick
from ..jobs import run_maintenance
from ..models import PaymentDispute, PaymentEscrow, SafetyViolation
from ..monitoring import trip_monitor
from ..persistence import (
    complete_trip,
    create_trip,
    get_driver_strikes,
    get_driver_suspensions,
    get_or_404,
    get_trip,
    get_trip_safety_data,
    list_alerts,
    list_appeals,
    list_disputes,
    list_violations,
)
from ..schemas import (
    AcknowledgeIn,
    AlertResolveIn,
    AppealIn,
    AppealResolveIn,
    CompleteTripIn,
    DisputeIn,
    DisputeResolveIn,
    EmergencyContactsIn,
    MaintenanceIn,
    ReasonIn,
    RiderReportIn,
    RiderResponseIn,
    RouteUpdate,
    SafetyRatingIn,
    SOSIn,
    TickIn,
    TripCreate,
    ViolationReviewIn,
    dump_evidence,
)
from ..services import appeals, emergency, escrow, profiles, recorder, strikes, suspensions
from ..utils import to_naive_utc, utcnow

router = APIRouter()

def get_reviewer(
    x_reviewer_id: Optional[str] = Header(None),
    x_reviewer_role: Optional[str] = Header(None),
) -> Optional[Reviewer]:
    """Reviewer identity as asserted by the upstream auth gateway."""
    if not x_reviewer_id:
        return None
    return Reviewer(id=x_reviewer_id, role=(x_reviewer_role or "").lower())


def _when(value) -> Any:
    return to_naive_utc(value) if value else utcnow()


def _register_trip(db: Session, request: TripCreate):
    with atomic(db):
        return create_trip(
            db, request.trip_id, request.driver_id, request.rider_id, request.fare_amount,
            destination=request.destination,
            started_at=to_naive_utc(request.started_at) if request.started_at else None,
        )


def _close_trip(db: Session, trip_id: str, now) -> Dict[str, Any]:
    with atomic(db):
        trip = complete_trip(db, trip_id, now)
        profiles.refresh_profile(db, trip.driver_id)
    db.expire_all()
    return get_trip_safety_data(db, trip_id)


# Trip lifecycle

@router.post("/trips", status_code=201)
async def start_trip(request: TripCreate, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Register a trip and start monitoring it."""
    trip = await asyncio.to_thread(_register_trip, db, request)
    trip_monitor.start_trip(trip.id, trip.driver_id, request.route, request.destination)
    return trip.to_dict()


@router.get("/trips/{trip_id}")
def get_trip_endpoint(trip_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Trip with its detections and, while monitored, live detector state."""
    data = get_trip_safety_data(db, trip_id)
    session = trip_monitor.sessions.get(trip_id)
    data["monitor"] = session.snapshot() if session else None
    return data


@router.post("/trips/{trip_id}/ticks", status_code=202)
async def push_ticks(
    trip_id: str,
    ticks: List[TickIn],
    wait: bool = Query(False, description="Block until the ticks have been processed"),
) -> Dict[str, Any]:
    for tick in ticks:
        await trip_monitor.push(LocationTick(
            trip_id=trip_id,
            timestamp=to_naive_utc(tick.timestamp),
            lat=tick.lat,
            lon=tick.lon,
            speed=tick.speed,
            speed_limit=tick.speed_limit,
            heading=tick.heading,
        ))
    if wait:
        await trip_monitor.drain(trip_id)
    return {"accepted": len(ticks), "monitor": trip_monitor.get_session(trip_id).snapshot()}


@router.put("/trips/{trip_id}/route")
async def update_route(trip_id: str, request: RouteUpdate) -> Dict[str, Any]:
    await trip_monitor.update_route(trip_id, request.route)
    return {"trip_id": trip_id, "route": [list(p) for p in request.route]}


@router.post("/trips/{trip_id}/deviation-response")
async def respond_to_deviation(trip_id: str, request: RiderResponseIn) -> Dict[str, Any]:
    deviation = await trip_monitor.respond_to_deviation(trip_id, request.response, _when(request.timestamp))
    return {
        "deviation_id": deviation.id,
        "rider_response": deviation.rider_response,
        "monitor": trip_monitor.get_session(trip_id).snapshot(),
    }


@router.post("/trips/{trip_id}/complete")
async def complete_trip_endpoint(trip_id: str, request: CompleteTripIn,
                                 db: Session = Depends(get_db)) -> Dict[str, Any]:
    """End the trip: close all detector episodes and check the drop-off point."""
    now = _when(request.timestamp)
    location = (request.lat, request.lon) if request.lat is not None and request.lon is not None else None
    await trip_monitor.end_trip(trip_id, location, now)
    return await asyncio.to_thread(_close_trip, db, trip_id, now)


@router.post("/trips/{trip_id}/early-completion-response")
async def respond_to_early_completion(trip_id: str, request: RiderResponseIn) -> Dict[str, Any]:
    completion = await trip_monitor.respond_to_completion(trip_id, request.response, _when(request.timestamp))
    return {
        "early_completion_id": completion.id,
        "rider_response": completion.rider_response,
        "payment_held": completion.payment_held,
        "resolved": completion.resolved,
    }


@router.post("/trips/{trip_id}/sos", status_code=201)
def trigger_sos(trip_id: str, request: SOSIn, db: Session = Depends(get_db)) -> Dict[str, Any]:
    location = (request.lat, request.lon) if request.lat is not None and request.lon is not None else None
    with atomic(db):
        alert = emergency.raise_alert(db, trip_id, request.user_id, request.user_type, request.type,
                                      location=location, context=request.context)
    return alert.to_dict()


@router.post("/trips/{trip_id}/reports", status_code=201)
def submit_report(trip_id: str, request: RiderReportIn, db: Session = Depends(get_db)) -> Dict[str, Any]:
    location = (request.lat, request.lon) if request.lat is not None and request.lon is not None else None
    with atomic(db):
        violation = recorder.submit_rider_report(
            db, trip_id, request.rider_id, request.type, request.severity, request.description,
            evidence=dump_evidence(request.evidence), location=location,
        )
    return violation.to_dict()


# Violations & strikes

@router.get("/violations")
def list_violations_endpoint(
    db: Session = Depends(get_db),
    driver_id: Optional[str] = Query(None, description="Filter by driver ID"),
    trip_id: Optional[str] = Query(None, description="Filter by trip ID"),
    status: Optional[str] = Query(None, description="Filter by review status"),
    limit: int = Query(config.api_default_limit, ge=1, le=config.api_max_limit),
    offset: int = Query(0, ge=0),
) -> List[Dict[str, Any]]:
    return [v.to_dict() for v in list_violations(db, driver_id, trip_id, status, limit, offset)]


@router.get("/violations/{violation_id}")
def get_violation(violation_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    violation = get_or_404(db, SafetyViolation, violation_id, "Violation")
    data = violation.to_dict()
    data["evidence_summary"] = recorder.describe_evidence(violation.evidence)
    return data


@router.post("/violations/{violation_id}/review")
def review_violation(violation_id: str, request: ViolationReviewIn, db: Session = Depends(get_db),
                     reviewer: Optional[Reviewer] = Depends(get_reviewer)) -> Dict[str, Any]:
    with atomic(db):
        violation = recorder.review_violation(db, violation_id, request.status, reviewer,
                                              resolution=request.resolution,
                                              issue_strike_override=request.issue_strike)
    return violation.to_dict()


@router.get("/drivers/{driver_id}/strikes")
def driver_strikes(driver_id: str, status: Optional[str] = Query(None),
                   db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in get_driver_strikes(db, driver_id, status)]


@router.post("/strikes/{strike_id}/remove")
def remove_strike(strike_id: str, request: ReasonIn, db: Session = Depends(get_db),
                  reviewer: Optional[Reviewer] = Depends(get_reviewer)) -> Dict[str, Any]:
    with atomic(db):
        strike = strikes.remove_strike(db, strike_id, request.reason, reviewer)
    return strike.to_dict()


# Drivers & suspensions

@router.get("/drivers/{driver_id}/profile")
def driver_profile(driver_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    with atomic(db):
        profile = profiles.refresh_profile(db, driver_id)
    return profile.to_dict()


@router.get("/drivers/{driver_id}/eligibility")
def driver_eligibility(driver_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    with atomic(db):
        result = suspensions.check_eligibility(db, driver_id)
    return {"driver_id": driver_id, **result}


@router.get("/drivers/{driver_id}/suspensions")
def driver_suspensions(driver_id: str, db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in get_driver_suspensions(db, driver_id)]


@router.post("/suspensions/{suspension_id}/lift")
def lift_suspension(suspension_id: str, request: ReasonIn, db: Session = Depends(get_db),
                    reviewer: Optional[Reviewer] = Depends(get_reviewer)) -> Dict[str, Any]:
    require_reviewer(reviewer)
    with atomic(db):
        suspension = suspensions.lift(db, suspension_id, request.reason, lifted_by=reviewer.id)
    return suspension.to_dict()


@router.post("/suspensions/{suspension_id}/acknowledge")
def acknowledge_suspension(suspension_id: str, request: AcknowledgeIn,
                           db: Session = Depends(get_db)) -> Dict[str, Any]:
    with atomic(db):
        suspension = suspensions.acknowledge(db, suspension_id, request.driver_id)
    return suspension.to_dict()


# Appeals

@router.post("/appeals", status_code=201)
def submit_appeal(request: AppealIn, db: Session = Depends(get_db)) -> Dict[str, Any]:
    with atomic(db):
        appeal = appeals.submit_appeal(db, request.driver_id, request.reason,
                                       strike_id=request.strike_id, suspension_id=request.suspension_id,
                                       evidence=dump_evidence(request.evidence))
    return appeal.to_dict()


@router.get("/appeals")
def list_appeals_endpoint(
    db: Session = Depends(get_db),
    status: Optional[str] = Query(None),
    driver_id: Optional[str] = Query(None),
    limit: int = Query(config.api_default_limit, ge=1, le=config.api_max_limit),
    offset: int = Query(0, ge=0),
) -> List[Dict[str, Any]]:
    return [a.to_dict() for a in list_appeals(db, status, driver_id, limit, offset)]


@router.post("/appeals/{appeal_id}/review")
def start_appeal_review(appeal_id: str, db: Session = Depends(get_db),
                        reviewer: Optional[Reviewer] = Depends(get_reviewer)) -> Dict[str, Any]:
    with atomic(db):
        appeal = appeals.start_review(db, appeal_id, reviewer)
    return appeal.to_dict()


@router.post("/appeals/{appeal_id}/resolve")
def resolve_appeal(appeal_id: str, request: AppealResolveIn, db: Session = Depends(get_db),
                   reviewer: Optional[Reviewer] = Depends(get_reviewer)) -> Dict[str, Any]:
    with atomic(db):
        appeal = appeals.resolve_appeal(db, appeal_id, request.decision, request.resolution, reviewer)
    return appeal.to_dict()


# Payment disputes

def _dispute_with_escrow(db: Session, dispute: PaymentDispute) -> Dict[str, Any]:
    data = dispute.to_dict()
    escrow_record = db.get(PaymentEscrow, dispute.escrow_id) if dispute.escrow_id else None
    data["escrow"] = escrow_record.to_dict() if escrow_record else None
    return data


@router.post("/disputes", status_code=201)
def open_dispute(request: DisputeIn, db: Session = Depends(get_db)) -> Dict[str, Any]:
    with atomic(db):
        dispute = escrow.open_dispute(db, request.trip_id, request.rider_id, request.reason,
                                      description=request.description,
                                      evidence=dump_evidence(request.evidence))
    return _dispute_with_escrow(db, dispute)


@router.get("/disputes")
def list_disputes_endpoint(
    db: Session = Depends(get_db),
    status: Optional[str] = Query(None),
    trip_id: Optional[str] = Query(None),
    limit: int = Query(config.api_default_limit, ge=1, le=config.api_max_limit),
    offset: int = Query(0, ge=0),
) -> List[Dict[str, Any]]:
    return [_dispute_with_escrow(db, d) for d in list_disputes(db, status, trip_id, limit, offset)]


@router.get("/disputes/{dispute_id}")
def get_dispute(dispute_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return _dispute_with_escrow(db, get_or_404(db, PaymentDispute, dispute_id, "Dispute"))


@router.post("/disputes/{dispute_id}/review")
def start_dispute_review(dispute_id: str, db: Session = Depends(get_db),
                         reviewer: Optional[Reviewer] = Depends(get_reviewer)) -> Dict[str, Any]:
    with atomic(db):
        dispute = escrow.start_review(db, dispute_id, reviewer)
    return _dispute_with_escrow(db, dispute)


@router.post("/disputes/{dispute_id}/escalate")
def escalate_dispute(dispute_id: str, db: Session = Depends(get_db),
                     reviewer: Optional[Reviewer] = Depends(get_reviewer)) -> Dict[str, Any]:
    require_reviewer(reviewer)
    with atomic(db):
        dispute = escrow.escalate(db, dispute_id, reviewer)
    return _dispute_with_escrow(db, dispute)


@router.post("/disputes/{dispute_id}/resolve")
def resolve_dispute(dispute_id: str, request: DisputeResolveIn, db: Session = Depends(get_db),
                    reviewer: Optional[Reviewer] = Depends(get_reviewer)) -> Dict[str, Any]:
    with atomic(db):
        dispute = escrow.resolve_dispute(db, dispute_id, request.decision, request.refund_amount,
                                         request.resolution, reviewer,
                                         issue_strike_flag=request.issue_strike)
    return _dispute_with_escrow(db, dispute)


# Emergencies

@router.get("/alerts")
def list_alerts_endpoint(
    db: Session = Depends(get_db),
    active: bool = Query(False, description="Only unresolved alerts"),
    trip_id: Optional[str] = Query(None),
    limit: int = Query(config.api_default_limit, ge=1, le=config.api_max_limit),
    offset: int = Query(0, ge=0),
) -> List[Dict[str, Any]]:
    return [a.to_dict() for a in list_alerts(db, active, trip_id, limit, offset)]


@router.post("/alerts/{alert_id}/resolve")
def resolve_alert(alert_id: str, request: AlertResolveIn, db: Session = Depends(get_db),
                  reviewer: Optional[Reviewer] = Depends(get_reviewer)) -> Dict[str, Any]:
    with atomic(db):
        alert = emergency.resolve_alert(db, alert_id, request.resolution, reviewer)
    return alert.to_dict()


@router.put("/users/{user_id}/emergency-contacts")
def save_contacts(user_id: str, request: EmergencyContactsIn,
                  db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    with atomic(db):
        contacts = emergency.save_emergency_contacts(db, user_id, [c.model_dump() for c in request.contacts])
    return [c.to_dict() for c in contacts]


@router.get("/users/{user_id}/emergency-contacts")
def get_contacts(user_id: str, db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    return [c.to_dict() for c in emergency.get_emergency_contacts(db, user_id)]


# Ratings, maintenance, config

@router.post("/safety-ratings", status_code=201)
def rate_trip_safety(request: SafetyRatingIn, db: Session = Depends(get_db)) -> Dict[str, Any]:
    with atomic(db):
        rating = profiles.record_safety_rating(
            db, request.trip_id, request.rider_id, request.overall_safety_score,
            traffic_laws_followed=request.traffic_laws_followed,
            felt_safe=request.felt_safe,
            speed_appropriate=request.speed_appropriate,
            route_as_expected=request.route_as_expected,
            comments=request.comments,
        )
        profile = profiles.get_or_create_profile(db, rating.driver_id)
    return {"trip_id": rating.trip_id, "driver_id": rating.driver_id,
            "overall_safety_score": rating.overall_safety_score, "profile": profile.to_dict()}


@router.post("/maintenance")
async def maintenance(request: MaintenanceIn, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Run timeouts and sweeps; meant to be called by an external scheduler."""
    now = _when(request.now)
    expired = await trip_monitor.expire_pending(now)
    summary = await asyncio.to_thread(run_maintenance, db, now)
    summary["expired_responses"] = [e.to_dict() for e in expired]
    return summary


@router.get("/monitor/status")
def monitor_status() -> Dict[str, Any]:
    return trip_monitor.status()


@router.get("/config")
def get_config() -> Dict[str, Any]:
    return {
        "detection": config.get_detection_config(),
        "enforcement": config.get_enforcement_config(),
    }
