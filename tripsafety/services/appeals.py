import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from ..auth import Reviewer, require_reviewer
from ..config import EnforcementPolicy, config
from ..errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    ValidationError,
    WindowExpiredError,
)
from ..models import Appeal, Strike, Suspension
from ..persistence import get_or_404
from ..schemas import dump_evidence, parse_evidence
from ..utils import new_id, utcnow
from . import strikes, suspensions
from .notifications import deliver

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "under_review")


def submit_appeal(
    db: Session,
    driver_id: str,
    reason: str,
    strike_id: Optional[str] = None,
    suspension_id: Optional[str] = None,
    evidence: Optional[List[Any]] = None,
    now: Optional[datetime] = None,
    policy: Optional[EnforcementPolicy] = None,
) -> Appeal:
    """Appeal exactly one strike or one suspension owned by the driver."""
    if bool(strike_id) == bool(suspension_id):
        raise ValidationError("An appeal must reference exactly one strike or one suspension")
    now = now or utcnow()
    policy = policy or config.enforcement_policy()

    if strike_id:
        target = get_or_404(db, Strike, strike_id, "Strike")
        if target.status != "active":
            raise InvalidTransitionError(f"Strike {strike_id} is {target.status} and cannot be appealed")
        if now > target.issued_at + timedelta(days=policy.appeal_window_days):
            raise WindowExpiredError(f"Strikes can only be appealed within {policy.appeal_window_days} days")
        target_filter = Appeal.strike_id == strike_id
    else:
        target = get_or_404(db, Suspension, suspension_id, "Suspension")
        if target.status != "active":
            raise InvalidTransitionError(f"Suspension {suspension_id} is {target.status} and cannot be appealed")
        target_filter = Appeal.suspension_id == suspension_id

    if target.driver_id != driver_id:
        raise AuthorizationError("Drivers may only appeal their own strikes and suspensions")

    previous = db.query(Appeal).filter(target_filter).all()
    if any(a.status in OPEN_STATUSES for a in previous):
        raise ConflictError("An appeal for this item is already open")
    if any(a.status == "denied" for a in previous):
        raise ConflictError("A denied appeal cannot be resubmitted for the same item")

    appeal = Appeal(
        id=new_id("appeal"),
        driver_id=driver_id,
        strike_id=strike_id,
        suspension_id=suspension_id,
        reason=reason,
        evidence=dump_evidence(parse_evidence(evidence)),
        submitted_at=now,
        status="pending",
    )
    db.add(appeal)
    if strike_id:
        target.appeal_id = appeal.id
    db.flush()
    logger.info(f"Appeal {appeal.id} submitted by driver {driver_id}")
    return appeal


def start_review(db: Session, appeal_id: str, reviewer: Reviewer) -> Appeal:
    require_reviewer(reviewer)
    appeal = get_or_404(db, Appeal, appeal_id, "Appeal")
    if appeal.status != "pending":
        raise InvalidTransitionError(f"Appeal {appeal_id} is {appeal.status}, not pending")
    appeal.status = "under_review"
    appeal.reviewed_by = reviewer.id
    db.flush()
    return appeal


def resolve_appeal(
    db: Session,
    appeal_id: str,
    decision: str,
    resolution: str,
    reviewer: Reviewer,
    now: Optional[datetime] = None,
) -> Appeal:
    """Approve or deny an appeal. Approval reverses its strike or suspension."""
    require_reviewer(reviewer)
    if decision not in ("approved", "denied"):
        raise ValidationError(f"Unknown appeal decision: {decision}")
    now = now or utcnow()
    appeal = get_or_404(db, Appeal, appeal_id, "Appeal")
    if appeal.status not in OPEN_STATUSES:
        raise InvalidTransitionError(f"Appeal {appeal_id} is already {appeal.status}")

    appeal.status = decision
    appeal.reviewed_by = reviewer.id
    appeal.reviewed_at = now
    appeal.resolution = resolution
    db.flush()

    if decision == "approved":
        if appeal.strike_id:
            strike = db.get(Strike, appeal.strike_id)
            if strike is not None and strike.status == "active":
                strikes.remove_strike(db, strike.id, f"Appeal approved: {resolution}", reviewer,
                                      status="appealed", appeal_id=appeal.id, now=now)
        else:
            suspension = db.get(Suspension, appeal.suspension_id)
            if suspension is not None and suspension.status == "active":
                suspensions.lift(db, suspension.id, f"Appeal approved: {resolution}",
                                 lifted_by=reviewer.id, now=now)
            strikes.evaluate_driver(db, appeal.driver_id, now=now, allow_lift=False)

    logger.info(f"Appeal {appeal_id} {decision} by {reviewer.id}")
    deliver(db, appeal.driver_id, "appeal_decision",
            f"Your appeal was {decision}. {resolution}", {"appeal_id": appeal.id})
    return appeal
