"""Payment disputes and the escrow that holds a disputed trip's funds.

A dispute and its escrow always change together inside the caller's
transaction, and processor calls happen before the flush so a processor
failure rolls both back.
"""
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
from ..gateways import gateways
from ..models import PaymentDispute, PaymentEscrow
from ..persistence import get_or_404, get_trip
from ..schemas import DISPUTE_REASONS, dump_evidence, parse_evidence
from ..utils import new_id, utcnow
from .strikes import issue_strike

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "under_review", "escalated")


def open_dispute_for_trip(db: Session, trip_id: str) -> Optional[PaymentDispute]:
    return db.query(PaymentDispute).filter(
        PaymentDispute.trip_id == trip_id,
        PaymentDispute.status.in_(OPEN_STATUSES),
    ).order_by(PaymentDispute.created_at).first()


def open_dispute(
    db: Session,
    trip_id: str,
    rider_id: str,
    reason: str,
    description: str = "",
    evidence: Optional[List[Any]] = None,
    auto_hold: bool = False,
    now: Optional[datetime] = None,
    policy: Optional[EnforcementPolicy] = None,
) -> PaymentDispute:
    """Open a dispute and escrow the trip's charge.

    Auto-hold disputes (raised by the engine after an SOS) are idempotent per
    trip. Manual disputes must arrive inside the dispute window and not while
    another dispute on the trip is open. The processor hold runs before the
    session is touched, so a failed hold leaves nothing to roll back.
    """
    if reason not in DISPUTE_REASONS:
        raise ValidationError(f"Unknown dispute reason: {reason}")
    now = now or utcnow()
    policy = policy or config.enforcement_policy()
    trip = get_trip(db, trip_id)
    if trip.rider_id != rider_id:
        raise AuthorizationError("Only the trip's rider may dispute its payment")

    existing = open_dispute_for_trip(db, trip_id)
    if auto_hold:
        if existing is None:
            existing = db.query(PaymentDispute).filter(
                PaymentDispute.trip_id == trip_id,
                PaymentDispute.auto_hold.is_(True),
            ).first()
        if existing is not None:
            return existing
    else:
        if existing is not None:
            raise ConflictError(f"Trip {trip_id} already has an open dispute")
        if trip.completed_at is not None and now > trip.completed_at + timedelta(hours=policy.dispute_window_hours):
            raise WindowExpiredError(f"Disputes must be filed within {policy.dispute_window_hours:g} hours of trip completion")

    amount = trip.fare_amount
    gateways.payments.hold_funds(trip.id, amount)

    dispute = PaymentDispute(
        id=new_id("dispute"),
        trip_id=trip.id,
        rider_id=trip.rider_id,
        driver_id=trip.driver_id,
        amount=amount,
        reason=reason,
        description=description,
        evidence=dump_evidence(parse_evidence(evidence)),
        status="pending",
        auto_hold=auto_hold,
        strike_issued=False,
        created_at=now,
        updated_at=now,
    )
    escrow = PaymentEscrow(
        id=new_id("escrow"),
        trip_id=trip.id,
        dispute_id=dispute.id,
        amount=amount,
        status="held",
        refunded_amount=0.0,
        released_amount=0.0,
        created_at=now,
    )
    dispute.escrow_id = escrow.id
    trip.payment_status = "held"
    db.add_all([dispute, escrow])
    db.flush()
    logger.info(f"Dispute {dispute.id} opened on trip {trip.id} ({reason}, auto_hold={auto_hold}); {amount:.2f} held")
    return dispute


def _transition(dispute: PaymentDispute, allowed, target: str, now: datetime):
    if dispute.status not in allowed:
        raise InvalidTransitionError(f"Dispute {dispute.id} cannot move from {dispute.status} to {target}")
    dispute.status = target
    dispute.updated_at = now


def start_review(db: Session, dispute_id: str, reviewer: Reviewer, now: Optional[datetime] = None) -> PaymentDispute:
    require_reviewer(reviewer)
    dispute = get_or_404(db, PaymentDispute, dispute_id, "Dispute")
    _transition(dispute, ("pending",), "under_review", now or utcnow())
    db.flush()
    return dispute


def escalate(db: Session, dispute_id: str, reviewer: Optional[Reviewer] = None,
             now: Optional[datetime] = None) -> PaymentDispute:
    if reviewer is not None:
        require_reviewer(reviewer)
    dispute = get_or_404(db, PaymentDispute, dispute_id, "Dispute")
    _transition(dispute, ("pending", "under_review"), "escalated", now or utcnow())
    db.flush()
    logger.info(f"Dispute {dispute_id} escalated by {reviewer.id if reviewer else 'system'}")
    return dispute


def resolve_dispute(
    db: Session,
    dispute_id: str,
    decision: str,
    refund_amount: float,
    resolution: str,
    reviewer: Reviewer,
    issue_strike_flag: bool = False,
    now: Optional[datetime] = None,
) -> PaymentDispute:
    """Settle a dispute and its escrow together.

    With A the escrowed amount and R the refund: R == A refunds the rider in
    full, 0 < R < A splits the funds, and R == 0 releases everything to the
    driver. A denial always means R == 0.
    """
    require_reviewer(reviewer)
    if decision not in ("approved", "denied"):
        raise ValidationError(f"Unknown dispute decision: {decision}")
    now = now or utcnow()
    dispute = get_or_404(db, PaymentDispute, dispute_id, "Dispute")
    if dispute.status not in OPEN_STATUSES:
        raise InvalidTransitionError(f"Dispute {dispute_id} is already {dispute.status}")
    escrow = get_or_404(db, PaymentEscrow, dispute.escrow_id, "Escrow")
    if escrow.status != "held":
        raise InvalidTransitionError(f"Escrow {escrow.id} is {escrow.status}, not held")

    amount = round(escrow.amount, 2)
    refund = round(refund_amount, 2)
    if refund < 0 or refund > amount:
        raise ValidationError(f"Refund must be between 0 and {amount:.2f}")
    if decision == "denied" and refund != 0:
        raise ValidationError("A denied dispute cannot refund the rider")

    trip = get_trip(db, dispute.trip_id)
    released = round(amount - refund, 2)
    if refund == amount:
        gateways.payments.refund(escrow.id, refund)
        escrow.status = "refunded_to_rider"
        trip.payment_status = "refunded"
    elif refund > 0:
        gateways.payments.refund(escrow.id, refund)
        gateways.payments.release(escrow.id, "driver", released)
        escrow.status = "partially_refunded"
        trip.payment_status = "partially_refunded"
    else:
        gateways.payments.release(escrow.id, "driver", released)
        escrow.status = "released_to_driver"
        trip.payment_status = "settled"

    escrow.refunded_amount = refund
    escrow.released_amount = released
    escrow.released_at = now
    escrow.release_reason = resolution

    dispute.status = decision
    dispute.refund_amount = refund
    dispute.resolution = resolution
    dispute.resolved_at = now
    dispute.resolved_by = reviewer.id
    dispute.updated_at = now

    if issue_strike_flag:
        strike = issue_strike(
            db, dispute.driver_id, dispute.trip_id, "safety_incident", "high",
            f"Payment dispute resolved against driver: {resolution}",
            violation_id=f"dispute:{dispute.id}", now=now,
        )
        dispute.strike_issued = True
        dispute.strike_id = strike.id

    db.flush()
    logger.info(f"Dispute {dispute_id} {decision}: escrow {escrow.id} {escrow.status} "
                f"(refund {refund:.2f}, released {released:.2f})")
    return dispute


def escalate_overdue_disputes(db: Session, now: Optional[datetime] = None,
                              policy: Optional[EnforcementPolicy] = None) -> List[PaymentDispute]:
    now = now or utcnow()
    policy = policy or config.enforcement_policy()
    cutoff = now - timedelta(hours=policy.dispute_review_deadline_hours)
    overdue = db.query(PaymentDispute).filter(
        PaymentDispute.status.in_(("pending", "under_review")),
        PaymentDispute.created_at <= cutoff,
    ).all()
    for dispute in overdue:
        dispute.status = "escalated"
        dispute.updated_at = now
    db.flush()
    if overdue:
        logger.info(f"Escalated {len(overdue)} disputes past the review deadline")
    return overdue
