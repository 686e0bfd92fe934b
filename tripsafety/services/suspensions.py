import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import EnforcementPolicy, config
from ..errors import AuthorizationError, InvalidTransitionError, ValidationError
from ..models import Suspension
from ..persistence import get_or_404
from ..utils import new_id, utcnow
from .notifications import deliver
from .profiles import current_suspension, refresh_profile

logger = logging.getLogger(__name__)


def suspend(
    db: Session,
    driver_id: str,
    suspension_type: str,
    reason: str,
    strike_ids: Optional[List[str]] = None,
    now: Optional[datetime] = None,
    policy: Optional[EnforcementPolicy] = None,
) -> Suspension:
    """Suspend a driver. A temporary suspension is superseded by a permanent one."""
    if suspension_type not in ("temporary", "permanent"):
        raise ValidationError(f"Unknown suspension type: {suspension_type}")
    now = now or utcnow()
    policy = policy or config.enforcement_policy()

    existing = current_suspension(db, driver_id)
    if existing is not None:
        if existing.type == "permanent" or existing.type == suspension_type:
            return existing
        existing.status = "lifted"
        existing.lifted_at = now
        existing.lifted_reason = "Escalated to permanent suspension"
        existing.lifted_by = "system"

    suspension = Suspension(
        id=new_id("susp"),
        driver_id=driver_id,
        type=suspension_type,
        reason=reason,
        strike_ids=list(strike_ids or []),
        started_at=now,
        expires_at=now + timedelta(days=policy.temp_suspension_days) if suspension_type == "temporary" else None,
        status="active",
        acknowledgment_required=policy.suspension_ack_required,
    )
    db.add(suspension)
    db.flush()
    logger.info(f"Driver {driver_id} suspended ({suspension_type}): {reason}")

    if suspension_type == "temporary":
        message = f"Your account has been suspended until {suspension.expires_at:%Y-%m-%d}. Reason: {reason}"
    else:
        message = f"Your account has been permanently suspended. Reason: {reason}"
    deliver(db, driver_id, "suspension_notice", message, {"suspension_id": suspension.id})

    refresh_profile(db, driver_id, now)
    return suspension


def lift(
    db: Session,
    suspension_id: str,
    reason: str,
    lifted_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Suspension:
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to lift a suspension")
    now = now or utcnow()
    suspension = get_or_404(db, Suspension, suspension_id, "Suspension")
    if suspension.status != "active":
        raise InvalidTransitionError(f"Suspension {suspension_id} is {suspension.status}, not active")

    suspension.status = "lifted"
    suspension.lifted_at = now
    suspension.lifted_reason = reason
    suspension.lifted_by = lifted_by
    db.flush()
    logger.info(f"Suspension {suspension_id} lifted for driver {suspension.driver_id}: {reason}")

    deliver(db, suspension.driver_id, "suspension_lifted",
            "Your suspension has been lifted.", {"suspension_id": suspension.id})
    refresh_profile(db, suspension.driver_id, now)
    return suspension


def acknowledge(db: Session, suspension_id: str, driver_id: str, now: Optional[datetime] = None) -> Suspension:
    suspension = get_or_404(db, Suspension, suspension_id, "Suspension")
    if suspension.driver_id != driver_id:
        raise AuthorizationError("Suspensions can only be acknowledged by the suspended driver")
    if suspension.acknowledged_at is None:
        suspension.acknowledged_at = now or utcnow()
        db.flush()
    return suspension


def expire_suspensions(db: Session, now: Optional[datetime] = None,
                       driver_id: Optional[str] = None) -> List[Suspension]:
    """Temporary suspensions past their end move to ``expired``."""
    now = now or utcnow()
    query = db.query(Suspension).filter(
        Suspension.status == "active",
        Suspension.type == "temporary",
        Suspension.expires_at <= now,
    )
    if driver_id:
        query = query.filter(Suspension.driver_id == driver_id)
    expired = query.all()
    for suspension in expired:
        suspension.status = "expired"
        logger.info(f"Temporary suspension {suspension.id} for driver {suspension.driver_id} expired")
    db.flush()
    for driver in {s.driver_id for s in expired}:
        refresh_profile(db, driver, now)
    return expired


def suspension_status(db: Session, driver_id: str) -> str:
    suspension = current_suspension(db, driver_id)
    if suspension is None:
        return "active"
    return "suspended_perm" if suspension.type == "permanent" else "suspended_temp"


def check_eligibility(db: Session, driver_id: str, now: Optional[datetime] = None) -> Dict:
    """Whether the driver may go online right now."""
    now = now or utcnow()
    expire_suspensions(db, now, driver_id=driver_id)

    suspension = current_suspension(db, driver_id)
    if suspension is not None:
        if suspension.type == "permanent":
            reason = "Account permanently suspended"
        else:
            reason = f"Account suspended until {suspension.expires_at.isoformat()}"
        return {"eligible": False, "reason": reason, "suspension_id": suspension.id}

    pending_ack = db.query(Suspension).filter(
        Suspension.driver_id == driver_id,
        Suspension.acknowledgment_required.is_(True),
        Suspension.acknowledged_at.is_(None),
    ).order_by(Suspension.started_at.desc()).first()
    if pending_ack is not None:
        return {"eligible": False, "reason": "Suspension acknowledgment required",
                "suspension_id": pending_ack.id}

    return {"eligible": True, "reason": None, "suspension_id": None}
