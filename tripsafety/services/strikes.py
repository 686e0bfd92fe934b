import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from ..auth import Reviewer, require_reviewer
from ..config import EnforcementPolicy, config
from ..errors import InvalidTransitionError, ValidationError
from ..models import Strike
from ..persistence import get_or_404
from ..schemas import STRIKE_TYPES, VIOLATION_SEVERITIES
from ..utils import new_id, utcnow
from . import suspensions
from .notifications import deliver
from .profiles import active_strikes, current_suspension, get_or_create_profile, refresh_profile

logger = logging.getLogger(__name__)


def issue_strike(
    db: Session,
    driver_id: str,
    trip_id: Optional[str],
    strike_type: str,
    severity: str,
    reason: str,
    violation_id: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[EnforcementPolicy] = None,
) -> Strike:
    """Issue a strike and re-evaluate the driver.

    ``violation_id`` is the dedupe key: issuing twice for the same violation
    returns the strike created the first time.
    """
    if strike_type not in STRIKE_TYPES:
        raise ValidationError(f"Unknown strike type: {strike_type}")
    if severity not in VIOLATION_SEVERITIES:
        raise ValidationError(f"Unknown severity: {severity}")
    now = now or utcnow()
    policy = policy or config.enforcement_policy()

    if violation_id is not None:
        existing = db.query(Strike).filter(Strike.violation_id == violation_id).first()
        if existing is not None:
            logger.info(f"Strike for violation {violation_id} already issued as {existing.id}")
            return existing

    strike = Strike(
        id=new_id("strike"),
        driver_id=driver_id,
        trip_id=trip_id,
        type=strike_type,
        reason=reason,
        severity=severity,
        violation_id=violation_id,
        issued_at=now,
        expires_at=now + timedelta(days=policy.strike_expiration_days),
        status="active",
    )
    # A concurrent insert for the same violation fails the unique constraint
    # here; retry_write re-runs the transaction and the lookup above wins.
    db.add(strike)
    db.flush()

    logger.info(f"Strike {strike.id} issued to driver {driver_id} ({strike_type}, {severity})")
    deliver(db, driver_id, "strike_notice",
            f"A strike has been added to your account: {reason}. It expires on {strike.expires_at:%Y-%m-%d}.",
            {"strike_id": strike.id})

    evaluate_driver(db, driver_id, now=now, allow_lift=False, policy=policy)
    return strike


def count_active_strikes(db: Session, driver_id: str, now: Optional[datetime] = None) -> int:
    return len(active_strikes(db, driver_id, now or utcnow()))


def evaluate_driver(
    db: Session,
    driver_id: str,
    now: Optional[datetime] = None,
    allow_lift: bool = True,
    policy: Optional[EnforcementPolicy] = None,
):
    """Apply suspension policy to the driver's live active-strike count.

    Suspensions fire only when the count crosses a threshold upwards relative
    to the count stored on the profile, so re-evaluating an unchanged driver
    is a no-op. With ``allow_lift`` a strike-triggered suspension is lifted
    once the count drops back under the threshold that caused it.
    """
    now = now or utcnow()
    policy = policy or config.enforcement_policy()

    profile = get_or_create_profile(db, driver_id)
    previous = profile.active_strikes
    strikes = active_strikes(db, driver_id, now)
    count = len(strikes)
    strike_ids = [s.id for s in strikes]

    suspension = None
    if count >= policy.perm_suspension_strikes > previous:
        suspension = suspensions.suspend(
            db, driver_id, "permanent",
            f"{count} active strikes (permanent suspension threshold {policy.perm_suspension_strikes})",
            strike_ids=strike_ids, now=now, policy=policy,
        )
    elif count >= policy.temp_suspension_strikes > previous:
        suspension = suspensions.suspend(
            db, driver_id, "temporary",
            f"{count} active strikes (temporary suspension threshold {policy.temp_suspension_strikes})",
            strike_ids=strike_ids, now=now, policy=policy,
        )
    elif allow_lift:
        current = current_suspension(db, driver_id)
        if current is not None and current.strike_ids:
            threshold = (policy.perm_suspension_strikes if current.type == "permanent"
                         else policy.temp_suspension_strikes)
            if count < threshold:
                suspensions.lift(db, current.id, "Active strikes fell below the suspension threshold",
                                 lifted_by="system", now=now)

    refresh_profile(db, driver_id, now)
    return suspension


def remove_strike(
    db: Session,
    strike_id: str,
    reason: str,
    reviewer: Reviewer,
    status: str = "removed",
    appeal_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Strike:
    """Reverse a strike (admin removal or approved appeal) and re-evaluate."""
    require_reviewer(reviewer)
    if status not in ("removed", "appealed"):
        raise ValidationError(f"Strikes cannot be reversed to status '{status}'")
    now = now or utcnow()
    strike = get_or_404(db, Strike, strike_id, "Strike")
    if strike.status != "active":
        raise InvalidTransitionError(f"Strike {strike_id} is {strike.status}, not active")

    strike.status = status
    strike.removed_at = now
    strike.removed_reason = reason
    if appeal_id:
        strike.appeal_id = appeal_id
    db.flush()
    logger.info(f"Strike {strike_id} {status} by {reviewer.id}: {reason}")

    evaluate_driver(db, strike.driver_id, now=now, allow_lift=True)
    return strike


def expire_strikes(db: Session, now: Optional[datetime] = None) -> List[Strike]:
    """Mark strikes past ``expires_at`` as expired and refresh their drivers.

    Suspensions are left as they are; only an appeal or admin action lifts one.
    """
    now = now or utcnow()
    expired = db.query(Strike).filter(
        Strike.status == "active",
        Strike.expires_at <= now,
    ).all()
    for strike in expired:
        strike.status = "expired"
    db.flush()
    for driver_id in {s.driver_id for s in expired}:
        refresh_profile(db, driver_id, now)
    if expired:
        logger.info(f"Expired {len(expired)} strikes")
    return expired
