import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth import Reviewer, require_reviewer
from ..errors import InvalidTransitionError, ValidationError
from ..gateways import gateways
from ..models import EmergencyAlert, EmergencyContact, NotificationDelivery
from ..persistence import get_or_404, get_trip
from ..schemas import EMERGENCY_ALERT_TYPES
from ..utils import new_id, utcnow
from . import escrow
from .notifications import deliver

logger = logging.getLogger(__name__)

# Alert types that represent a person explicitly asking for help.
SOS_TYPES = ("sos_pressed", "route_deviation_sos", "early_completion_sos", "panic_button")

# Trip payment states in which money has not yet reached the driver.
FUNDS_IN_FLIGHT = ("pending", "held")


def record_alert(
    db: Session,
    trip_id: str,
    user_id: str,
    user_type: str,
    alert_type: str,
    location=None,
    context: Optional[Dict] = None,
    now: Optional[datetime] = None,
) -> EmergencyAlert:
    """Store an emergency alert without calling any collaborator."""
    if alert_type not in EMERGENCY_ALERT_TYPES:
        raise ValidationError(f"Unknown emergency alert type: {alert_type}")
    if user_type not in ("rider", "driver"):
        raise ValidationError(f"Unknown user type: {user_type}")
    now = now or utcnow()
    trip = get_trip(db, trip_id)

    alert = EmergencyAlert(
        id=new_id("alert"),
        trip_id=trip.id,
        user_id=user_id,
        user_type=user_type,
        type=alert_type,
        timestamp=now,
        lat=location[0] if location else None,
        lon=location[1] if location else None,
        context=dict(context or {}),
        contacts_notified=[],
        authorities_contacted=False,
        resolved=False,
    )
    db.add(alert)
    db.flush()
    logger.warning(f"Emergency alert {alert.id} ({alert_type}) raised on trip {trip.id} by {user_type} {user_id}")
    return alert


def follow_up_alert(db: Session, alert: EmergencyAlert, hold_reason: str = "sos_triggered",
                    hold_description: Optional[str] = None) -> EmergencyAlert:
    """Notify contacts, call emergency services for SOS types, and hold in-flight funds.

    Collaborator failures are logged and kept on the alert; none of them
    undoes the alert itself.
    """
    trip = get_trip(db, alert.trip_id)
    location = (alert.lat, alert.lon) if alert.lat is not None else None
    where = f" near {location[0]:.5f},{location[1]:.5f}" if location else ""
    message = f"Emergency alert from your contact during trip {trip.id}{where}."
    notified = []
    for contact in get_emergency_contacts(db, alert.user_id):
        if not contact.address:
            logger.warning(f"Emergency contact {contact.id} for {alert.user_id} has no phone or email")
            continue
        if deliver(db, contact.address, "emergency_alert", message,
                   {"alert_id": alert.id, "trip_id": trip.id, "type": alert.type}, alert_id=alert.id):
            notified.append(contact.name)
    alert.contacts_notified = notified

    if alert.type in SOS_TYPES:
        try:
            gateways.authorities.request_assistance(alert.id, trip.id, location, alert.context or {})
            alert.authorities_contacted = True
        except Exception as e:
            logger.error(f"Emergency services request for alert {alert.id} failed: {e}")
            db.add(NotificationDelivery(alert_id=alert.id, recipient="emergency_services",
                                        kind="authorities", status="failed", error=str(e)))

    if trip.payment_status in FUNDS_IN_FLIGHT:
        # open_dispute calls the processor before touching the session
        try:
            escrow.open_dispute(
                db, trip.id, trip.rider_id, hold_reason,
                description=hold_description or f"Automatic hold after emergency alert {alert.id} ({alert.type})",
                auto_hold=True, now=alert.timestamp,
            )
            alert.payment_hold = "held"
        except SQLAlchemyError:
            raise
        except Exception:
            logger.exception(f"Payment hold after alert {alert.id} failed; trip {trip.id} needs manual review")
            alert.payment_hold = "failed"
    db.flush()
    return alert


def raise_alert(
    db: Session,
    trip_id: str,
    user_id: str,
    user_type: str,
    alert_type: str,
    location=None,
    context: Optional[Dict] = None,
    now: Optional[datetime] = None,
) -> EmergencyAlert:
    """Record an emergency alert and run its follow-ups.

    The alert is stored even when contact notification, the emergency
    services request or the payment hold fails.
    """
    alert = record_alert(db, trip_id, user_id, user_type, alert_type, location, context, now)
    return follow_up_alert(db, alert)


def resolve_alert(db: Session, alert_id: str, resolution: str, reviewer: Reviewer,
                  now: Optional[datetime] = None) -> EmergencyAlert:
    require_reviewer(reviewer)
    if not resolution or not resolution.strip():
        raise ValidationError("A resolution is required")
    alert = get_or_404(db, EmergencyAlert, alert_id, "Alert")
    if alert.resolved:
        raise InvalidTransitionError(f"Alert {alert_id} is already resolved")
    alert.resolved = True
    alert.resolved_at = now or utcnow()
    alert.resolution = resolution
    alert.resolved_by = reviewer.id
    db.flush()
    logger.info(f"Emergency alert {alert_id} resolved by {reviewer.id}")
    return alert


def active_alerts(db: Session) -> List[EmergencyAlert]:
    return db.query(EmergencyAlert).filter(
        EmergencyAlert.resolved.is_(False)
    ).order_by(EmergencyAlert.timestamp.desc()).all()


def get_emergency_contacts(db: Session, user_id: str) -> List[EmergencyContact]:
    return db.query(EmergencyContact).filter(
        EmergencyContact.user_id == user_id
    ).order_by(EmergencyContact.id).all()


def save_emergency_contacts(db: Session, user_id: str, contacts: List[Dict]) -> List[EmergencyContact]:
    """Replace the user's emergency contacts."""
    for contact in contacts:
        if not contact.get("phone") and not contact.get("email"):
            raise ValidationError(f"Contact '{contact.get('name')}' needs a phone or email")
    db.query(EmergencyContact).filter(EmergencyContact.user_id == user_id).delete()
    saved = [
        EmergencyContact(
            user_id=user_id,
            name=c["name"],
            phone=c.get("phone"),
            email=c.get("email"),
            relationship=c.get("relationship"),
        )
        for c in contacts
    ]
    db.add_all(saved)
    db.flush()
    return saved
