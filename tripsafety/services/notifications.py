import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..gateways import gateways
from ..models import NotificationDelivery

logger = logging.getLogger(__name__)


def deliver(db: Session, recipient: str, kind: str, message: str,
            context: Optional[Dict] = None, alert_id: Optional[str] = None) -> bool:
    """Best-effort delivery through the notifier; the outcome is kept for audit.

    Never raises on delivery failure. Returns True when the notifier accepted
    the message.
    """
    context = context or {}
    try:
        gateways.notifier.notify(recipient, message, context)
    except Exception as e:
        logger.warning(f"Notification '{kind}' to {recipient} failed: {e}")
        db.add(NotificationDelivery(alert_id=alert_id, recipient=recipient, kind=kind,
                                    status="failed", error=str(e)))
        return False

    db.add(NotificationDelivery(alert_id=alert_id, recipient=recipient, kind=kind, status="sent"))
    return True
