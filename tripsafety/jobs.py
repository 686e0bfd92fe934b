import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from .db import atomic
from .services import escrow, strikes, suspensions
from .utils import utcnow

logger = logging.getLogger(__name__)


def run_maintenance(db: Session, now: Optional[datetime] = None) -> Dict:
    """Periodic sweep: expire strikes and temporary suspensions, escalate stale disputes.

    Each step commits on its own so one failing step does not undo the others.
    """
    now = now or utcnow()
    summary = {}

    with atomic(db):
        summary["expired_strikes"] = [s.id for s in strikes.expire_strikes(db, now)]
    with atomic(db):
        summary["expired_suspensions"] = [s.id for s in suspensions.expire_suspensions(db, now)]
    with atomic(db):
        summary["escalated_disputes"] = [d.id for d in escrow.escalate_overdue_disputes(db, now)]

    logger.info(
        f"Maintenance at {now.isoformat()}: {len(summary['expired_strikes'])} strikes expired, "
        f"{len(summary['expired_suspensions'])} suspensions expired, "
        f"{len(summary['escalated_disputes'])} disputes escalated"
    )
    return summary
