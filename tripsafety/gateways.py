"""Boundaries to collaborators the engine calls but does not implement.

Deployments swap the defaults on the module-level ``gateways`` container for
real clients (a roads API, a push/SMS provider, an emergency line, the
payment processor).
"""
import logging
from typing import Dict, List, Optional, Tuple

from .config import config

logger = logging.getLogger(__name__)


class SpeedLimitLookup:
    def lookup(self, lat: float, lon: float) -> Optional[float]:
        raise NotImplementedError


class StaticSpeedLimitLookup(SpeedLimitLookup):
    """Returns one configured limit everywhere, or None when unset."""

    def __init__(self, default_limit: Optional[float] = None):
        self.default_limit = default_limit

    def lookup(self, lat: float, lon: float) -> Optional[float]:
        return self.default_limit


class NotificationDispatcher:
    def notify(self, recipient: str, message: str, context: Dict) -> None:
        """Deliver one message. Raise on delivery failure."""
        raise NotImplementedError


class LoggingNotificationDispatcher(NotificationDispatcher):
    def __init__(self):
        self.sent: List[Tuple[str, str, Dict]] = []

    def notify(self, recipient: str, message: str, context: Dict) -> None:
        logger.info(f"Notification to {recipient}: {message}")
        self.sent.append((recipient, message, context))


class EmergencyServices:
    def request_assistance(self, alert_id: str, trip_id: str, location: Optional[Tuple[float, float]],
                           context: Dict) -> None:
        """Ask the local emergency line for help. Raise when the request is not accepted."""
        raise NotImplementedError


class LoggingEmergencyServices(EmergencyServices):
    def __init__(self):
        self.requests: List[Tuple[str, str]] = []

    def request_assistance(self, alert_id: str, trip_id: str, location: Optional[Tuple[float, float]],
                           context: Dict) -> None:
        logger.warning(f"Emergency services requested for alert {alert_id} on trip {trip_id} at {location}")
        self.requests.append((alert_id, trip_id))


class PaymentProcessor:
    def hold_funds(self, trip_id: str, amount: float) -> None:
        raise NotImplementedError

    def release(self, escrow_id: str, target: str, amount: float) -> None:
        raise NotImplementedError

    def refund(self, escrow_id: str, amount: float) -> None:
        raise NotImplementedError


class RecordingPaymentProcessor(PaymentProcessor):
    """In-memory processor that records every call it receives."""

    def __init__(self):
        self.calls: List[Tuple] = []

    def hold_funds(self, trip_id: str, amount: float) -> None:
        logger.info(f"Holding {amount:.2f} for trip {trip_id}")
        self.calls.append(("hold", trip_id, amount))

    def release(self, escrow_id: str, target: str, amount: float) -> None:
        logger.info(f"Releasing {amount:.2f} from escrow {escrow_id} to {target}")
        self.calls.append(("release", escrow_id, target, amount))

    def refund(self, escrow_id: str, amount: float) -> None:
        logger.info(f"Refunding {amount:.2f} from escrow {escrow_id}")
        self.calls.append(("refund", escrow_id, amount))


class Gateways:
    def __init__(self):
        self.reset()

    def reset(self):
        self.speed_limits: SpeedLimitLookup = StaticSpeedLimitLookup(config.default_speed_limit)
        self.notifier: NotificationDispatcher = LoggingNotificationDispatcher()
        self.authorities: EmergencyServices = LoggingEmergencyServices()
        self.payments: PaymentProcessor = RecordingPaymentProcessor()


gateways = Gateways()
