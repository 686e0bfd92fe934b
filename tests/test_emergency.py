from datetime import timedelta

import pytest

from tripsafety.errors import InvalidTransitionError, ValidationError
from tripsafety.gateways import gateways
from tripsafety.db import SessionLocal
from tripsafety.models import EmergencyAlert, NotificationDelivery, PaymentDispute, PaymentEscrow, Trip
from tripsafety.services import emergency

from conftest import T0


class FailingNotifier:
    def notify(self, recipient, message, context):
        raise ConnectionError("SMS provider unavailable")


class FailingHold:
    def hold_funds(self, trip_id, amount):
        raise ConnectionError("payment processor timeout")


class UnreachableEmergencyLine:
    def request_assistance(self, alert_id, trip_id, location, context):
        raise ConnectionError("emergency line busy")


CONTACTS = [
    {"name": "Ana", "phone": "+15550001", "relationship": "sister"},
    {"name": "Ben", "email": "ben@example.com"},
]


class TestEmergencyContacts:
    """Test emergency contact management."""

    def test_replace_contacts(self, db):
        emergency.save_emergency_contacts(db, "rider_1", CONTACTS)
        emergency.save_emergency_contacts(db, "rider_1", CONTACTS[:1])
        saved = emergency.get_emergency_contacts(db, "rider_1")
        assert [c.name for c in saved] == ["Ana"]

    def test_contact_needs_address(self, db):
        with pytest.raises(ValidationError):
            emergency.save_emergency_contacts(db, "rider_1", [{"name": "Nobody"}])


class TestRaiseAlert:
    """Test SOS handling."""

    def test_contacts_are_notified(self, db, make_trip):
        make_trip()
        emergency.save_emergency_contacts(db, "rider_1", CONTACTS)
        alert = emergency.raise_alert(db, "trip_1", "rider_1", "rider", "sos_pressed",
                                      location=(14.6, 121.0), now=T0)
        assert alert.contacts_notified == ["Ana", "Ben"]
        assert alert.authorities_contacted
        assert gateways.authorities.requests == [(alert.id, "trip_1")]
        assert [s[0] for s in gateways.notifier.sent] == ["+15550001", "ben@example.com"]

    def test_alert_survives_notification_failure(self, db, make_trip):
        make_trip()
        gateways.notifier = FailingNotifier()
        emergency.save_emergency_contacts(db, "rider_1", CONTACTS)
        alert = emergency.raise_alert(db, "trip_1", "rider_1", "rider", "sos_pressed", now=T0)
        db.flush()
        assert alert.id is not None
        assert alert.contacts_notified == []
        failures = db.query(NotificationDelivery).filter(NotificationDelivery.status == "failed").all()
        assert len(failures) == 2
        assert all(f.alert_id == alert.id for f in failures)

    def test_in_flight_funds_are_held(self, db, make_trip):
        trip = make_trip()
        emergency.raise_alert(db, "trip_1", "rider_1", "rider", "panic_button", now=T0)
        dispute = db.query(PaymentDispute).one()
        assert dispute.auto_hold
        assert dispute.reason == "sos_triggered"
        assert trip.payment_status == "held"

    def test_settled_trip_is_not_held(self, db, make_trip):
        trip = make_trip()
        trip.payment_status = "settled"
        emergency.raise_alert(db, "trip_1", "driver_1", "driver", "sos_pressed", now=T0)
        assert db.query(PaymentDispute).count() == 0

    def test_repeat_alerts_hold_once(self, db, make_trip):
        make_trip()
        emergency.raise_alert(db, "trip_1", "rider_1", "rider", "sos_pressed", now=T0)
        emergency.raise_alert(db, "trip_1", "rider_1", "rider", "no_response_alert", now=T0)
        assert db.query(PaymentDispute).count() == 1

    def test_unknown_alert_type(self, db, make_trip):
        make_trip()
        with pytest.raises(ValidationError):
            emergency.raise_alert(db, "trip_1", "rider_1", "rider", "fire_drill", now=T0)

    def test_no_response_alert_does_not_call_emergency_services(self, db, make_trip):
        make_trip()
        alert = emergency.raise_alert(db, "trip_1", "rider_1", "rider", "no_response_alert", now=T0)
        assert not alert.authorities_contacted
        assert gateways.authorities.requests == []

    def test_unreachable_emergency_line_is_audited(self, db, make_trip):
        make_trip()
        gateways.authorities = UnreachableEmergencyLine()
        alert = emergency.raise_alert(db, "trip_1", "rider_1", "rider", "sos_pressed", now=T0)
        db.flush()
        assert not alert.authorities_contacted
        failure = db.query(NotificationDelivery).filter(NotificationDelivery.kind == "authorities").one()
        assert failure.status == "failed"
        assert failure.alert_id == alert.id


class TestAlertWithFailedHold:
    """Test that a failed payment hold never loses the alert."""

    def test_alert_is_committed_and_flagged(self, db, make_trip):
        make_trip()
        gateways.payments = FailingHold()
        alert = emergency.raise_alert(db, "trip_1", "rider_1", "rider", "sos_pressed", now=T0)
        db.commit()

        check = SessionLocal()
        try:
            stored = check.query(EmergencyAlert).one()
            assert stored.id == alert.id
            assert stored.payment_hold == "failed"
            assert check.query(PaymentDispute).count() == 0
            assert check.query(PaymentEscrow).count() == 0
            assert check.get(Trip, "trip_1").payment_status == "pending"
        finally:
            check.close()

    def test_successful_hold_is_recorded(self, db, make_trip):
        make_trip()
        alert = emergency.raise_alert(db, "trip_1", "rider_1", "rider", "sos_pressed", now=T0)
        assert alert.payment_hold == "held"
        assert alert.to_dict()["payment_hold"] == "held"


class TestResolveAlert:
    """Test alert resolution."""

    def test_resolve(self, db, make_trip, reviewer):
        make_trip()
        alert = emergency.raise_alert(db, "trip_1", "rider_1", "rider", "sos_pressed", now=T0)
        assert emergency.active_alerts(db) == [alert]
        emergency.resolve_alert(db, alert.id, "Rider safe", reviewer, now=T0 + timedelta(minutes=5))
        assert alert.resolved
        assert emergency.active_alerts(db) == []
        with pytest.raises(InvalidTransitionError):
            emergency.resolve_alert(db, alert.id, "Again", reviewer)
