from datetime import timedelta

import pytest

from tripsafety.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    ValidationError,
    WindowExpiredError,
)
from tripsafety.models import Suspension
from tripsafety.services import appeals, strikes, suspensions

from conftest import T0


def strike(db, n, driver_id="driver_1"):
    return strikes.issue_strike(db, driver_id, f"trip_{n}", "rider_report", "high",
                                "Rider report confirmed", violation_id=f"viol_{n}", now=T0)


class TestSubmitAppeal:
    """Test appeal submission rules."""

    def test_appeal_a_strike(self, db):
        target = strike(db, 1)
        appeal = appeals.submit_appeal(db, "driver_1", "I was not driving", strike_id=target.id,
                                       now=T0 + timedelta(days=2))
        assert appeal.status == "pending"
        assert target.appeal_id == appeal.id

    def test_exactly_one_target(self, db):
        target = strike(db, 1)
        with pytest.raises(ValidationError):
            appeals.submit_appeal(db, "driver_1", "x", now=T0)
        suspension = suspensions.suspend(db, "driver_1", "temporary", "Manual", now=T0)
        with pytest.raises(ValidationError):
            appeals.submit_appeal(db, "driver_1", "x", strike_id=target.id, suspension_id=suspension.id, now=T0)

    def test_appeal_window(self, db):
        target = strike(db, 1)
        with pytest.raises(WindowExpiredError):
            appeals.submit_appeal(db, "driver_1", "late", strike_id=target.id, now=T0 + timedelta(days=8))

    def test_only_own_strikes(self, db):
        target = strike(db, 1)
        with pytest.raises(AuthorizationError):
            appeals.submit_appeal(db, "driver_2", "x", strike_id=target.id, now=T0)

    def test_one_open_appeal_per_item(self, db):
        target = strike(db, 1)
        appeals.submit_appeal(db, "driver_1", "x", strike_id=target.id, now=T0)
        with pytest.raises(ConflictError):
            appeals.submit_appeal(db, "driver_1", "again", strike_id=target.id, now=T0)

    def test_denied_appeal_cannot_be_resubmitted(self, db, reviewer):
        target = strike(db, 1)
        appeal = appeals.submit_appeal(db, "driver_1", "x", strike_id=target.id, now=T0)
        appeals.resolve_appeal(db, appeal.id, "denied", "Evidence is clear", reviewer, now=T0)
        assert target.status == "active"
        with pytest.raises(ConflictError):
            appeals.submit_appeal(db, "driver_1", "again", strike_id=target.id, now=T0)


class TestResolveAppeal:
    """Test appeal decisions and their effect on strikes and suspensions."""

    def test_approved_strike_appeal_lifts_suspension(self, db, reviewer):
        first = strike(db, 1)
        strike(db, 2)
        suspension = db.query(Suspension).one()
        assert suspension.status == "active"

        appeal = appeals.submit_appeal(db, "driver_1", "Wrong driver", strike_id=first.id, now=T0)
        appeals.start_review(db, appeal.id, reviewer)
        assert appeal.status == "under_review"
        appeals.resolve_appeal(db, appeal.id, "approved", "Confirmed wrong driver", reviewer,
                               now=T0 + timedelta(hours=2))

        assert appeal.status == "approved"
        assert first.status == "appealed"
        assert suspension.status == "lifted"
        assert strikes.count_active_strikes(db, "driver_1", T0 + timedelta(hours=2)) == 1

    def test_approved_suspension_appeal(self, db, reviewer):
        suspension = suspensions.suspend(db, "driver_1", "permanent", "Manual", now=T0)
        appeal = appeals.submit_appeal(db, "driver_1", "Please review", suspension_id=suspension.id, now=T0)
        appeals.resolve_appeal(db, appeal.id, "approved", "Overturned", reviewer, now=T0)
        assert suspension.status == "lifted"
        assert suspension.lifted_by == reviewer.id

    def test_resolved_appeal_is_final(self, db, reviewer):
        target = strike(db, 1)
        appeal = appeals.submit_appeal(db, "driver_1", "x", strike_id=target.id, now=T0)
        appeals.resolve_appeal(db, appeal.id, "denied", "No", reviewer, now=T0)
        with pytest.raises(InvalidTransitionError):
            appeals.resolve_appeal(db, appeal.id, "approved", "Yes", reviewer, now=T0)

    def test_requires_reviewer(self, db):
        target = strike(db, 1)
        appeal = appeals.submit_appeal(db, "driver_1", "x", strike_id=target.id, now=T0)
        with pytest.raises(AuthorizationError):
            appeals.resolve_appeal(db, appeal.id, "approved", "Yes", None, now=T0)
