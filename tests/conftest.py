import os

os.environ["DATABASE_URL"] = "sqlite:///./test_tripsafety.db"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta

import pytest

from tripsafety.auth import Reviewer
from tripsafety.config import DetectionPolicy, EnforcementPolicy
from tripsafety.db import SessionLocal, engine, reset_db
from tripsafety.gateways import gateways
from tripsafety.monitoring import trip_monitor
from tripsafety.persistence import create_trip

T0 = datetime(2025, 8, 1, 8, 0, 0)


@pytest.fixture(autouse=True)
def fresh_state():
    """Every test starts with empty tables, default gateways and no monitored trips."""
    reset_db()
    gateways.reset()
    trip_monitor.reset()
    yield
    trip_monitor.reset()


@pytest.fixture(scope="session", autouse=True)
def cleanup_database():
    yield
    engine.dispose()
    if os.path.exists("test_tripsafety.db"):
        os.remove("test_tripsafety.db")


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def reviewer():
    return Reviewer(id="rev_1", role="safety_reviewer")


@pytest.fixture
def planar_policy():
    return DetectionPolicy(distance_metric="planar", early_completion_tolerance=50.0)


@pytest.fixture
def enforcement():
    return EnforcementPolicy()


@pytest.fixture
def make_trip(db):
    def _make(trip_id="trip_1", driver_id="driver_1", rider_id="rider_1", fare=25.0,
              destination=None, completed=False):
        trip = create_trip(db, trip_id, driver_id, rider_id, fare, destination=destination, started_at=T0)
        if completed:
            trip.status = "completed"
            trip.completed_at = T0 + timedelta(minutes=20)
        db.commit()
        return trip
    return _make
