import asyncio
import threading
from datetime import timedelta

from tripsafety.detection.events import (
    DeviationAlertRaised,
    DeviationCleared,
    DeviationNoResponse,
    EarlyCompletionDetected,
    LocationTick,
    SpeedViolationDetected,
)
from tripsafety.detection.session import TripSafetySession
from tripsafety.gateways import gateways
from tripsafety.monitoring import TripMonitor

from conftest import T0

ROUTE = [(0.0, 0.0), (1000.0, 0.0)]


class RecordingHandler:
    def __init__(self):
        self.events = []

    def handle_all(self, events):
        self.events.extend(events)


class ThreadRecordingLookup:
    def __init__(self, limit):
        self.limit = limit
        self.threads = []

    def lookup(self, lat, lon):
        self.threads.append(threading.get_ident())
        return self.limit


def tick(seconds, lon=0.0, speed=None, limit=None, trip_id="trip_1"):
    return LocationTick(trip_id=trip_id, timestamp=T0 + timedelta(seconds=seconds),
                        lat=float(seconds), lon=lon, speed=speed, speed_limit=limit)


def kinds(events, kind):
    return [e for e in events if isinstance(e, kind)]


class TestTripSafetySession:
    """Test the per-trip session that owns all detector state."""

    def test_teardown_closes_every_episode(self, planar_policy):
        session = TripSafetySession("trip_1", "driver_1", planar_policy, ROUTE)
        for s in range(0, 12):
            session.handle_tick(tick(s, lon=150.0, speed=70.0, limit=50.0))
        events = session.teardown(T0 + timedelta(seconds=12))
        assert len(kinds(events, SpeedViolationDetected)) == 1
        assert len(kinds(events, DeviationCleared)) == 1
        assert session.speed.episode is None
        assert session.route.phase == "idle"

    def test_complete_checks_destination(self, planar_policy):
        session = TripSafetySession("trip_1", "driver_1", planar_policy, ROUTE, destination=(1000.0, 0.0))
        session.handle_tick(tick(100))
        events = session.complete(None, T0 + timedelta(seconds=101))
        assert len(kinds(events, EarlyCompletionDetected)) == 1
        assert session.closed
        assert session.awaiting_response
        assert session.handle_tick(tick(102)) == []

    def test_detector_failure_does_not_raise(self, planar_policy):
        session = TripSafetySession("trip_1", "driver_1", planar_policy, [("a", "b"), ("c", "d")])
        assert session.handle_tick(tick(0, speed=40.0, limit=50.0)) == []


class TestTripMonitor:
    """Test the per-trip queues and consumer tasks."""

    def test_events_are_persisted_and_broadcast(self, planar_policy):
        handler = RecordingHandler()
        received = []

        async def listener(payload):
            received.append(payload)

        async def scenario():
            monitor = TripMonitor(handler=handler, policy_factory=lambda: planar_policy)
            monitor.add_listener(listener)
            monitor.start_trip("trip_1", "driver_1", ROUTE)
            for s in range(0, 31):
                await monitor.push(tick(s, lon=150.0))
            await monitor.drain("trip_1")
            await monitor.shutdown()

        asyncio.run(scenario())
        assert len(kinds(handler.events, DeviationAlertRaised)) == 1
        kinds_received = [p["kind"] for p in received]
        assert kinds_received.count("deviation_alert") == 1
        assert "deviation_started" in kinds_received

    def test_full_queue_drops_oldest(self, planar_policy):
        handler = RecordingHandler()

        async def scenario():
            monitor = TripMonitor(handler=handler, policy_factory=lambda: planar_policy, maxsize=4)
            monitor.start_trip("trip_1", "driver_1", ROUTE)
            for s in range(0, 6):
                await monitor.push(tick(s))
            dropped = monitor.dropped_ticks["trip_1"]
            await monitor.drain("trip_1")
            last = monitor.get_session("trip_1").last_timestamp
            await monitor.shutdown()
            return dropped, last

        dropped, last = asyncio.run(scenario())
        assert dropped == 2
        assert last == T0 + timedelta(seconds=5)

    def test_end_trip_flushes_open_episodes(self, planar_policy):
        handler = RecordingHandler()

        async def scenario():
            monitor = TripMonitor(handler=handler, policy_factory=lambda: planar_policy)
            monitor.start_trip("trip_1", "driver_1", ROUTE)
            for s in range(0, 12):
                await monitor.push(tick(s, speed=75.0, limit=50.0))
            await monitor.end_trip("trip_1", None, T0 + timedelta(seconds=12))
            return monitor.is_active("trip_1"), dict(monitor.consumers)

        active, consumers = asyncio.run(scenario())
        assert not active
        assert consumers == {}
        violations = kinds(handler.events, SpeedViolationDetected)
        assert len(violations) == 1
        assert violations[0].violation.severity == "severe"

    def test_expire_pending_times_out_alerts(self, planar_policy):
        handler = RecordingHandler()

        async def scenario():
            monitor = TripMonitor(handler=handler, policy_factory=lambda: planar_policy)
            monitor.start_trip("trip_1", "driver_1", ROUTE)
            for s in range(0, 31):
                await monitor.push(tick(s, lon=150.0))
            early = await monitor.expire_pending(T0 + timedelta(seconds=60))
            late = await monitor.expire_pending(T0 + timedelta(seconds=95))
            await monitor.shutdown()
            return early, late

        early, late = asyncio.run(scenario())
        assert early == []
        assert len(kinds(late, DeviationNoResponse)) == 1

    def test_speed_limit_lookup_runs_off_the_event_loop(self, planar_policy):
        handler = RecordingHandler()
        lookup = ThreadRecordingLookup(50.0)
        gateways.speed_limits = lookup

        async def scenario():
            monitor = TripMonitor(handler=handler, policy_factory=lambda: planar_policy)
            monitor.start_trip("trip_1", "driver_1", ROUTE)
            for s in range(0, 12):
                await monitor.push(tick(s, speed=75.0))
            await monitor.end_trip("trip_1", None, T0 + timedelta(seconds=12))
            return threading.get_ident()

        loop_thread = asyncio.run(scenario())
        assert len(lookup.threads) == 12
        assert loop_thread not in lookup.threads
        assert len(kinds(handler.events, SpeedViolationDetected)) == 1
