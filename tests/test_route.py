from datetime import timedelta

import pytest

from tripsafety.config import DetectionPolicy
from tripsafety.detection import route
from tripsafety.detection.events import (
    DeviationAlertRaised,
    DeviationCleared,
    DeviationNoResponse,
    DeviationResponded,
    DeviationSOS,
    DeviationStarted,
    LocationTick,
    RecalculateRoute,
)
from tripsafety.errors import InvalidTransitionError, ValidationError

from conftest import T0

POLICY = DetectionPolicy(distance_metric="planar")
ROUTE = [(0.0, 0.0), (1000.0, 0.0)]


def at(seconds):
    return T0 + timedelta(seconds=seconds)


def off_route(seconds, offset=150.0):
    return LocationTick(trip_id="trip_1", timestamp=at(seconds), lat=float(seconds), lon=offset)


def on_route(seconds):
    return LocationTick(trip_id="trip_1", timestamp=at(seconds), lat=float(seconds), lon=0.0)


def run(ticks, state=None):
    state = state or route.new_state("trip_1", ROUTE)
    events = []
    for t in ticks:
        state, new = route.step(state, t, POLICY)
        events.extend(new)
    return state, events


def of_type(events, kind):
    return [e for e in events if isinstance(e, kind)]


class TestDeviationAlerts:
    """Test the deviation alert timeline."""

    def test_alert_fires_once_at_thirty_seconds(self):
        state, events = run([off_route(s) for s in range(0, 41)])
        alerts = of_type(events, DeviationAlertRaised)
        assert len(alerts) == 1
        assert alerts[0].timestamp == at(30)
        assert alerts[0].deviation.deviation_distance == pytest.approx(150.0)
        assert state.phase == route.ALERTING
        assert len(of_type(events, DeviationStarted)) == 1

    def test_no_alert_before_delay(self):
        state, events = run([off_route(s) for s in range(0, 30)])
        assert of_type(events, DeviationAlertRaised) == []
        assert state.phase == route.DEVIATING

    def test_threshold_is_inclusive(self):
        state, events = run([off_route(s, offset=100.0) for s in range(0, 40)])
        assert events == []
        assert state.phase == route.IDLE

    def test_recalculation_is_rate_limited(self):
        _, events = run([off_route(s) for s in range(0, 10)])
        assert len(of_type(events, RecalculateRoute)) == 1
        _, events = run([off_route(s) for s in range(0, 21)])
        assert [e.timestamp for e in of_type(events, RecalculateRoute)] == [at(0), at(10), at(20)]

    def test_empty_route_never_deviates(self):
        state, events = run([off_route(s) for s in range(0, 60)], route.new_state("trip_1", []))
        assert events == []
        assert state.phase == route.IDLE


class TestRiderResponses:
    """Test rider responses to a deviation alert."""

    def test_okay_suppresses_realert_for_cooldown(self):
        state, _ = run([off_route(s) for s in range(0, 31)])
        state, events = route.respond(state, "okay", at(35), POLICY)
        assert of_type(events, DeviationResponded)
        assert state.suppressed_until == at(155)
        assert state.phase == route.RESOLVED

        state, events = run([off_route(s) for s in range(36, 155)], state)
        assert of_type(events, DeviationAlertRaised) == []

        state, events = run([off_route(155)], state)
        alerts = of_type(events, DeviationAlertRaised)
        assert len(alerts) == 1
        assert alerts[0].deviation.rider_response == "pending"

    def test_realert_keeps_deviation_id(self):
        state, events = run([off_route(s) for s in range(0, 31)])
        first_id = of_type(events, DeviationAlertRaised)[0].deviation.id
        state, _ = route.respond(state, "okay", at(31), POLICY)
        _, events = run([off_route(s) for s in range(32, 152)], state)
        assert of_type(events, DeviationAlertRaised)[0].deviation.id == first_id

    def test_sos_escalates(self):
        state, _ = run([off_route(s) for s in range(0, 31)])
        state, events = route.respond(state, "sos", at(33), POLICY)
        sos = of_type(events, DeviationSOS)
        assert len(sos) == 1
        assert sos[0].deviation.rider_response == "sos"
        assert state.escalated
        _, events = run([off_route(s) for s in range(34, 300)], state)
        assert of_type(events, DeviationAlertRaised) == []

    def test_response_without_alert(self):
        state, _ = run([off_route(s) for s in range(0, 10)])
        with pytest.raises(InvalidTransitionError):
            route.respond(state, "okay", at(11), POLICY)

    def test_unknown_response(self):
        state, _ = run([off_route(s) for s in range(0, 31)])
        with pytest.raises(ValidationError):
            route.respond(state, "maybe", at(32), POLICY)


class TestTimeout:
    """Test the unanswered alert timeout."""

    def test_timeout_on_next_tick(self):
        state, events = run([off_route(s) for s in range(0, 31)] + [off_route(90)])
        timeouts = of_type(events, DeviationNoResponse)
        assert len(timeouts) == 1
        deviation = timeouts[0].deviation
        assert deviation.rider_response == "no_response"
        assert deviation.auto_alert_sent
        assert state.escalated

    def test_timeout_without_tick(self):
        state, _ = run([off_route(s) for s in range(0, 31)])
        state, events = route.check_timeout(state, at(89), POLICY)
        assert events == []
        state, events = route.check_timeout(state, at(90), POLICY)
        assert len(of_type(events, DeviationNoResponse)) == 1
        state, events = route.check_timeout(state, at(200), POLICY)
        assert events == []


class TestEpisodeReset:
    """Test that returning to the route ends the episode."""

    def test_return_to_route_clears_everything(self):
        state, _ = run([off_route(s) for s in range(0, 31)])
        state, _ = route.respond(state, "okay", at(32), POLICY)
        state, events = run([on_route(40)], state)
        cleared = of_type(events, DeviationCleared)
        assert len(cleared) == 1
        assert cleared[0].deviation_id is not None
        assert state == route.new_state("trip_1", ROUTE)

    def test_new_episode_after_reset_alerts_again(self):
        state, _ = run([off_route(s) for s in range(0, 31)])
        state, _ = route.respond(state, "okay", at(32), POLICY)
        state, _ = run([on_route(40)], state)
        _, events = run([off_route(s) for s in range(50, 81)], state)
        alerts = of_type(events, DeviationAlertRaised)
        assert len(alerts) == 1
        assert alerts[0].timestamp == at(80)

    def test_replaced_route_is_judged_on_next_tick(self):
        state, _ = run([off_route(s) for s in range(0, 5)])
        state = route.replace_route(state, [(0.0, 150.0), (1000.0, 150.0)])
        state, events = run([off_route(6)], state)
        assert of_type(events, DeviationCleared)
        assert state.phase == route.IDLE

    def test_finish_closes_open_episode(self):
        state, _ = run([off_route(s) for s in range(0, 31)])
        state, events = route.finish(state, at(40))
        assert len(of_type(events, DeviationCleared)) == 1
        assert state.phase == route.IDLE
