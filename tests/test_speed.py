from datetime import timedelta

import pytest

from tripsafety.config import DetectionPolicy
from tripsafety.detection import speed
from tripsafety.detection.events import (
    AlertLevelChanged,
    LocationTick,
    SpeedEpisodeOpened,
    SpeedViolationDetected,
)

from conftest import T0

POLICY = DetectionPolicy(distance_metric="planar")


def tick(seconds, speed_value, limit=50.0, trip_id="trip_1"):
    return LocationTick(trip_id=trip_id, timestamp=T0 + timedelta(seconds=seconds),
                        lat=0.0, lon=float(seconds), speed=speed_value, speed_limit=limit)


def run(ticks, state=None):
    state = state or speed.SpeedMonitorState(trip_id="trip_1")
    events = []
    for t in ticks:
        state, new = speed.step(state, t, POLICY)
        events.extend(new)
    return state, events


def violations(events):
    return [e.violation for e in events if isinstance(e, SpeedViolationDetected)]


class TestAlertLevels:
    """Test the live alert level."""

    def test_classification_boundaries(self):
        assert speed.classify_alert_level(2.9, POLICY) == "normal"
        assert speed.classify_alert_level(3.0, POLICY) == "warning"
        assert speed.classify_alert_level(5.9, POLICY) == "warning"
        assert speed.classify_alert_level(6.0, POLICY) == "danger"

    def test_level_change_events(self):
        _, events = run([tick(0, 52), tick(1, 54), tick(2, 60), tick(3, 61), tick(4, 45)])
        levels = [e.level for e in events if isinstance(e, AlertLevelChanged)]
        assert levels == ["warning", "danger", "normal"]

    def test_level_is_monotone_in_excess(self):
        order = {"normal": 0, "warning": 1, "danger": 2}
        previous = -1
        for excess in [x / 2 for x in range(0, 30)]:
            level = order[speed.classify_alert_level(excess, POLICY)]
            assert level >= previous
            previous = level


class TestSpeedEpisodes:
    """Test violation episode detection."""

    def test_sustained_speeding_yields_one_violation(self):
        ticks = [tick(s, 65) for s in range(0, 13)] + [tick(s, 45) for s in range(13, 19)]
        state, events = run(ticks)
        found = violations(events)
        assert len(found) == 1
        violation = found[0]
        assert violation.max_excess_speed == 15
        assert violation.max_speed == 65
        assert violation.severity == "moderate"
        assert violation.start_time == T0
        assert violation.end_time == T0 + timedelta(seconds=12)
        assert violation.duration == 12
        assert state.episode is None

    def test_episode_opens_at_minimum_duration(self):
        _, events = run([tick(s, 60) for s in range(0, 11)])
        opened = [e for e in events if isinstance(e, SpeedEpisodeOpened)]
        assert len(opened) == 1
        assert opened[0].timestamp == T0 + timedelta(seconds=10)

    def test_short_burst_is_not_a_violation(self):
        ticks = [tick(s, 70) for s in range(0, 6)] + [tick(s, 40) for s in range(6, 20)]
        state, events = run(ticks)
        assert violations(events) == []
        assert state.episode is None

    def test_brief_dip_does_not_split_episode(self):
        ticks = ([tick(s, 62) for s in range(0, 12)] + [tick(12, 45), tick(13, 45)]
                 + [tick(s, 62) for s in range(14, 20)] + [tick(s, 45) for s in range(20, 26)])
        _, events = run(ticks)
        found = violations(events)
        assert len(found) == 1
        assert found[0].end_time == T0 + timedelta(seconds=19)

    def test_average_excess(self):
        ticks = ([tick(s, 55) for s in range(0, 6)] + [tick(s, 65) for s in range(6, 11)]
                 + [tick(s, 40) for s in range(11, 17)])
        _, events = run(ticks)
        violation = violations(events)[0]
        assert violation.average_excess_speed == pytest.approx((6 * 5 + 5 * 15) / 11)

    def test_ticks_without_speed_are_ignored(self):
        state = speed.SpeedMonitorState(trip_id="trip_1")
        no_speed = LocationTick(trip_id="trip_1", timestamp=T0, lat=0.0, lon=0.0)
        new_state, events = speed.step(state, no_speed, POLICY)
        assert new_state == state
        assert events == []

    def test_out_of_order_tick_is_ignored(self):
        state, _ = run([tick(5, 60)])
        new_state, events = speed.step(state, tick(2, 90), POLICY)
        assert new_state == state
        assert events == []

    def test_unknown_limit_is_compliant(self):
        _, events = run([tick(s, 120, limit=None) for s in range(0, 20)])
        assert violations(events) == []

    def test_episode_id_is_deterministic(self):
        ticks = [tick(s, 65) for s in range(0, 13)] + [tick(s, 45) for s in range(13, 19)]
        _, first = run(ticks)
        _, second = run(ticks)
        assert violations(first)[0].id == violations(second)[0].id


class TestSeverity:
    """Test severity classification of closed episodes."""

    @pytest.mark.parametrize("excess,expected", [
        (9.9, "minor"), (10, "moderate"), (19.9, "moderate"), (20, "severe"), (35, "severe"),
    ])
    def test_boundaries(self, excess, expected):
        assert speed.classify_severity(excess, POLICY) == expected


class TestFinish:
    """Test closing the monitor at trip end."""

    def test_open_episode_is_emitted(self):
        state, _ = run([tick(s, 80) for s in range(0, 12)])
        state, events = speed.finish(state, POLICY, T0 + timedelta(seconds=12))
        found = violations(events)
        assert len(found) == 1
        assert found[0].severity == "severe"
        assert state.episode is None

    def test_unopened_run_is_dropped(self):
        state, _ = run([tick(s, 80) for s in range(0, 4)])
        state, events = speed.finish(state, POLICY)
        assert events == []
        assert state == speed.SpeedMonitorState(trip_id="trip_1")


class TestViolationFloor:
    """Test that marginal excess never becomes a violation."""

    @pytest.mark.parametrize("excess,expected", [(1, None), (4.9, None), (5, "minor"), (10, "moderate")])
    def test_sustained_excess(self, excess, expected):
        ticks = [tick(s, 50 + excess) for s in range(0, 16)] + [tick(s, 45) for s in range(16, 24)]
        _, events = run(ticks)
        found = violations(events)
        if expected is None:
            assert found == []
        else:
            assert [v.severity for v in found] == [expected]

    def test_marginal_excess_still_raises_alert_level(self):
        _, events = run([tick(s, 54.9) for s in range(0, 16)])
        assert [e.level for e in events if isinstance(e, AlertLevelChanged)] == ["warning"]
        assert [e for e in events if isinstance(e, SpeedEpisodeOpened)] == []

    def test_floor_is_configurable(self):
        lenient = DetectionPolicy(distance_metric="planar", speed_violation_min_excess=1)
        state = speed.SpeedMonitorState(trip_id="trip_1")
        events = []
        for t in [tick(s, 52) for s in range(0, 12)] + [tick(s, 45) for s in range(12, 18)]:
            state, new = speed.step(state, t, lenient)
            events.extend(new)
        assert len(violations(events)) == 1
