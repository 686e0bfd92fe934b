"""Speed monitoring as a pure state machine.

Each call to ``step`` takes the previous ``SpeedMonitorState`` and one tick and
returns the next state plus whatever events the tick produced. Nothing here
touches the database or the network.
"""
from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional, Tuple

from ..config import DetectionPolicy
from ..utils import episode_id
from .events import (
    AlertLevelChanged,
    LocationTick,
    Point,
    SafetyEvent,
    SpeedEpisodeOpened,
    SpeedSample,
    SpeedViolation,
    SpeedViolationDetected,
)

ALERT_LEVELS = ("normal", "warning", "danger")
SPEED_SEVERITIES = ("minor", "moderate", "severe")


@dataclass(frozen=True)
class SpeedEpisode:
    started_at: datetime
    location: Point
    last_violation_at: datetime
    max_speed: float
    speed_limit: float
    max_excess: float
    excess_total: float
    sample_count: int
    samples: Tuple[SpeedSample, ...] = ()
    opened: bool = False
    compliant_since: Optional[datetime] = None


@dataclass(frozen=True)
class SpeedMonitorState:
    trip_id: str
    alert_level: str = "normal"
    last_timestamp: Optional[datetime] = None
    run_started_at: Optional[datetime] = None
    consecutive_violation_seconds: float = 0.0
    episode: Optional[SpeedEpisode] = None


def classify_alert_level(excess: float, policy: DetectionPolicy) -> str:
    if excess < policy.speed_warning_margin:
        return "normal"
    if excess < policy.speed_danger_margin:
        return "warning"
    return "danger"


def classify_severity(max_excess: float, policy: DetectionPolicy) -> str:
    if max_excess < policy.severity_moderate_excess:
        return "minor"
    if max_excess < policy.severity_severe_excess:
        return "moderate"
    return "severe"


def _close_episode(state: SpeedMonitorState, episode: SpeedEpisode, policy: DetectionPolicy) -> SpeedViolation:
    duration = (episode.last_violation_at - episode.started_at).total_seconds()
    return SpeedViolation(
        id=episode_id("spd", state.trip_id, episode.started_at),
        trip_id=state.trip_id,
        start_time=episode.started_at,
        end_time=episode.last_violation_at,
        duration=duration,
        max_speed=episode.max_speed,
        speed_limit=episode.speed_limit,
        max_excess_speed=episode.max_excess,
        average_excess_speed=episode.excess_total / episode.sample_count,
        location=episode.location,
        severity=classify_severity(episode.max_excess, policy),
        samples=episode.samples,
    )


def _extend(episode: SpeedEpisode, sample: SpeedSample) -> SpeedEpisode:
    if sample.excess > episode.max_excess:
        episode = replace(episode, max_excess=sample.excess, max_speed=sample.speed,
                          speed_limit=sample.speed_limit)
    return replace(
        episode,
        last_violation_at=sample.timestamp,
        excess_total=episode.excess_total + sample.excess,
        sample_count=episode.sample_count + 1,
        samples=episode.samples + (sample,),
        compliant_since=None,
    )


def step(state: SpeedMonitorState, tick: LocationTick,
         policy: DetectionPolicy) -> Tuple[SpeedMonitorState, List[SafetyEvent]]:
    if tick.speed is None:
        return state, []
    if state.last_timestamp is not None and tick.timestamp < state.last_timestamp:
        # Out-of-order fix; the feed is expected to be monotonic per trip.
        return state, []

    events: List[SafetyEvent] = []
    now = tick.timestamp
    limit = tick.speed_limit
    excess = tick.speed - limit if limit is not None else 0.0

    level = classify_alert_level(excess, policy) if limit is not None else "normal"
    if level != state.alert_level:
        events.append(AlertLevelChanged(
            trip_id=state.trip_id, timestamp=now, previous=state.alert_level, level=level,
            speed=tick.speed, speed_limit=limit, excess=excess,
        ))
    state = replace(state, alert_level=level, last_timestamp=now)
    episode = state.episode

    if limit is not None and excess > 0 and excess >= policy.speed_violation_min_excess:
        sample = SpeedSample(timestamp=now, speed=tick.speed, speed_limit=limit, excess=excess)
        run_started_at = state.run_started_at or now
        consecutive = (now - run_started_at).total_seconds()

        if episode is None:
            episode = SpeedEpisode(
                started_at=now, location=tick.location, last_violation_at=now,
                max_speed=tick.speed, speed_limit=limit, max_excess=excess,
                excess_total=excess, sample_count=1, samples=(sample,),
            )
        else:
            episode = _extend(episode, sample)

        if not episode.opened and consecutive >= policy.speed_min_episode_seconds:
            episode = replace(episode, opened=True)
            events.append(SpeedEpisodeOpened(trip_id=state.trip_id, timestamp=now,
                                              started_at=episode.started_at))

        return replace(state, run_started_at=run_started_at,
                       consecutive_violation_seconds=consecutive, episode=episode), events

    # Compliant tick, marginal excess, or no posted limit known.
    state = replace(state, run_started_at=None, consecutive_violation_seconds=0.0)
    if episode is None:
        return state, events
    if not episode.opened:
        return replace(state, episode=None), events

    compliant_since = episode.compliant_since or now
    if (now - compliant_since).total_seconds() >= policy.speed_debounce_seconds:
        violation = _close_episode(state, episode, policy)
        events.append(SpeedViolationDetected(trip_id=state.trip_id, timestamp=now, violation=violation))
        return replace(state, episode=None), events

    return replace(state, episode=replace(episode, compliant_since=compliant_since)), events


def finish(state: SpeedMonitorState, policy: DetectionPolicy,
           now: Optional[datetime] = None) -> Tuple[SpeedMonitorState, List[SafetyEvent]]:
    """Close out the trip: an opened episode is emitted, an unopened run is dropped."""
    events: List[SafetyEvent] = []
    episode = state.episode
    if episode is not None and episode.opened:
        violation = _close_episode(state, episode, policy)
        events.append(SpeedViolationDetected(
            trip_id=state.trip_id, timestamp=now or episode.last_violation_at, violation=violation,
        ))
    return SpeedMonitorState(trip_id=state.trip_id), events
