"""Replays recorded telemetry from CSV through the trip monitor.

Expected columns: ``trip_id, time, latitude, longitude`` and optionally
``speed`` and ``speed_limit``. Missing speeds are derived from consecutive
fixes in km/h.
"""
import asyncio
import logging
from typing import Dict, List, Optional

import pandas as pd

from .config import EMIT_INTERVAL_SECONDS
from .db import SessionLocal, atomic
from .detection.events import LocationTick
from .geometry import haversine_distance
from .models import Trip
from .monitoring import TripMonitor
from .persistence import create_trip
from .utils import to_naive_utc

logger = logging.getLogger(__name__)

# Global state
RUNNING = False
current_task: Optional[asyncio.Task] = None


def calculate_speed_kph(lat1, lon1, time1, lat2, lon2, time2) -> float:
    """Speed in km/h between two GPS fixes."""
    seconds = (time2 - time1).total_seconds()
    if seconds <= 0:
        return 0.0
    return haversine_distance((lat1, lon1), (lat2, lon2)) / seconds * 3.6


def _optional(value) -> Optional[float]:
    return None if pd.isna(value) else float(value)


def load_ticks(csv_path: str, trip_id: Optional[str] = None) -> Dict[str, List[LocationTick]]:
    """Read a telemetry CSV into per-trip tick lists, ordered by time."""
    df = pd.read_csv(csv_path, dtype={"trip_id": str})
    df["time"] = pd.to_datetime(df["time"], utc=True)
    df = df.sort_values(["trip_id", "time"])
    if trip_id is not None:
        df = df[df["trip_id"] == trip_id]

    ticks: Dict[str, List[LocationTick]] = {}
    for tid, group in df.groupby("trip_id", sort=True):
        trip_ticks = []
        prev = None
        for _, row in group.iterrows():
            timestamp = to_naive_utc(row["time"].to_pydatetime())
            lat = float(row["latitude"])
            lon = float(row["longitude"])
            speed = _optional(row["speed"]) if "speed" in group.columns else None
            if speed is None:
                speed = 0.0 if prev is None else calculate_speed_kph(prev[0], prev[1], prev[2], lat, lon, timestamp)
            limit = _optional(row["speed_limit"]) if "speed_limit" in group.columns else None
            trip_ticks.append(LocationTick(trip_id=str(tid), timestamp=timestamp, lat=lat, lon=lon,
                                           speed=speed, speed_limit=limit))
            prev = (lat, lon, timestamp)
        ticks[str(tid)] = trip_ticks
    return ticks


def _ensure_trip(monitor: TripMonitor, trip_id: str):
    if monitor.is_active(trip_id):
        return
    db = SessionLocal()
    try:
        trip = db.get(Trip, trip_id)
        if trip is None:
            with atomic(db):
                trip = create_trip(db, trip_id, f"driver_{trip_id}", f"rider_{trip_id}", 0.0)
            logger.info(f"Created trip {trip_id} for replay")
        destination = (trip.destination_lat, trip.destination_lon) if trip.destination_lat is not None else None
        monitor.start_trip(trip.id, trip.driver_id, destination=destination)
    finally:
        db.close()


async def replay(monitor: TripMonitor, csv_path: str, interval: Optional[float] = None,
                 trip_id: Optional[str] = None) -> Dict[str, int]:
    """Push every tick of the CSV into the monitor and wait for processing."""
    global RUNNING
    interval = EMIT_INTERVAL_SECONDS if interval is None else interval
    ticks = load_ticks(csv_path, trip_id)
    logger.info(f"Replaying {sum(len(t) for t in ticks.values())} ticks for {len(ticks)} trips from {csv_path}")

    pushed = {}
    RUNNING = True
    try:
        for tid, trip_ticks in ticks.items():
            _ensure_trip(monitor, tid)
            pushed[tid] = 0
            for tick in trip_ticks:
                if not RUNNING:
                    logger.info(f"Replay stopped during trip {tid}")
                    return pushed
                await monitor.push(tick)
                pushed[tid] += 1
                if interval > 0:
                    await asyncio.sleep(interval)
            await monitor.drain(tid)
            logger.info(f"Replayed {pushed[tid]} ticks for trip {tid}")
    finally:
        RUNNING = False
    return pushed


async def start_replay(monitor: TripMonitor, csv_path: str, interval: Optional[float] = None,
                       trip_id: Optional[str] = None):
    """Run a replay as the current background task."""
    global current_task
    if RUNNING:
        logger.info("Replay already running")
        return
    current_task = asyncio.create_task(replay(monitor, csv_path, interval, trip_id))
    try:
        await current_task
    except asyncio.CancelledError:
        logger.info("Replay cancelled")
    except Exception:
        logger.exception("Replay failed")


def stop_replay():
    global RUNNING
    RUNNING = False
    if current_task and not current_task.done():
        current_task.cancel()
    return {"message": "replay stopped"}


def is_running():
    return RUNNING
