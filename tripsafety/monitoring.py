"""Live trip monitoring.

Every active trip gets a bounded queue of location ticks and a single
consumer task that drains it through the trip's ``TripSafetySession``. The
detectors themselves are synchronous and do no I/O; the events they emit are
persisted off the event loop and then fanned out to listeners (the
websocket broadcaster).
"""
import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .config import config
from .detection.events import LocationTick, Point, SafetyEvent
from .detection.session import TripSafetySession
from .dispatch import SafetyEventHandler
from .errors import InvalidTransitionError, NotFoundError
from .gateways import gateways

logger = logging.getLogger(__name__)

Listener = Callable[[dict], Awaitable[None]]


class TripMonitor:
    def __init__(self, handler: Optional[SafetyEventHandler] = None,
                 policy_factory=None, maxsize: Optional[int] = None):
        self.handler = handler or SafetyEventHandler(route_lookup=self.route_for)
        self.policy_factory = policy_factory or config.detection_policy
        self.maxsize = maxsize or config.trip_queue_maxsize
        self.sessions: Dict[str, TripSafetySession] = {}
        self.queues: Dict[str, asyncio.Queue] = {}
        self.consumers: Dict[str, asyncio.Task] = {}
        self.listeners: List[Listener] = []
        self.dropped_ticks: Dict[str, int] = {}

    def add_listener(self, listener: Listener):
        self.listeners.append(listener)

    def start_trip(self, trip_id: str, driver_id: str, route: Sequence[Point] = (),
                   destination: Optional[Point] = None) -> TripSafetySession:
        if trip_id in self.sessions and not self.sessions[trip_id].closed:
            return self.sessions[trip_id]
        session = TripSafetySession(trip_id, driver_id, self.policy_factory(), route, destination)
        self.sessions[trip_id] = session
        self.queues[trip_id] = asyncio.Queue(maxsize=self.maxsize)
        self.dropped_ticks[trip_id] = 0
        logger.info(f"Monitoring started for trip {trip_id} (driver {driver_id})")
        return session

    def get_session(self, trip_id: str) -> TripSafetySession:
        session = self.sessions.get(trip_id)
        if session is None:
            raise NotFoundError(f"Trip {trip_id} is not being monitored")
        return session

    def route_for(self, trip_id: str) -> Sequence[Point]:
        session = self.sessions.get(trip_id)
        return list(session.route.route) if session else []

    def is_active(self, trip_id: str) -> bool:
        session = self.sessions.get(trip_id)
        return session is not None and not session.closed

    async def push(self, tick: LocationTick):
        """Enqueue a tick; when the trip's queue is full the oldest tick is dropped."""
        session = self.get_session(tick.trip_id)
        if session.closed:
            raise InvalidTransitionError(f"Trip {tick.trip_id} has already ended")
        queue = self.queues[tick.trip_id]
        if queue.full():
            queue.get_nowait()
            queue.task_done()
            self.dropped_ticks[tick.trip_id] += 1
            logger.warning(f"Tick queue full for trip {tick.trip_id}; dropped oldest tick "
                           f"({self.dropped_ticks[tick.trip_id]} dropped so far)")
        queue.put_nowait(tick)
        self._ensure_consumer(tick.trip_id)

    def _ensure_consumer(self, trip_id: str):
        task = self.consumers.get(trip_id)
        if task is None or task.done():
            self.consumers[trip_id] = asyncio.create_task(self._consume(trip_id))

    async def _consume(self, trip_id: str):
        queue = self.queues[trip_id]
        while True:
            tick = await queue.get()
            try:
                await self._process(trip_id, tick)
            except Exception:
                logger.exception(f"Error processing tick for trip {trip_id}")
            finally:
                queue.task_done()

    async def _process(self, trip_id: str, tick: LocationTick):
        session = self.sessions[trip_id]
        if tick.speed is not None and tick.speed_limit is None:
            try:
                limit = await asyncio.to_thread(gateways.speed_limits.lookup, tick.lat, tick.lon)
                tick = replace(tick, speed_limit=limit)
            except Exception:
                logger.exception(f"Speed limit lookup failed for trip {trip_id}")
        await self._emit(session.handle_tick(tick))

    async def _emit(self, events: List[SafetyEvent]):
        if not events:
            return
        await asyncio.to_thread(self.handler.handle_all, events)
        for event in events:
            payload = event.to_dict()
            for listener in list(self.listeners):
                try:
                    await listener(payload)
                except Exception:
                    logger.exception(f"Listener failed for {event.kind}")

    async def drain(self, trip_id: str):
        """Wait until every queued tick for the trip has been processed."""
        queue = self.queues.get(trip_id)
        task = self.consumers.get(trip_id)
        if queue is not None and task is not None and not task.done():
            await queue.join()

    async def update_route(self, trip_id: str, route: Sequence[Point]):
        await self.drain(trip_id)
        self.get_session(trip_id).update_route(route)

    async def respond_to_deviation(self, trip_id: str, response: str, now: datetime):
        await self.drain(trip_id)
        session = self.get_session(trip_id)
        events = session.respond_to_deviation(response, now)
        await self._emit(events)
        return session.route.deviation

    async def end_trip(self, trip_id: str, location: Optional[Point], now: datetime) -> List[SafetyEvent]:
        """Finish the trip: drain its queue, close every episode and stop its consumer."""
        session = self.get_session(trip_id)
        if session.closed:
            raise InvalidTransitionError(f"Trip {trip_id} has already ended")
        await self.drain(trip_id)
        events = session.complete(location, now)
        await self._stop_consumer(trip_id)
        await self._emit(events)
        if not session.awaiting_response:
            self.sessions.pop(trip_id, None)
        logger.info(f"Monitoring stopped for trip {trip_id}")
        return events

    async def respond_to_completion(self, trip_id: str, response: str, now: datetime):
        session = self.get_session(trip_id)
        events = session.respond_to_completion(response, now)
        await self._emit(events)
        completion = session.completion.completion
        if session.closed and not session.awaiting_response:
            self.sessions.pop(trip_id, None)
        return completion

    async def expire_pending(self, now: datetime) -> List[SafetyEvent]:
        """Apply rider-response timeouts due at ``now`` across all trips."""
        expired: List[SafetyEvent] = []
        for trip_id, session in list(self.sessions.items()):
            if not session.closed:
                await self.drain(trip_id)
            events = session.expire(now)
            await self._emit(events)
            expired.extend(events)
            if session.closed and not session.awaiting_response:
                self.sessions.pop(trip_id, None)
        return expired

    async def _stop_consumer(self, trip_id: str):
        task = self.consumers.pop(trip_id, None)
        self.queues.pop(trip_id, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def shutdown(self):
        for trip_id in list(self.consumers):
            await self._stop_consumer(trip_id)

    def reset(self):
        """Forget every trip without awaiting consumers (tests, fresh loops)."""
        for task in self.consumers.values():
            loop = task.get_loop()
            if not task.done() and not loop.is_closed():
                loop.call_soon_threadsafe(task.cancel)
        self.sessions.clear()
        self.queues.clear()
        self.consumers.clear()
        self.dropped_ticks.clear()

    def status(self) -> Dict:
        return {
            trip_id: {**session.snapshot(),
                      "queued": self.queues[trip_id].qsize() if trip_id in self.queues else 0,
                      "dropped_ticks": self.dropped_ticks.get(trip_id, 0)}
            for trip_id, session in self.sessions.items()
        }


trip_monitor = TripMonitor()
