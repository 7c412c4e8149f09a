"""
Emergency location tracking

One background task per tracked participant polls a location source and
submits throttled, fire-and-forget position writes to the task queue. The
caller issuing state transitions never waits on these writes.

Each tracked emergency is also watched through a document change stream,
so sessions end when any client closes the emergency or a volunteer
withdraws, not only when this process commits that transition.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Set

from ...core.database import (
    DatabaseError, DocumentSnapshot, DocumentTransaction, SERVER_TIMESTAMP, Subscription
)
from ...core.task_queue import BackgroundTaskQueue
from ...core.timestamps import to_iso
from ...models.emergency import Emergency, GeoPoint, VolunteerStatus
from .geo import distance_meters, eta_between
from .incident_manager import IncidentManager
from .store_paths import EMERGENCIES


class LocationSource(Protocol):
    async def current_location(self) -> Optional[GeoPoint]:
        ...


class LocationThrottle:
    """
    Decides whether a fix is worth writing.

    The first fix always passes; after that both the interval must have
    elapsed and the participant must have moved at least the minimum
    displacement since the last written fix.
    """

    def __init__(self, interval_seconds: float, min_displacement_meters: float,
                 clock: Callable[[], float] = time.monotonic):
        self.interval_seconds = interval_seconds
        self.min_displacement_meters = min_displacement_meters
        self.clock = clock
        self.last_point: Optional[GeoPoint] = None
        self.last_time: Optional[float] = None

    def should_write(self, point: GeoPoint, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        if self.last_point is None or self.last_time is None:
            return True
        if now - self.last_time < self.interval_seconds:
            return False
        return distance_meters(self.last_point, point) >= self.min_displacement_meters

    def record(self, point: GeoPoint, now: Optional[float] = None) -> None:
        self.last_point = point
        self.last_time = self.clock() if now is None else now

    def offer(self, point: GeoPoint) -> bool:
        """should_write + record in one step"""
        now = self.clock()
        if not self.should_write(point, now):
            return False
        self.record(point, now)
        return True


@dataclass
class TrackingSession:
    emergency_id: str
    participant_id: str
    role: str
    throttle: LocationThrottle
    task: Optional[asyncio.Task] = None
    fixes_submitted: int = 0
    errors: int = 0

    @property
    def key(self) -> str:
        return session_key(self.emergency_id, self.participant_id)


def session_key(emergency_id: str, participant_id: str) -> str:
    return f"{emergency_id}:{participant_id}"


Writer = Callable[[GeoPoint], Awaitable[bool]]


class LocationTracker:
    """Registry of live tracking sessions"""

    def __init__(self, incidents: IncidentManager, tasks: BackgroundTaskQueue,
                 attendee_interval: float = 3.0, attendee_min_displacement: float = 2.0,
                 volunteer_interval: float = 5.0, volunteer_min_displacement: float = 5.0,
                 walking_speed_mps: float = 1.4):
        self.incidents = incidents
        self.tasks = tasks
        self.attendee_interval = attendee_interval
        self.attendee_min_displacement = attendee_min_displacement
        self.volunteer_interval = volunteer_interval
        self.volunteer_min_displacement = volunteer_min_displacement
        self.walking_speed_mps = walking_speed_mps
        self.sessions: Dict[str, TrackingSession] = {}
        # emergency id -> change stream; None while the subscription is opening
        self.watches: Dict[str, Optional[Subscription]] = {}
        self._openers: Set[asyncio.Task] = set()
        self.logger = logging.getLogger(__name__)

    def is_tracking(self, emergency_id: str, participant_id: str) -> bool:
        session = self.sessions.get(session_key(emergency_id, participant_id))
        return session is not None and session.task is not None and not session.task.done()

    @property
    def active_sessions(self) -> List[str]:
        return [key for key, s in self.sessions.items() if s.task is not None and not s.task.done()]

    def start_attendee_tracking(self, emergency: Emergency, source: LocationSource) -> bool:
        """Track the reporter and move the incident location with them"""
        async def _write(point: GeoPoint) -> bool:
            return await self.incidents.update_emergency_location(emergency, point)

        return self._start(emergency.id, emergency.reporter_id, 'attendee', source, _write,
                           LocationThrottle(self.attendee_interval, self.attendee_min_displacement))

    def start_volunteer_tracking(self, emergency: Emergency, volunteer_id: str,
                                 source: LocationSource) -> bool:
        """Track a volunteer on the way to (and at) the incident"""
        async def _write(point: GeoPoint) -> bool:
            return await self.write_volunteer_location(emergency.id, volunteer_id, point)

        return self._start(emergency.id, volunteer_id, 'volunteer', source, _write,
                           LocationThrottle(self.volunteer_interval, self.volunteer_min_displacement))

    def _start(self, emergency_id: str, participant_id: str, role: str,
               source: LocationSource, write: Writer, throttle: LocationThrottle) -> bool:
        key = session_key(emergency_id, participant_id)
        if self.is_tracking(emergency_id, participant_id):
            return False

        interval = self.attendee_interval if role == 'attendee' else self.volunteer_interval
        session = TrackingSession(emergency_id, participant_id, role, throttle)
        session.task = asyncio.create_task(self._run(session, source, write, interval))
        self.sessions[key] = session
        self._watch(emergency_id)
        self.logger.info(f"Started {role} location tracking for {participant_id} on {emergency_id}")
        return True

    async def _run(self, session: TrackingSession, source: LocationSource,
                   write: Writer, interval: float) -> None:
        while True:
            try:
                point = await source.current_location()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                session.errors += 1
                self.logger.warning(f"Location source failed for {session.key}: {e}")
                point = None

            if point is not None and session.throttle.offer(point):
                if self.tasks.submit(f"location:{session.key}", lambda p=point: write(p)):
                    session.fixes_submitted += 1

            await asyncio.sleep(interval)

    # -- emergency watches -------------------------------------------

    def _sessions_for(self, emergency_id: str) -> List[TrackingSession]:
        return [s for s in self.sessions.values() if s.emergency_id == emergency_id]

    def _watch(self, emergency_id: str) -> None:
        if emergency_id in self.watches:
            return
        self.watches[emergency_id] = None
        opener = asyncio.create_task(self._open_watch(emergency_id))
        self._openers.add(opener)
        opener.add_done_callback(self._openers.discard)

    async def _open_watch(self, emergency_id: str) -> None:
        subscription = await self.incidents.store.subscribe_document(
            EMERGENCIES, emergency_id,
            lambda snapshot: self._on_emergency_change(emergency_id, snapshot)
        )
        # The reservation is gone if every session ended while subscribing
        if self.watches.get(emergency_id, False) is None and self._sessions_for(emergency_id):
            self.watches[emergency_id] = subscription
        else:
            subscription.cancel()

    def _release_watch(self, emergency_id: str) -> None:
        subscription = self.watches.pop(emergency_id, None)
        if subscription is not None:
            subscription.cancel()

    def _on_emergency_change(self, emergency_id: str, snapshot: DocumentSnapshot) -> None:
        """End sessions whose emergency closed or whose volunteer stood down"""
        emergency = Emergency.from_dict(snapshot.data, snapshot.id) if snapshot.exists else None
        for session in self._sessions_for(emergency_id):
            if emergency is None or emergency.is_terminal:
                reason = "emergency closed"
            elif session.role == 'volunteer':
                response = emergency.responses.get(session.participant_id)
                if response is None or not response.status.ends_tracking:
                    continue
                reason = f"volunteer {response.status.value}"
            else:
                continue
            self.sessions.pop(session.key, None)
            if session.task is not None:
                session.task.cancel()
            self.logger.info(f"Stopped {session.role} location tracking for "
                             f"{session.participant_id} on {emergency_id}: {reason}")

        if not self._sessions_for(emergency_id):
            self._release_watch(emergency_id)

    async def write_volunteer_location(self, emergency_id: str, volunteer_id: str,
                                       point: GeoPoint) -> bool:
        """
        Write one volunteer fix with a fresh ETA; skipped once the emergency
        is terminal or the volunteer has withdrawn. Store failures are logged.
        """
        def _apply(txn: DocumentTransaction) -> bool:
            if not txn.exists:
                return False
            emergency = Emergency.from_dict(txn.data, txn.doc_id)
            response = emergency.responses.get(volunteer_id)
            if emergency.is_terminal or response is None or response.status.ends_tracking:
                return False
            prefix = f'responses.{volunteer_id}'
            fields = {
                f'{prefix}.currentLocation': point.to_dict(),
                f'{prefix}.lastUpdated': to_iso(txn.now),
                'updatedAt': SERVER_TIMESTAMP,
            }
            if response.status is not VolunteerStatus.ARRIVED:
                fields[f'{prefix}.estimatedArrivalTime'] = eta_between(
                    point, emergency.location, self.walking_speed_mps)
            txn.update(fields)
            return True

        try:
            return await self.incidents.store.run_transaction(EMERGENCIES, emergency_id, _apply)
        except DatabaseError as e:
            self.logger.error(f"Error updating volunteer location for {volunteer_id}: {e}")
            return False

    async def stop(self, emergency_id: str, participant_id: str) -> bool:
        session = self.sessions.pop(session_key(emergency_id, participant_id), None)
        if session is None:
            return False
        if not self._sessions_for(emergency_id):
            self._release_watch(emergency_id)
        await self._cancel(session)
        self.logger.info(f"Stopped {session.role} location tracking for {participant_id} on {emergency_id}")
        return True

    async def stop_emergency(self, emergency_id: str) -> int:
        """Tear down every session attached to one emergency"""
        keys = [k for k, s in self.sessions.items() if s.emergency_id == emergency_id]
        sessions = [self.sessions.pop(key) for key in keys]
        self._release_watch(emergency_id)
        for session in sessions:
            await self._cancel(session)
        if keys:
            self.logger.info(f"Stopped {len(keys)} tracking sessions for emergency {emergency_id}")
        return len(keys)

    async def stop_all(self) -> None:
        sessions = list(self.sessions.values())
        self.sessions.clear()
        for emergency_id in list(self.watches):
            self._release_watch(emergency_id)
        for session in sessions:
            await self._cancel(session)
        if self._openers:
            await asyncio.gather(*list(self._openers), return_exceptions=True)

    @staticmethod
    async def _cancel(session: TrackingSession) -> None:
        if session.task is None or session.task.done():
            return
        session.task.cancel()
        try:
            await session.task
        except asyncio.CancelledError:
            pass
