"""
Emergency Coordinator

Process-wide facade over the emergency coordination core. Holds the store,
identity provider, lock service and background task queue, resolves the
current actor for every operation and runs the side effects that follow a
committed transition: fan-out, location tracking and roster flags.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from ...core.config import ConfigurationManager
from ...core.database import DocumentStore, Subscription
from ...core.identity import IdentityProvider
from ...core.locks import AdvisoryLockService
from ...core.task_queue import BackgroundTaskQueue
from ...models.emergency import Emergency, EmergencyStatus, GeoPoint, VolunteerStatus
from ...models.user import Actor
from .duplicate_cleanup import CleanupReport, DuplicateCleanup
from .errors import NotAuthenticated, NotFound
from .incident_manager import ACTIVE_STATUS_VALUES, IncidentManager
from .location_tracker import LocationSource, LocationTracker
from .notification_fanout import InboxPushDelivery, NotificationFanout, PushDelivery
from .resolution import DualResolution, ResolutionOutcome
from .state_machine import EmergencyStateMachine
from .store_paths import EMERGENCIES


EmergencyListener = Callable[[Any], Any]


class EmergencyCoordinator:
    """
    Injected coordinator for one process.

    Every public operation acts as the identity provider's current actor and
    raises NotAuthenticated when there is none.
    """

    def __init__(self, store: DocumentStore, identity: IdentityProvider,
                 locks: AdvisoryLockService, tasks: BackgroundTaskQueue,
                 delivery: Optional[PushDelivery] = None,
                 location_source: Optional[LocationSource] = None,
                 responder_radius_meters: float = 5000.0,
                 walking_speed_mps: float = 1.4,
                 exclusive_create: bool = False,
                 stale_after_hours: float = 24.0,
                 tracking: Optional[Dict[str, float]] = None):
        self.store = store
        self.identity = identity
        self.locks = locks
        self.tasks = tasks
        self.location_source = location_source
        self.exclusive_create = exclusive_create
        self.logger = logging.getLogger(__name__)

        self.state_machine = EmergencyStateMachine(store, walking_speed_mps)
        self.resolution = DualResolution(self.state_machine)
        self.incidents = IncidentManager(store)
        self.cleanup = DuplicateCleanup(self.incidents, self.state_machine, stale_after_hours)
        self.fanout = NotificationFanout(store, delivery or InboxPushDelivery(store), tasks,
                                         responder_radius_meters)
        self.tracker = LocationTracker(self.incidents, tasks, walking_speed_mps=walking_speed_mps,
                                       **(tracking or {}))
        self.watches: List[Subscription] = []

    @classmethod
    def from_config(cls, config: ConfigurationManager, store: DocumentStore,
                    identity: IdentityProvider, tasks: BackgroundTaskQueue,
                    delivery: Optional[PushDelivery] = None,
                    location_source: Optional[LocationSource] = None) -> 'EmergencyCoordinator':
        """
        Build a coordinator from the locks, tracking, notifications and
        emergency sections. Later changes to exclusive_create and the
        responder radius made through config.set take effect immediately.
        """
        lock_settings = config.get_section('locks')
        tracking = config.get_section('tracking')
        locks = AdvisoryLockService(
            store,
            default_ttl=lock_settings.get('default_ttl_seconds', 10.0),
            max_attempts=lock_settings.get('max_attempts', 5),
            initial_delay=lock_settings.get('initial_delay_seconds', 0.2),
        )
        coordinator = cls(
            store, identity, locks, tasks,
            delivery=delivery,
            location_source=location_source,
            responder_radius_meters=config.get_responder_radius_meters(),
            walking_speed_mps=config.get_section('emergency').get('walking_speed_mps', 1.4),
            exclusive_create=config.is_exclusive_create_enabled(),
            stale_after_hours=config.get_stale_after_hours(),
            tracking={
                'attendee_interval': tracking.get('attendee_interval_seconds', 3.0),
                'attendee_min_displacement': tracking.get('attendee_min_displacement_meters', 2.0),
                'volunteer_interval': tracking.get('volunteer_interval_seconds', 5.0),
                'volunteer_min_displacement': tracking.get('volunteer_min_displacement_meters', 5.0),
            },
        )
        config.watch('emergency.exclusive_create', coordinator._on_config_change)
        config.watch('notifications.responder_radius_meters', coordinator._on_config_change)
        return coordinator

    def _on_config_change(self, key: str, value: Any) -> None:
        if key == 'emergency.exclusive_create':
            self.exclusive_create = bool(value)
        elif key == 'notifications.responder_radius_meters':
            self.fanout.responder_radius_meters = float(value)
        self.logger.info(f"Applied configuration change {key}={value}")

    async def start(self) -> None:
        await self.tasks.start()
        self.logger.info("Emergency coordinator started")

    async def stop(self) -> None:
        await self.tracker.stop_all()
        for subscription in self.watches:
            subscription.cancel()
        self.watches.clear()
        await self.tasks.stop()
        self.logger.info("Emergency coordinator stopped")

    def _actor(self) -> Actor:
        actor = self.identity.current_actor()
        if actor is None:
            raise NotAuthenticated("No authenticated user")
        return actor

    # -- creation --------------------------------------------------------

    async def create_emergency(self, group_id: str, location: GeoPoint,
                               message: Optional[str] = None) -> Emergency:
        """
        Raise an emergency for the current actor.

        Returns the reporter's existing live emergency instead of creating a
        second one. Group members and nearby responders are alerted only when
        a new emergency was actually created.
        """
        reporter = self._actor()

        async def _create():
            return await self.incidents.create_emergency(reporter, group_id, location, message)

        if self.exclusive_create:
            emergency, created = await self.locks.run_exclusive(
                f"emergency_create_{reporter.user_id}", reporter.user_id, _create,
                raise_on_unavailable=True,
            )
        else:
            emergency, created = await _create()

        if created:
            await self.fanout.emergency_created(emergency)
        self._track_attendee(emergency)
        return emergency

    def _track_attendee(self, emergency: Emergency) -> None:
        if self.location_source is not None and emergency.is_active:
            self.tracker.start_attendee_tracking(emergency, self.location_source)

    def _track_volunteer(self, emergency: Emergency, volunteer: Actor) -> None:
        if self.location_source is not None and emergency.is_active:
            self.tracker.start_volunteer_tracking(emergency, volunteer.user_id, self.location_source)

    # -- volunteer operations -------------------------------------------

    async def accept(self, emergency_id: str, location: Optional[GeoPoint] = None) -> Emergency:
        volunteer = self._actor()
        emergency = await self.state_machine.accept(emergency_id, volunteer, location)
        self.fanout.volunteer_status_changed(emergency, volunteer, VolunteerStatus.RESPONDING)
        self._track_volunteer(emergency, volunteer)
        return emergency

    async def respond(self, emergency_id: str, location: Optional[GeoPoint] = None) -> Emergency:
        """Accept an unverified emergency, or join one another volunteer already accepted"""
        volunteer = self._actor()
        current = await self.get_emergency(emergency_id)
        if current.status is EmergencyStatus.UNVERIFIED:
            return await self.accept(emergency_id, location)

        already_engaged = (volunteer.user_id in current.responses and
                           current.responses[volunteer.user_id].is_engaged)
        emergency = await self.state_machine.join(emergency_id, volunteer, location)
        if not already_engaged:
            self.fanout.volunteer_status_changed(emergency, volunteer, VolunteerStatus.RESPONDING)
        self._track_volunteer(emergency, volunteer)
        return emergency

    join = respond

    async def mark_arrived(self, emergency_id: str) -> Emergency:
        volunteer = self._actor()
        emergency = await self.state_machine.mark_arrived(emergency_id, volunteer)
        self.fanout.volunteer_status_changed(emergency, volunteer, VolunteerStatus.ARRIVED)
        return emergency

    async def verify(self, emergency_id: str, is_real: bool,
                     escalation_reason: Optional[str] = None) -> Emergency:
        volunteer = self._actor()
        emergency = await self.state_machine.verify(emergency_id, volunteer, is_real, escalation_reason)
        self.fanout.volunteer_status_changed(emergency, volunteer, VolunteerStatus.VERIFIED)
        if emergency.status is EmergencyStatus.FAKE:
            await self._teardown(emergency)
        return emergency

    async def update_volunteer_status(self, emergency_id: str, status: VolunteerStatus,
                                      location: Optional[GeoPoint] = None,
                                      eta: Optional[str] = None,
                                      route_points: Optional[List[GeoPoint]] = None) -> Emergency:
        volunteer = self._actor()
        emergency = await self.state_machine.update_volunteer_status(
            emergency_id, volunteer, status, location, eta, route_points)
        self.fanout.volunteer_status_changed(emergency, volunteer, status)
        if status.ends_tracking:
            await self.tracker.stop(emergency_id, volunteer.user_id)
        return emergency

    async def cancel_response(self, emergency_id: str) -> Emergency:
        """Volunteer withdraws from the emergency"""
        return await self.update_volunteer_status(emergency_id, VolunteerStatus.UNAVAILABLE)

    # -- resolution ------------------------------------------------------

    async def attendee_resolve(self, emergency_id: str, notes: Optional[str] = None) -> ResolutionOutcome:
        attendee = self._actor()
        outcome = await self.resolution.attendee_resolve(emergency_id, attendee, notes)
        await self._after_acknowledgement(outcome)
        return outcome

    async def volunteer_resolve(self, emergency_id: str, notes: Optional[str] = None) -> ResolutionOutcome:
        volunteer = self._actor()
        outcome = await self.resolution.volunteer_resolve(emergency_id, volunteer, notes)
        await self.tracker.stop(emergency_id, volunteer.user_id)
        await self._after_acknowledgement(outcome)
        return outcome

    async def _after_acknowledgement(self, outcome: ResolutionOutcome) -> None:
        if outcome.already_resolved:
            return
        if outcome.fully_resolved:
            self.fanout.emergency_resolved(outcome.emergency)
            await self._teardown(outcome.emergency)
        elif outcome.awaiting:
            self.fanout.confirmation_requested(outcome.emergency, outcome.awaiting)

    async def cancel(self, emergency_id: str, reason: Optional[str] = None) -> List[str]:
        """
        Reporter aborts the emergency, bypassing consensus.

        Returns:
            Ids of the volunteers alerted about the cancellation
        """
        attendee = self._actor()
        emergency = await self.state_machine.cancel(emergency_id, attendee, reason)
        recipients = self.fanout.emergency_cancelled(emergency, reason)
        await self._teardown(emergency)
        return recipients

    async def _teardown(self, emergency: Emergency) -> None:
        """Stop every tracking session and clear the reporter's roster flag"""
        await self.tracker.stop_emergency(emergency.id)
        await self.incidents.clear_member_emergency(emergency.group_id, emergency.reporter_id, emergency.id)

    # -- reads and change streams ---------------------------------------

    async def get_emergency(self, emergency_id: str) -> Emergency:
        emergency = await self.incidents.get_emergency(emergency_id)
        if emergency is None:
            raise NotFound(emergency_id)
        return emergency

    async def _watch(self, subscribe) -> Subscription:
        subscription = await subscribe
        self.watches.append(subscription)
        return subscription

    async def watch_emergency(self, emergency_id: str, listener: EmergencyListener) -> Subscription:
        """listener receives the Emergency, or None once it no longer exists"""
        def _deliver(snapshot):
            emergency = Emergency.from_dict(snapshot.data, snapshot.id) if snapshot.exists else None
            return listener(emergency)

        return await self._watch(self.store.subscribe_document(EMERGENCIES, emergency_id, _deliver))

    def _list_listener(self, listener: EmergencyListener):
        def _deliver(snapshots):
            return listener([Emergency.from_dict(s.data, s.id) for s in snapshots])
        return _deliver

    async def watch_group_emergencies(self, group_id: str, listener: EmergencyListener) -> Subscription:
        """Active emergencies of one group, newest first"""
        return await self._watch(self.store.subscribe_query(
            EMERGENCIES, self._list_listener(listener),
            filters={'groupId': group_id, 'status': ACTIVE_STATUS_VALUES},
            order_by='createdAt', descending=True,
        ))

    async def watch_all_emergencies(self, listener: EmergencyListener) -> Subscription:
        """Every active emergency across groups, newest first"""
        return await self._watch(self.store.subscribe_query(
            EMERGENCIES, self._list_listener(listener),
            filters={'status': ACTIVE_STATUS_VALUES},
            order_by='createdAt', descending=True,
        ))

    async def watch_volunteer_emergencies(self, listener: EmergencyListener,
                                          volunteer_id: Optional[str] = None) -> Subscription:
        """Active emergencies the volunteer is still engaged with"""
        volunteer_id = volunteer_id or self._actor().user_id

        def _engaged(data: Dict[str, Any]) -> bool:
            response = (data.get('responses') or {}).get(volunteer_id)
            return response is not None and response.get('status') != VolunteerStatus.UNAVAILABLE.value

        return await self._watch(self.store.subscribe_query(
            EMERGENCIES, self._list_listener(listener),
            filters={'status': ACTIVE_STATUS_VALUES},
            predicate=_engaged,
            order_by='createdAt', descending=True,
        ))

    async def get_emergency_stats(self, group_id: str) -> Dict[str, int]:
        return await self.incidents.get_emergency_stats(group_id)

    # -- maintenance -----------------------------------------------------

    async def update_emergency_location(self, emergency_id: str, location: GeoPoint) -> bool:
        """Attendee's live location; best effort"""
        self._actor()
        emergency = await self.get_emergency(emergency_id)
        if emergency.is_terminal:
            return False
        return await self.incidents.update_emergency_location(emergency, location)

    async def cleanup_reporter(self, reporter_id: Optional[str] = None) -> CleanupReport:
        reporter_id = reporter_id or self._actor().user_id
        report = await self.cleanup.cleanup_reporter(reporter_id)
        for emergency_id in report.resolved:
            await self.tracker.stop_emergency(emergency_id)
        return report

    async def cleanup_all(self) -> List[CleanupReport]:
        reports = await self.cleanup.cleanup_all()
        for report in reports:
            for emergency_id in report.resolved:
                await self.tracker.stop_emergency(emergency_id)
        return reports
