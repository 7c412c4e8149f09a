"""
Notification Fan-out

Composes the human-readable entries written to an emergency's notification
log and pushes ephemeral alerts to the affected audience. Pushes are queued
on the background task queue, one job per recipient, so a failing recipient
never blocks the others or the transition that caused it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from ...core.database import DatabaseError, DocumentStore, SERVER_TIMESTAMP
from ...core.logging import get_structured_logger
from ...core.task_queue import BackgroundTaskQueue
from ...models.emergency import (
    AttendeeNotification, Emergency, GeoPoint, VolunteerStatus
)
from ...models.user import Actor, MemberLocation
from .geo import distance_meters, format_distance
from .store_paths import GROUPS, INBOX, LOCATIONS


STATUS_MESSAGES = {
    VolunteerStatus.RESPONDING: "{name} is responding to your emergency",
    VolunteerStatus.EN_ROUTE: "{name} is on the way",
    VolunteerStatus.ARRIVED: "{name} has arrived at your location",
    VolunteerStatus.VERIFIED: "{name} has verified the emergency",
    VolunteerStatus.ASSISTING: "{name} is assisting you",
    VolunteerStatus.COMPLETED: "{name} has completed their response",
    VolunteerStatus.UNAVAILABLE: "{name} is no longer able to respond",
}


def status_message(volunteer_name: str, status: VolunteerStatus) -> str:
    return STATUS_MESSAGES[status].format(name=volunteer_name or "A volunteer")


def log_entry(actor: Actor, status: str, message: str, when: datetime,
              location: Optional[GeoPoint] = None) -> AttendeeNotification:
    """Build a notification-log entry attributed to actor"""
    return AttendeeNotification(
        timestamp=when,
        volunteer_id=actor.user_id,
        volunteer_name=actor.display_name,
        status=status,
        message=message,
        volunteer_location=location,
    )


@dataclass
class Alert:
    """Ephemeral, non-persisted alert for one recipient"""
    recipient_id: str
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)


class PushDelivery(Protocol):
    async def deliver(self, recipient_id: str, title: str, body: str,
                      data: Dict[str, Any]) -> None:
        ...


class LoggingPushDelivery:
    """Delivery that only logs; for processes without a push transport"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    async def deliver(self, recipient_id: str, title: str, body: str,
                      data: Dict[str, Any]) -> None:
        self.logger.info(f"Alert for {recipient_id}: {title} - {body}")


class InboxPushDelivery:
    """Writes alerts into the recipient's in-app inbox"""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def deliver(self, recipient_id: str, title: str, body: str,
                      data: Dict[str, Any]) -> None:
        await self.store.create(INBOX, {
            'recipientId': recipient_id,
            'title': title,
            'body': body,
            'data': data,
            'read': False,
            'createdAt': SERVER_TIMESTAMP,
        })


class NotificationFanout:
    """Best-effort alert distribution for emergency events"""

    def __init__(self, store: DocumentStore, delivery: PushDelivery,
                 tasks: BackgroundTaskQueue, responder_radius_meters: float = 5000.0):
        self.store = store
        self.delivery = delivery
        self.tasks = tasks
        self.responder_radius_meters = responder_radius_meters
        self.logger = logging.getLogger(__name__)
        self.structured = get_structured_logger('notification_fanout')

    def dispatch(self, alerts: Iterable[Alert]) -> int:
        """Queue one delivery job per alert; returns how many were queued"""
        queued = 0
        for alert in alerts:
            if self.tasks.submit(f"push:{alert.recipient_id}", self._job(alert)):
                queued += 1
        return queued

    def _job(self, alert: Alert):
        async def _deliver():
            try:
                await self.delivery.deliver(alert.recipient_id, alert.title, alert.body, alert.data)
            except Exception as e:
                self.structured.error(
                    "alert_delivery_failed",
                    recipient=alert.recipient_id,
                    emergency_id=alert.data.get('emergencyId'),
                    error=str(e),
                )
                raise
        return _deliver

    @staticmethod
    def _payload(emergency: Emergency, event: str) -> Dict[str, Any]:
        return {
            'event': event,
            'emergencyId': emergency.id,
            'groupId': emergency.group_id,
            'status': emergency.status.value,
            'latitude': emergency.location.latitude,
            'longitude': emergency.location.longitude,
        }

    # -- creation --------------------------------------------------------

    async def find_nearby_responders(self, location: GeoPoint,
                                     exclude: Iterable[str] = ()) -> Dict[str, float]:
        """
        Volunteers and organizers whose last known location is within range.

        Returns:
            Mapping of user id to distance in meters
        """
        excluded = set(exclude)
        nearby: Dict[str, float] = {}
        for snapshot in await self.store.query(LOCATIONS):
            member = MemberLocation.from_dict(snapshot.data)
            if not member.user_id or member.user_id in excluded:
                continue
            if not member.role.is_responder or member.location is None:
                continue
            distance = distance_meters(location, member.location)
            if distance <= self.responder_radius_meters:
                nearby[member.user_id] = min(distance, nearby.get(member.user_id, distance))
        return nearby

    async def emergency_created(self, emergency: Emergency) -> List[str]:
        """Alert group members and nearby responders; returns the recipient ids"""
        try:
            group = await self.store.get(GROUPS, emergency.group_id)
            members = [m for m in (group.get('memberIds') or []) if m != emergency.reporter_id]
            nearby = await self.find_nearby_responders(emergency.location, exclude=[emergency.reporter_id])
        except DatabaseError as e:
            self.logger.error(f"Could not resolve audience for emergency {emergency.id}: {e}")
            return []

        name = emergency.reporter_name or "A group member"
        payload = self._payload(emergency, 'created')
        alerts = [Alert(m, "🚨 Emergency Alert", f"{name} needs immediate assistance!", payload)
                  for m in members]
        for user_id, distance in nearby.items():
            if user_id in members:
                continue
            alerts.append(Alert(
                user_id,
                f"🚨 EMERGENCY - {format_distance(distance)}",
                f"{name} needs immediate assistance!",
                dict(payload, distanceMeters=round(distance, 1)),
            ))

        self.dispatch(alerts)
        recipients = [a.recipient_id for a in alerts]
        self.logger.info(f"Emergency {emergency.id} alert fanned out to {len(recipients)} recipients")
        return recipients

    # -- lifecycle -------------------------------------------------------

    def volunteer_status_changed(self, emergency: Emergency, volunteer: Actor,
                                 status: VolunteerStatus) -> None:
        """Alert the attendee and confirm to the acting volunteer"""
        payload = dict(self._payload(emergency, 'volunteer_status'),
                       volunteerId=volunteer.user_id, volunteerStatus=status.value)
        self.dispatch([
            Alert(emergency.reporter_id, f"Volunteer {status.display_name}",
                  status_message(volunteer.display_name, status), payload),
            Alert(volunteer.user_id, "Status updated",
                  f"Your status is now {status.display_name}", payload),
        ])

    def emergency_resolved(self, emergency: Emergency) -> None:
        """Fully resolved: everyone involved hears about it"""
        payload = self._payload(emergency, 'resolved')
        recipients = [emergency.reporter_id] + [r.volunteer_id for r in emergency.engaged_responses]
        self.dispatch(Alert(r, "✅ Emergency resolved",
                            "The emergency has been fully resolved. Thank you!", payload)
                      for r in dict.fromkeys(recipients))

    def confirmation_requested(self, emergency: Emergency, awaiting: str) -> None:
        """Ask the party that has not acknowledged yet to confirm resolution"""
        payload = self._payload(emergency, 'confirm_resolution')
        if awaiting == 'attendee':
            alerts = [Alert(emergency.reporter_id, "Please confirm",
                            "A volunteer marked your emergency as resolved. Please confirm.",
                            payload)]
        else:
            alerts = [Alert(r.volunteer_id, "Please confirm",
                            "The attendee marked the emergency as resolved. Please confirm.",
                            payload)
                      for r in emergency.engaged_responses
                      if r.volunteer_id not in emergency.resolution.volunteer_resolutions]
        self.dispatch(alerts)

    def emergency_cancelled(self, emergency: Emergency, reason: Optional[str]) -> List[str]:
        """Alert every volunteer who did not withdraw"""
        payload = dict(self._payload(emergency, 'cancelled'), reason=reason)
        body = "The emergency was cancelled by the attendee."
        if reason:
            body = f"{body} Reason: {reason}"
        recipients = [r.volunteer_id for r in emergency.engaged_responses]
        self.dispatch(Alert(r, "Emergency cancelled", body, payload) for r in recipients)
        return recipients
