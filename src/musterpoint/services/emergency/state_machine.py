"""
Emergency State Machine

Owns the Emergency lifecycle. Every operation is one compare-and-set
transaction on the emergency document: validate the current status against
the transition table, then write the new status, its timestamp field and
the acting volunteer's response record together.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ...core.database import (
    ArrayAppend, DELETE_FIELD, DocumentStore, DocumentTransaction, SERVER_TIMESTAMP
)
from ...core.logging import get_structured_logger
from ...core.timestamps import to_iso
from ...models.emergency import (
    AttendeeNotification, Emergency, EmergencyStatus, GeoPoint,
    VolunteerResponse, VolunteerStatus
)
from ...models.user import Actor
from .errors import InvalidTransition, NotFound
from .geo import eta_between
from .notification_fanout import log_entry, status_message
from .store_paths import EMERGENCIES


class EmergencyEvent(Enum):
    """Events that may move an emergency's status"""
    ACCEPT = "accept"
    ARRIVE = "arrive"
    VERIFY_REAL = "verify_real"
    VERIFY_ESCALATE = "verify_escalate"
    VERIFY_FAKE = "verify_fake"
    RESOLVE = "resolve"
    CANCEL = "cancel"


S = EmergencyStatus
E = EmergencyEvent

TRANSITIONS: Dict[EmergencyStatus, Dict[EmergencyEvent, EmergencyStatus]] = {
    S.UNVERIFIED: {E.ACCEPT: S.ACCEPTED, E.CANCEL: S.RESOLVED},
    S.ACCEPTED: {E.ARRIVE: S.IN_PROGRESS, E.CANCEL: S.RESOLVED},
    S.IN_PROGRESS: {
        E.ARRIVE: S.IN_PROGRESS,
        E.VERIFY_REAL: S.VERIFIED,
        E.VERIFY_ESCALATE: S.ESCALATED,
        E.VERIFY_FAKE: S.FAKE,
        E.CANCEL: S.RESOLVED,
    },
    # Re-verification overwrites the verdict fields but never moves backward
    S.VERIFIED: {
        E.ARRIVE: S.VERIFIED,
        E.VERIFY_REAL: S.VERIFIED,
        E.VERIFY_ESCALATE: S.ESCALATED,
        E.RESOLVE: S.RESOLVED,
        E.CANCEL: S.RESOLVED,
    },
    S.ESCALATED: {
        E.ARRIVE: S.ESCALATED,
        E.VERIFY_REAL: S.ESCALATED,
        E.VERIFY_ESCALATE: S.ESCALATED,
        E.RESOLVE: S.RESOLVED,
        E.CANCEL: S.RESOLVED,
    },
    S.RESOLVED: {},
    S.FAKE: {},
}

# Position along the lifecycle; every edge above is non-decreasing in rank
STATUS_RANK = {
    S.UNVERIFIED: 0,
    S.ACCEPTED: 1,
    S.IN_PROGRESS: 2,
    S.VERIFIED: 3,
    S.ESCALATED: 4,
    S.RESOLVED: 5,
    S.FAKE: 5,
}

# Statuses in which further volunteers may join an accepted emergency
JOINABLE = (S.ACCEPTED, S.IN_PROGRESS, S.VERIFIED, S.ESCALATED)

VOLUNTEER_UPDATE_STATUSES = (
    VolunteerStatus.EN_ROUTE,
    VolunteerStatus.ASSISTING,
    VolunteerStatus.COMPLETED,
    VolunteerStatus.UNAVAILABLE,
)


def allowed_from(event: EmergencyEvent) -> List[EmergencyStatus]:
    return [status for status, edges in TRANSITIONS.items() if event in edges]


def next_status(current: EmergencyStatus, event: EmergencyEvent) -> EmergencyStatus:
    """
    Look up the status an event leads to.

    Raises:
        InvalidTransition: if the event is not legal from current
    """
    edges = TRANSITIONS[current]
    if event not in edges:
        raise InvalidTransition(event.value, current.value, [s.value for s in allowed_from(event)])
    return edges[event]


def verify_event(is_real: bool, escalation_reason: Optional[str]) -> EmergencyEvent:
    if not is_real:
        return EmergencyEvent.VERIFY_FAKE
    if escalation_reason:
        return EmergencyEvent.VERIFY_ESCALATE
    return EmergencyEvent.VERIFY_REAL


def _append(entry: AttendeeNotification) -> ArrayAppend:
    return ArrayAppend(entry.to_dict())


Mutation = Callable[[Emergency, datetime], Dict[str, Any]]


class EmergencyStateMachine:
    """Lifecycle transitions for emergency documents"""

    def __init__(self, store: DocumentStore, walking_speed_mps: float = 1.4):
        self.store = store
        self.walking_speed_mps = walking_speed_mps
        self.logger = logging.getLogger(__name__)
        self.structured = get_structured_logger('state_machine')

    async def transact(self, emergency_id: str, mutate: Mutation) -> Emergency:
        """
        Apply a mutation inside one CAS transaction.

        ``mutate`` receives the current Emergency and the transaction time and
        returns the dotted-path field updates to stage. It raises to abort;
        returning an empty dict commits nothing.

        Returns:
            The Emergency as committed
        """
        previous: List[EmergencyStatus] = []

        def _apply(txn: DocumentTransaction) -> Emergency:
            if not txn.exists:
                raise NotFound(emergency_id)
            emergency = Emergency.from_dict(txn.data, txn.doc_id)
            previous[:] = [emergency.status]
            fields = mutate(emergency, txn.now)
            if fields:
                fields['updatedAt'] = SERVER_TIMESTAMP
                txn.update(fields)
            return Emergency.from_dict(txn.data, txn.doc_id)

        committed = await self.store.run_transaction(EMERGENCIES, emergency_id, _apply)
        if previous and previous[0] is not committed.status:
            self.structured.info(
                "emergency_transition",
                emergency_id=emergency_id,
                from_status=previous[0].value,
                to_status=committed.status.value,
            )
        return committed

    def _response_fields(self, emergency: Emergency, volunteer: Actor, now: datetime,
                         location: Optional[GeoPoint]) -> Dict[str, Any]:
        response = VolunteerResponse(
            volunteer_id=volunteer.user_id,
            volunteer_name=volunteer.display_name,
            status=VolunteerStatus.RESPONDING,
            responded_at=now,
            last_updated=now,
            current_location=location,
            estimated_arrival_time=(
                eta_between(location, emergency.location, self.walking_speed_mps) if location else None
            ),
        )
        return {f'responses.{volunteer.user_id}': response.to_dict()}

    @staticmethod
    def _require_responder(emergency: Emergency, volunteer: Actor, operation: str) -> None:
        if not volunteer.role.is_responder:
            raise InvalidTransition(operation, emergency.status.value,
                                    detail=f"role {volunteer.role.value} cannot respond")
        if volunteer.user_id == emergency.reporter_id:
            raise InvalidTransition(operation, emergency.status.value,
                                    detail="the reporter cannot respond to their own emergency")

    @staticmethod
    def _require_response(emergency: Emergency, volunteer: Actor, operation: str) -> VolunteerResponse:
        response = emergency.responses.get(volunteer.user_id)
        if response is None or not response.is_engaged:
            raise InvalidTransition(operation, emergency.status.value,
                                    detail=f"{volunteer.user_id} is not responding to this emergency")
        return response

    async def accept(self, emergency_id: str, volunteer: Actor,
                     location: Optional[GeoPoint] = None) -> Emergency:
        """First volunteer takes the emergency: unverified -> accepted"""
        def _mutate(emergency: Emergency, now: datetime) -> Dict[str, Any]:
            self._require_responder(emergency, volunteer, 'accept')
            new_status = next_status(emergency.status, EmergencyEvent.ACCEPT)
            fields = self._response_fields(emergency, volunteer, now, location)
            fields.update({
                'status': new_status.value,
                'acceptedAt': to_iso(now),
                'notifications': _append(log_entry(
                    volunteer, VolunteerStatus.RESPONDING.value,
                    status_message(volunteer.display_name, VolunteerStatus.RESPONDING),
                    now, location)),
            })
            return fields

        emergency = await self.transact(emergency_id, _mutate)
        self.logger.info(f"Emergency {emergency_id} accepted by {volunteer.user_id}")
        return emergency

    async def join(self, emergency_id: str, volunteer: Actor,
                   location: Optional[GeoPoint] = None) -> Emergency:
        """A further volunteer engages with an already accepted emergency"""
        def _mutate(emergency: Emergency, now: datetime) -> Dict[str, Any]:
            self._require_responder(emergency, volunteer, 'join')
            if emergency.status not in JOINABLE:
                raise InvalidTransition('join', emergency.status.value, [s.value for s in JOINABLE])
            existing = emergency.responses.get(volunteer.user_id)
            if existing is not None and existing.is_engaged:
                return {}
            fields = self._response_fields(emergency, volunteer, now, location)
            fields['notifications'] = _append(log_entry(
                volunteer, VolunteerStatus.RESPONDING.value,
                status_message(volunteer.display_name, VolunteerStatus.RESPONDING),
                now, location))
            return fields

        emergency = await self.transact(emergency_id, _mutate)
        self.logger.info(f"Volunteer {volunteer.user_id} joined emergency {emergency_id}")
        return emergency

    async def mark_arrived(self, emergency_id: str, volunteer: Actor) -> Emergency:
        """Volunteer reached the scene: accepted -> inProgress"""
        def _mutate(emergency: Emergency, now: datetime) -> Dict[str, Any]:
            response = self._require_response(emergency, volunteer, 'arrive')
            new_status = next_status(emergency.status, EmergencyEvent.ARRIVE)
            prefix = f'responses.{volunteer.user_id}'
            fields: Dict[str, Any] = {
                f'{prefix}.status': VolunteerStatus.ARRIVED.value,
                f'{prefix}.lastUpdated': to_iso(now),
                f'{prefix}.estimatedArrivalTime': DELETE_FIELD,
                'notifications': _append(log_entry(
                    volunteer, VolunteerStatus.ARRIVED.value,
                    status_message(volunteer.display_name, VolunteerStatus.ARRIVED),
                    now, response.current_location)),
            }
            if new_status is not emergency.status:
                fields['status'] = new_status.value
                fields['arrivedAt'] = to_iso(now)
            return fields

        emergency = await self.transact(emergency_id, _mutate)
        self.logger.info(f"Volunteer {volunteer.user_id} arrived at emergency {emergency_id}")
        return emergency

    async def verify(self, emergency_id: str, volunteer: Actor, is_real: bool,
                     escalation_reason: Optional[str] = None) -> Emergency:
        """
        Record a volunteer's verdict.

        Real -> verified (escalated when a reason is given), not real -> fake.
        A later verdict overwrites the earlier one; the status itself never
        moves backward, and fake is only reachable from inProgress.
        """
        event = verify_event(is_real, escalation_reason)

        def _mutate(emergency: Emergency, now: datetime) -> Dict[str, Any]:
            response = self._require_response(emergency, volunteer, 'verify')
            new_status = next_status(emergency.status, event)
            if not is_real:
                message = f"{volunteer.display_name or 'A volunteer'} reported this emergency as not genuine"
            elif escalation_reason:
                message = f"{volunteer.display_name or 'A volunteer'} escalated the emergency: {escalation_reason}"
            else:
                message = status_message(volunteer.display_name, VolunteerStatus.VERIFIED)
            prefix = f'responses.{volunteer.user_id}'
            fields = {
                'status': new_status.value,
                'verifiedAt': to_iso(now),
                'verifiedBy': volunteer.user_id,
                'isVerified': is_real,
                f'{prefix}.status': VolunteerStatus.VERIFIED.value,
                f'{prefix}.lastUpdated': to_iso(now),
                'notifications': _append(log_entry(
                    volunteer, new_status.value, message, now, response.current_location)),
            }
            if is_real and escalation_reason:
                fields['escalationReason'] = escalation_reason
            elif new_status is not EmergencyStatus.ESCALATED:
                fields['escalationReason'] = None
            return fields

        emergency = await self.transact(emergency_id, _mutate)
        self.logger.info(
            f"Emergency {emergency_id} verified by {volunteer.user_id}: {emergency.status.value}"
        )
        return emergency

    async def update_volunteer_status(self, emergency_id: str, volunteer: Actor,
                                      status: VolunteerStatus,
                                      location: Optional[GeoPoint] = None,
                                      eta: Optional[str] = None,
                                      route_points: Optional[List[GeoPoint]] = None) -> Emergency:
        """Sub-status update for one volunteer; never changes the emergency status"""
        if status not in VOLUNTEER_UPDATE_STATUSES:
            raise InvalidTransition(
                f"set volunteer status {status.value}",
                detail=f"expected one of {', '.join(s.value for s in VOLUNTEER_UPDATE_STATUSES)}"
            )

        def _mutate(emergency: Emergency, now: datetime) -> Dict[str, Any]:
            if emergency.is_terminal:
                raise InvalidTransition(f"set volunteer status {status.value}", emergency.status.value)
            if volunteer.user_id not in emergency.responses:
                raise InvalidTransition(
                    f"set volunteer status {status.value}", emergency.status.value,
                    detail=f"{volunteer.user_id} has not responded to this emergency")
            prefix = f'responses.{volunteer.user_id}'
            fields: Dict[str, Any] = {
                f'{prefix}.status': status.value,
                f'{prefix}.lastUpdated': to_iso(now),
            }
            if location is not None:
                fields[f'{prefix}.currentLocation'] = location.to_dict()
            if eta is not None:
                fields[f'{prefix}.estimatedArrivalTime'] = eta
            elif location is not None and not status.ends_tracking:
                fields[f'{prefix}.estimatedArrivalTime'] = eta_between(
                    location, emergency.location, self.walking_speed_mps)
            if route_points is not None:
                fields[f'{prefix}.routePoints'] = [p.to_dict() for p in route_points]
            fields['notifications'] = _append(log_entry(
                volunteer, status.value, status_message(volunteer.display_name, status), now, location))
            return fields

        emergency = await self.transact(emergency_id, _mutate)
        self.logger.info(f"Volunteer {volunteer.user_id} on emergency {emergency_id} is now {status.value}")
        return emergency

    async def cancel(self, emergency_id: str, attendee: Actor,
                     reason: Optional[str] = None) -> Emergency:
        """Reporter aborts the emergency from any non-terminal status, bypassing consensus"""
        def _mutate(emergency: Emergency, now: datetime) -> Dict[str, Any]:
            if attendee.user_id != emergency.reporter_id:
                raise InvalidTransition('cancel', emergency.status.value,
                                        detail="only the reporter can cancel an emergency")
            new_status = next_status(emergency.status, EmergencyEvent.CANCEL)
            message = "Emergency cancelled by attendee"
            if reason:
                message = f"{message}: {reason}"
            return {
                'status': new_status.value,
                'resolvedAt': to_iso(now),
                'cancellationReason': reason,
                'resolution.attendee': True,
                'resolution.attendeeResolvedAt': to_iso(now),
                'resolution.reason': reason or "Cancelled by attendee",
                'notifications': _append(log_entry(attendee, 'cancelled', message, now)),
            }

        emergency = await self.transact(emergency_id, _mutate)
        self.logger.info(f"Emergency {emergency_id} cancelled by reporter: {reason}")
        return emergency

    async def force_resolve(self, emergency_id: str, reason: str) -> Optional[Emergency]:
        """
        Resolve an active emergency regardless of consensus (maintenance path).

        Returns:
            The resolved Emergency, or None if it was already terminal
        """
        changed = []

        def _mutate(emergency: Emergency, now: datetime) -> Dict[str, Any]:
            if emergency.is_terminal:
                return {}
            changed.append(emergency.status)
            return {
                'status': EmergencyStatus.RESOLVED.value,
                'resolvedAt': to_iso(now),
                'resolution.attendee': True,
                'resolution.attendeeResolvedAt': to_iso(now),
                'resolution.reason': reason,
            }

        emergency = await self.transact(emergency_id, _mutate)
        if not changed:
            return None
        self.logger.info(f"Emergency {emergency_id} force-resolved: {reason}")
        return emergency
