"""
Dual Resolution Consensus

The attendee and the volunteers acknowledge resolution independently. The
emergency becomes ``resolved`` in the same transaction as whichever
acknowledgement first makes both sides true; until then the other side is
asked to confirm.
"""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ...core.database import ArrayAppend
from ...core.timestamps import to_iso
from ...models.emergency import Emergency, EmergencyStatus, VolunteerStatus
from ...models.user import Actor
from .errors import InvalidTransition
from .notification_fanout import log_entry
from .state_machine import EmergencyEvent, EmergencyStateMachine, next_status


# Acknowledgements are accepted once the emergency has been verified; on a
# resolved emergency they only refresh the bookkeeping.
ACKNOWLEDGEABLE = (EmergencyStatus.VERIFIED, EmergencyStatus.ESCALATED, EmergencyStatus.RESOLVED)


@dataclass
class ResolutionOutcome:
    emergency: Emergency
    fully_resolved: bool
    already_resolved: bool
    awaiting: Optional[str]


class DualResolution:
    """Attendee/volunteer acknowledgement operations"""

    def __init__(self, state_machine: EmergencyStateMachine):
        self.state_machine = state_machine
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _check_status(emergency: Emergency, operation: str) -> None:
        if emergency.status not in ACKNOWLEDGEABLE:
            raise InvalidTransition(operation, emergency.status.value, [s.value for s in ACKNOWLEDGEABLE])

    @staticmethod
    def _resolution_fields(emergency: Emergency, resolution, now: datetime,
                           entries: list) -> Dict[str, Any]:
        fields: Dict[str, Any] = {'resolution': resolution.to_dict()}
        if emergency.status is not EmergencyStatus.RESOLVED and resolution.can_be_fully_resolved:
            fields['status'] = next_status(emergency.status, EmergencyEvent.RESOLVE).value
            fields['resolvedAt'] = to_iso(now)
            entries.append(log_entry(Actor(user_id=emergency.reporter_id, display_name=emergency.reporter_name),
                                     EmergencyStatus.RESOLVED.value, "Emergency fully resolved", now))
        if entries:
            fields['notifications'] = ArrayAppend(*(e.to_dict() for e in entries))
        return fields

    async def _acknowledge(self, emergency_id: str, operation: str, record) -> ResolutionOutcome:
        before = {}

        def _mutate(emergency: Emergency, now: datetime) -> Dict[str, Any]:
            self._check_status(emergency, operation)
            before['status'] = emergency.status
            resolution = copy.deepcopy(emergency.resolution)
            extra: Dict[str, Any] = {}
            entries = record(emergency, resolution, now, extra)
            fields = self._resolution_fields(emergency, resolution, now, entries)
            fields.update(extra)
            return fields

        emergency = await self.state_machine.transact(emergency_id, _mutate)
        already = before['status'] is EmergencyStatus.RESOLVED
        fully = not already and emergency.status is EmergencyStatus.RESOLVED
        return ResolutionOutcome(
            emergency=emergency,
            fully_resolved=fully,
            already_resolved=already,
            awaiting=None if emergency.is_terminal else emergency.resolution.awaiting(),
        )

    async def attendee_resolve(self, emergency_id: str, attendee: Actor,
                               notes: Optional[str] = None) -> ResolutionOutcome:
        """Reporter acknowledges the emergency is over"""
        def _record(emergency: Emergency, resolution, now: datetime, extra: Dict[str, Any]) -> list:
            if attendee.user_id != emergency.reporter_id:
                raise InvalidTransition('attendee-resolve', emergency.status.value,
                                        detail="only the reporter can acknowledge as attendee")
            resolution.record_attendee(now, notes)
            if emergency.is_terminal:
                return []
            return [log_entry(attendee, 'attendeeResolved',
                              "Attendee marked the emergency as resolved", now)]

        outcome = await self._acknowledge(emergency_id, 'attendee-resolve', _record)
        self.logger.info(
            f"Attendee resolved emergency {emergency_id} (fully resolved: {outcome.fully_resolved})"
        )
        return outcome

    async def volunteer_resolve(self, emergency_id: str, volunteer: Actor,
                                notes: Optional[str] = None) -> ResolutionOutcome:
        """One volunteer acknowledges; the first such acknowledgement satisfies the volunteer side"""
        def _record(emergency: Emergency, resolution, now: datetime, extra: Dict[str, Any]) -> list:
            response = emergency.responses.get(volunteer.user_id)
            if response is None or not response.is_engaged:
                raise InvalidTransition('volunteer-resolve', emergency.status.value,
                                        detail=f"{volunteer.user_id} is not responding to this emergency")
            resolution.record_volunteer(volunteer.user_id, now, notes)
            extra[f'responses.{volunteer.user_id}.status'] = VolunteerStatus.COMPLETED.value
            extra[f'responses.{volunteer.user_id}.lastUpdated'] = to_iso(now)
            if emergency.is_terminal:
                return []
            return [log_entry(volunteer, VolunteerStatus.COMPLETED.value,
                              f"{volunteer.display_name or 'A volunteer'} marked the emergency as resolved",
                              now, response.current_location)]

        outcome = await self._acknowledge(emergency_id, 'volunteer-resolve', _record)
        self.logger.info(
            f"Volunteer {volunteer.user_id} resolved emergency {emergency_id} "
            f"(fully resolved: {outcome.fully_resolved})"
        )
        return outcome
