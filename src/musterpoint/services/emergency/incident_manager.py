"""
Incident Manager

Creates emergency documents (at most one live emergency per reporter),
reads and queries them, and keeps the group roster's emergency flags in
step as a best-effort secondary write.
"""

import logging
import uuid
from typing import Dict, List, Optional, Tuple

from ...core.database import (
    DELETE_FIELD, DatabaseError, DocumentStore, DocumentTransaction,
    SERVER_TIMESTAMP
)
from ...models.emergency import ACTIVE_STATUSES, Emergency, EmergencyStatus, GeoPoint
from ...models.user import Actor, MemberLocation
from .store_paths import EMERGENCIES, LOCATIONS, USERS


ACTIVE_STATUS_VALUES = [s.value for s in ACTIVE_STATUSES]


class IncidentManager:
    """Emergency document creation and queries"""

    def __init__(self, store: DocumentStore):
        self.store = store
        self.logger = logging.getLogger(__name__)

    async def find_active_for_reporter(self, reporter_id: str) -> Optional[Emergency]:
        """Newest non-terminal emergency raised by reporter_id, if any"""
        snapshots = await self.store.query(
            EMERGENCIES,
            filters={'reporterId': reporter_id, 'status': ACTIVE_STATUS_VALUES},
            order_by='createdAt',
            descending=True,
            limit=1,
        )
        if not snapshots:
            return None
        return Emergency.from_dict(snapshots[0].data, snapshots[0].id)

    async def create_emergency(self, reporter: Actor, group_id: str, location: GeoPoint,
                               message: Optional[str] = None) -> Tuple[Emergency, bool]:
        """
        Create an emergency unless the reporter already has a live one.

        The check and the insert are separate store calls, so two concurrent
        calls from the same reporter can both create (see exclusive_create).

        Args:
            reporter: Reporting participant
            group_id: Reporter's group
            location: Where help is needed
            message: Optional free text

        Returns:
            (emergency, created) where created is False when an existing
            live emergency was returned instead
        """
        existing = await self.find_active_for_reporter(reporter.user_id)
        if existing is not None:
            self.logger.warning(f"User {reporter.user_id} already has active emergency: {existing.id}")
            return existing, False

        emergency_id = str(uuid.uuid4())
        data = Emergency(
            id=emergency_id,
            reporter_id=reporter.user_id,
            reporter_name=reporter.display_name,
            group_id=group_id,
            location=location,
            message=message,
        ).to_dict()
        data['createdAt'] = SERVER_TIMESTAMP
        data['updatedAt'] = SERVER_TIMESTAMP

        await self.store.create(EMERGENCIES, data, doc_id=emergency_id)
        self.logger.info(f"Emergency created for {reporter.user_id}: {emergency_id}")

        await self.mark_member_in_emergency(group_id, reporter, location, emergency_id)

        created = await self.get_emergency(emergency_id)
        return created, True

    async def get_emergency(self, emergency_id: str) -> Optional[Emergency]:
        snapshot = await self.store.get(EMERGENCIES, emergency_id)
        if not snapshot.exists:
            return None
        return Emergency.from_dict(snapshot.data, snapshot.id)

    async def list_for_reporter(self, reporter_id: str) -> List[Emergency]:
        snapshots = await self.store.query(EMERGENCIES, filters={'reporterId': reporter_id})
        return [Emergency.from_dict(s.data, s.id) for s in snapshots]

    async def list_group_emergencies(self, group_id: str, active_only: bool = True) -> List[Emergency]:
        """Group emergencies, newest first"""
        filters = {'groupId': group_id}
        if active_only:
            filters['status'] = ACTIVE_STATUS_VALUES
        snapshots = await self.store.query(EMERGENCIES, filters=filters,
                                           order_by='createdAt', descending=True)
        return [Emergency.from_dict(s.data, s.id) for s in snapshots]

    async def delete_emergency(self, emergency_id: str) -> bool:
        deleted = await self.store.delete(EMERGENCIES, emergency_id)
        if deleted:
            self.logger.info(f"Emergency deleted: {emergency_id}")
        return deleted

    async def get_emergency_stats(self, group_id: str) -> Dict[str, int]:
        """
        Counts for a group: unverified/accepted are 'active', the working
        statuses are 'inProgress'. Fake emergencies only count toward total.
        """
        snapshots = await self.store.query(EMERGENCIES, filters={'groupId': group_id})
        stats = {'active': 0, 'inProgress': 0, 'resolved': 0, 'total': len(snapshots)}
        for snapshot in snapshots:
            status = EmergencyStatus(snapshot.data.get('status'))
            if status in (EmergencyStatus.UNVERIFIED, EmergencyStatus.ACCEPTED):
                stats['active'] += 1
            elif status in (EmergencyStatus.IN_PROGRESS, EmergencyStatus.VERIFIED, EmergencyStatus.ESCALATED):
                stats['inProgress'] += 1
            elif status is EmergencyStatus.RESOLVED:
                stats['resolved'] += 1
        return stats

    async def user_group_id(self, user_id: str) -> Optional[str]:
        snapshot = await self.store.get(USERS, user_id)
        return snapshot.get('groupId')

    # -- roster (secondary, best effort) ----------------------------------

    async def mark_member_in_emergency(self, group_id: str, member: Actor,
                                       location: GeoPoint, emergency_id: str) -> bool:
        try:
            await self.store.set(LOCATIONS, MemberLocation.document_id(group_id, member.user_id), {
                'userId': member.user_id,
                'userName': member.display_name,
                'groupId': group_id,
                'userRole': member.role.value,
                'latitude': location.latitude,
                'longitude': location.longitude,
                'isEmergency': True,
                'emergencyId': emergency_id,
                'lastUpdated': SERVER_TIMESTAMP,
            }, merge=True)
            return True
        except DatabaseError as e:
            self.logger.error(f"Failed to flag roster entry for {member.user_id}: {e}")
            return False

    async def clear_member_emergency(self, group_id: str, user_id: str, emergency_id: str) -> bool:
        """
        Clear the roster flag if it still points at emergency_id.

        Returns:
            True if a flag was cleared
        """
        doc_id = MemberLocation.document_id(group_id, user_id)

        def _clear(txn) -> bool:
            if not txn.exists or txn.data.get('emergencyId') != emergency_id:
                return False
            txn.update({
                'isEmergency': False,
                'emergencyId': DELETE_FIELD,
                'lastUpdated': SERVER_TIMESTAMP,
            })
            return True

        try:
            cleared = await self.store.run_transaction(LOCATIONS, doc_id, _clear)
        except DatabaseError as e:
            self.logger.error(f"Failed to clear roster flag for {user_id}: {e}")
            return False
        if cleared:
            self.logger.debug(f"Cleared roster emergency flag for {user_id} ({emergency_id})")
        return cleared

    async def update_emergency_location(self, emergency: Emergency, location: GeoPoint) -> bool:
        """
        Move the incident location and mirror it to the roster.

        Refused once the emergency is terminal; failures are logged only.
        """
        def _apply(txn: DocumentTransaction) -> bool:
            if not txn.exists:
                return False
            if Emergency.from_dict(txn.data, txn.doc_id).is_terminal:
                return False
            txn.update({
                'location': location.to_dict(),
                'updatedAt': SERVER_TIMESTAMP,
            })
            return True

        try:
            moved = await self.store.run_transaction(EMERGENCIES, emergency.id, _apply)
        except DatabaseError as e:
            self.logger.error(f"Error updating emergency location: {e}")
            return False
        if not moved:
            self.logger.debug(f"Location for emergency {emergency.id} not moved (missing or closed)")
            return False

        try:
            await self.store.update(LOCATIONS, MemberLocation.document_id(emergency.group_id, emergency.reporter_id), {
                'latitude': location.latitude,
                'longitude': location.longitude,
                'lastUpdated': SERVER_TIMESTAMP,
            })
        except DatabaseError as e:
            self.logger.debug(f"Roster location not updated for {emergency.reporter_id}: {e}")
        return True
