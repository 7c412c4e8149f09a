"""
Duplicate emergency cleanup

Keeps at most one live emergency per reporter by force-resolving all but
the newest, and clears roster "in emergency" flags left behind by stale
terminal emergencies.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from ...core.database import DatabaseError
from ...models.emergency import Emergency
from .incident_manager import IncidentManager
from .state_machine import EmergencyStateMachine
from .store_paths import EMERGENCIES


DUPLICATE_REASON = "Duplicate emergency cleanup"


@dataclass
class CleanupReport:
    reporter_id: str
    kept: Optional[str] = None
    resolved: List[str] = field(default_factory=list)
    flags_cleared: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            'reporterId': self.reporter_id,
            'kept': self.kept,
            'resolved': list(self.resolved),
            'flagsCleared': list(self.flags_cleared),
        }


class DuplicateCleanup:
    """Opportunistic per-reporter duplicate and stale-flag sweep"""

    def __init__(self, incidents: IncidentManager, state_machine: EmergencyStateMachine,
                 stale_after_hours: float = 24.0):
        self.incidents = incidents
        self.state_machine = state_machine
        self.stale_after = timedelta(hours=stale_after_hours)
        self.logger = logging.getLogger(__name__)

    def _is_stale(self, emergency: Emergency) -> bool:
        return (emergency.is_terminal and
                self.incidents.store.clock() - emergency.created_at > self.stale_after)

    async def cleanup_reporter(self, reporter_id: str) -> CleanupReport:
        """
        Sweep one reporter's emergencies.

        Returns:
            What was kept, resolved and un-flagged
        """
        report = CleanupReport(reporter_id=reporter_id)
        emergencies = await self.incidents.list_for_reporter(reporter_id)
        if not emergencies:
            self.logger.debug(f"No emergencies found for user {reporter_id} - cleanup not needed")
            return report

        active = sorted((e for e in emergencies if e.is_active),
                        key=lambda e: e.created_at, reverse=True)
        stale = [e for e in emergencies if self._is_stale(e)]
        self.logger.info(
            f"Emergency cleanup for {reporter_id}: {len(active)} active, {len(stale)} stale"
        )

        if active:
            report.kept = active[0].id
        for duplicate in active[1:]:
            resolved = await self.state_machine.force_resolve(duplicate.id, DUPLICATE_REASON)
            if resolved is None:
                continue
            report.resolved.append(duplicate.id)
            self.logger.warning(f"Auto-resolved duplicate emergency: {duplicate.id}")
            if await self.incidents.clear_member_emergency(duplicate.group_id, reporter_id, duplicate.id):
                report.flags_cleared.append(duplicate.id)

        for emergency in stale:
            if await self.incidents.clear_member_emergency(emergency.group_id, reporter_id, emergency.id):
                report.flags_cleared.append(emergency.id)
                self.logger.info(f"Cleaned up stale emergency flag: {emergency.id}")

        return report

    async def cleanup_all(self) -> List[CleanupReport]:
        """Sweep every reporter that has at least one emergency"""
        try:
            snapshots = await self.incidents.store.query(EMERGENCIES)
        except DatabaseError as e:
            self.logger.error(f"Emergency cleanup sweep failed: {e}")
            return []

        reporters = sorted({s.data.get('reporterId') for s in snapshots if s.data.get('reporterId')})
        return [await self.cleanup_reporter(reporter_id) for reporter_id in reporters]
