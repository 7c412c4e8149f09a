"""
Emergency Coordination Service Module

Provides the emergency coordination core:
- Emergency lifecycle state machine and volunteer responses
- Dual-party resolution consensus
- Duplicate prevention and cleanup
- Notification fan-out and location tracking
"""

from .emergency_service import EmergencyCoordinator
from .errors import EmergencyError, InvalidTransition, NotAuthenticated, NotFound
from .incident_manager import IncidentManager
from .location_tracker import LocationSource, LocationThrottle, LocationTracker
from .notification_fanout import InboxPushDelivery, LoggingPushDelivery, NotificationFanout, PushDelivery
from .resolution import DualResolution, ResolutionOutcome
from .state_machine import EmergencyEvent, EmergencyStateMachine

__all__ = [
    'EmergencyCoordinator',
    'EmergencyError',
    'InvalidTransition',
    'NotAuthenticated',
    'NotFound',
    'IncidentManager',
    'LocationSource',
    'LocationThrottle',
    'LocationTracker',
    'InboxPushDelivery',
    'LoggingPushDelivery',
    'NotificationFanout',
    'PushDelivery',
    'DualResolution',
    'ResolutionOutcome',
    'EmergencyEvent',
    'EmergencyStateMachine',
]
