"""
Data models for MusterPoint

Contains the Emergency aggregate and participant models.
"""

from .emergency import (
    Emergency, EmergencyStatus, VolunteerStatus, VolunteerResponse,
    Resolution, VolunteerResolution, AttendeeNotification, GeoPoint,
    ACTIVE_STATUSES, TERMINAL_STATUSES
)
from .user import Actor, UserRole, MemberLocation

__all__ = [
    'Emergency', 'EmergencyStatus', 'VolunteerStatus', 'VolunteerResponse',
    'Resolution', 'VolunteerResolution', 'AttendeeNotification', 'GeoPoint',
    'ACTIVE_STATUSES', 'TERMINAL_STATUSES',
    'Actor', 'UserRole', 'MemberLocation'
]
