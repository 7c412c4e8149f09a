"""
Participant models for MusterPoint
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..core.timestamps import parse_timestamp, to_iso
from .emergency import GeoPoint


class UserRole(Enum):
    """Participant role within a group"""
    ATTENDEE = "Attendee"
    VOLUNTEER = "Volunteer"
    ORGANIZER = "Organizer"

    @property
    def is_responder(self) -> bool:
        return self in (UserRole.VOLUNTEER, UserRole.ORGANIZER)


@dataclass(frozen=True)
class Actor:
    """The authenticated participant performing an operation"""
    user_id: str
    display_name: str = ""
    role: UserRole = UserRole.ATTENDEE


@dataclass
class MemberLocation:
    """Group roster entry: a member's last known location and emergency flag"""
    user_id: str
    group_id: str
    user_name: str = ""
    role: UserRole = UserRole.ATTENDEE
    location: Optional[GeoPoint] = None
    is_emergency: bool = False
    emergency_id: Optional[str] = None
    last_updated: Optional[datetime] = None

    @staticmethod
    def document_id(group_id: str, user_id: str) -> str:
        return f"{group_id}:{user_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'groupId': self.group_id,
            'userName': self.user_name,
            'userRole': self.role.value,
            'latitude': self.location.latitude if self.location else None,
            'longitude': self.location.longitude if self.location else None,
            'isEmergency': self.is_emergency,
            'emergencyId': self.emergency_id,
            'lastUpdated': to_iso(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MemberLocation':
        location = None
        if data.get('latitude') is not None and data.get('longitude') is not None:
            location = GeoPoint(float(data['latitude']), float(data['longitude']))
        try:
            role = UserRole(data.get('userRole', UserRole.ATTENDEE.value))
        except ValueError:
            role = UserRole.ATTENDEE
        return cls(
            user_id=data.get('userId', ''),
            group_id=data.get('groupId', ''),
            user_name=data.get('userName', ''),
            role=role,
            location=location,
            is_emergency=bool(data.get('isEmergency', False)),
            emergency_id=data.get('emergencyId'),
            last_updated=parse_timestamp(data.get('lastUpdated')),
        )
