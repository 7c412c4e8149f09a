"""
Emergency data models for MusterPoint

Defines the Emergency aggregate, its embedded volunteer responses,
resolution record and notification log entries. ``to_dict`` produces the
persisted (camelCase) document shape and ``from_dict`` reads it back.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.timestamps import parse_timestamp, to_iso, utcnow


class EmergencyStatus(Enum):
    """Emergency lifecycle status"""
    UNVERIFIED = "unverified"
    ACCEPTED = "accepted"
    IN_PROGRESS = "inProgress"
    VERIFIED = "verified"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    FAKE = "fake"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self not in TERMINAL_STATUSES

    @property
    def visible_to_volunteers(self) -> bool:
        return self is not EmergencyStatus.FAKE


TERMINAL_STATUSES = frozenset({EmergencyStatus.RESOLVED, EmergencyStatus.FAKE})
ACTIVE_STATUSES = tuple(s for s in EmergencyStatus if s not in TERMINAL_STATUSES)


class VolunteerStatus(Enum):
    """A single volunteer's engagement status"""
    RESPONDING = "responding"
    EN_ROUTE = "enRoute"
    ARRIVED = "arrived"
    VERIFIED = "verified"
    ASSISTING = "assisting"
    COMPLETED = "completed"
    UNAVAILABLE = "unavailable"

    @property
    def display_name(self) -> str:
        return {
            VolunteerStatus.RESPONDING: "Responding",
            VolunteerStatus.EN_ROUTE: "En Route",
            VolunteerStatus.ARRIVED: "Arrived",
            VolunteerStatus.VERIFIED: "Verified",
            VolunteerStatus.ASSISTING: "Assisting",
            VolunteerStatus.COMPLETED: "Completed",
            VolunteerStatus.UNAVAILABLE: "Unavailable",
        }[self]

    @property
    def ends_tracking(self) -> bool:
        return self in (VolunteerStatus.COMPLETED, VolunteerStatus.UNAVAILABLE)


@dataclass(frozen=True)
class GeoPoint:
    """Latitude/longitude pair in degrees"""
    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {'latitude': self.latitude, 'longitude': self.longitude}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['GeoPoint']:
        if not data:
            return None
        return cls(latitude=float(data['latitude']), longitude=float(data['longitude']))


@dataclass
class VolunteerResponse:
    """One volunteer's engagement with an emergency"""
    volunteer_id: str
    volunteer_name: str = ""
    status: VolunteerStatus = VolunteerStatus.RESPONDING
    responded_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    current_location: Optional[GeoPoint] = None
    route_points: Optional[List[GeoPoint]] = None
    estimated_arrival_time: Optional[str] = None

    @property
    def is_engaged(self) -> bool:
        return self.status is not VolunteerStatus.UNAVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'volunteerId': self.volunteer_id,
            'volunteerName': self.volunteer_name,
            'status': self.status.value,
            'respondedAt': to_iso(self.responded_at),
            'lastUpdated': to_iso(self.last_updated),
            'currentLocation': self.current_location.to_dict() if self.current_location else None,
            'routePoints': [p.to_dict() for p in self.route_points] if self.route_points is not None else None,
            'estimatedArrivalTime': self.estimated_arrival_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], volunteer_id: Optional[str] = None) -> 'VolunteerResponse':
        route = data.get('routePoints')
        return cls(
            volunteer_id=data.get('volunteerId') or volunteer_id or '',
            volunteer_name=data.get('volunteerName', ''),
            status=VolunteerStatus(data.get('status', VolunteerStatus.RESPONDING.value)),
            responded_at=parse_timestamp(data.get('respondedAt')) or utcnow(),
            last_updated=parse_timestamp(data.get('lastUpdated')) or utcnow(),
            current_location=GeoPoint.from_dict(data.get('currentLocation')),
            route_points=[GeoPoint.from_dict(p) for p in route] if route is not None else None,
            estimated_arrival_time=data.get('estimatedArrivalTime'),
        )


@dataclass
class VolunteerResolution:
    resolved_at: datetime
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'resolvedAt': to_iso(self.resolved_at), 'notes': self.notes}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VolunteerResolution':
        return cls(resolved_at=parse_timestamp(data.get('resolvedAt')) or utcnow(),
                   notes=data.get('notes'))


@dataclass
class Resolution:
    """
    Two-party resolution record.

    The attendee acknowledges once; volunteers acknowledge independently,
    keyed by id. One volunteer acknowledgement is enough on that side.
    """
    attendee: bool = False
    attendee_resolved_at: Optional[datetime] = None
    attendee_resolution_notes: Optional[str] = None
    volunteer_resolutions: Dict[str, VolunteerResolution] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def has_volunteer_completed(self) -> bool:
        return bool(self.volunteer_resolutions)

    @property
    def can_be_fully_resolved(self) -> bool:
        return self.attendee and self.has_volunteer_completed

    def record_attendee(self, when: datetime, notes: Optional[str] = None) -> None:
        self.attendee = True
        self.attendee_resolved_at = when
        if notes is not None:
            self.attendee_resolution_notes = notes

    def record_volunteer(self, volunteer_id: str, when: datetime, notes: Optional[str] = None) -> None:
        self.volunteer_resolutions[volunteer_id] = VolunteerResolution(resolved_at=when, notes=notes)

    def awaiting(self) -> Optional[str]:
        """Which party still has to acknowledge: 'attendee', 'volunteer' or None"""
        if self.can_be_fully_resolved:
            return None
        if self.attendee:
            return 'volunteer'
        if self.has_volunteer_completed:
            return 'attendee'
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attendee': self.attendee,
            'attendeeResolvedAt': to_iso(self.attendee_resolved_at),
            'attendeeResolutionNotes': self.attendee_resolution_notes,
            'volunteerResolutions': {k: v.to_dict() for k, v in self.volunteer_resolutions.items()},
            'hasVolunteerCompleted': self.has_volunteer_completed,
            'reason': self.reason,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Resolution':
        data = data or {}
        return cls(
            attendee=bool(data.get('attendee', False)),
            attendee_resolved_at=parse_timestamp(data.get('attendeeResolvedAt')),
            attendee_resolution_notes=data.get('attendeeResolutionNotes'),
            volunteer_resolutions={
                k: VolunteerResolution.from_dict(v)
                for k, v in (data.get('volunteerResolutions') or {}).items()
            },
            reason=data.get('reason'),
        )


@dataclass(frozen=True)
class AttendeeNotification:
    """Immutable entry in an emergency's notification log"""
    timestamp: datetime
    volunteer_id: str
    volunteer_name: str
    status: str
    message: str
    volunteer_location: Optional[GeoPoint] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': to_iso(self.timestamp),
            'volunteerId': self.volunteer_id,
            'volunteerName': self.volunteer_name,
            'status': self.status,
            'message': self.message,
            'volunteerLocation': self.volunteer_location.to_dict() if self.volunteer_location else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AttendeeNotification':
        return cls(
            timestamp=parse_timestamp(data.get('timestamp')) or utcnow(),
            volunteer_id=data.get('volunteerId', ''),
            volunteer_name=data.get('volunteerName', ''),
            status=data.get('status', ''),
            message=data.get('message', ''),
            volunteer_location=GeoPoint.from_dict(data.get('volunteerLocation')),
        )


@dataclass
class Emergency:
    """Aggregate root for one incident"""
    id: str
    reporter_id: str
    group_id: str
    location: GeoPoint
    reporter_name: str = ""
    message: Optional[str] = None
    status: EmergencyStatus = EmergencyStatus.UNVERIFIED
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    responses: Dict[str, VolunteerResponse] = field(default_factory=dict)
    resolution: Resolution = field(default_factory=Resolution)
    notifications: List[AttendeeNotification] = field(default_factory=list)
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    is_verified: Optional[bool] = None
    escalation_reason: Optional[str] = None
    resolved_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def can_be_fully_resolved(self) -> bool:
        return self.resolution.can_be_fully_resolved

    @property
    def engaged_responses(self) -> List[VolunteerResponse]:
        """Responses of volunteers who have not withdrawn"""
        return [r for r in self.responses.values() if r.is_engaged]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'emergencyId': self.id,
            'reporterId': self.reporter_id,
            'reporterName': self.reporter_name,
            'groupId': self.group_id,
            'location': self.location.to_dict(),
            'message': self.message,
            'status': self.status.value,
            'createdAt': to_iso(self.created_at),
            'updatedAt': to_iso(self.updated_at),
            'responses': {k: v.to_dict() for k, v in self.responses.items()},
            'resolution': self.resolution.to_dict(),
            'notifications': [n.to_dict() for n in self.notifications],
            'acceptedAt': to_iso(self.accepted_at),
            'arrivedAt': to_iso(self.arrived_at),
            'verifiedAt': to_iso(self.verified_at),
            'verifiedBy': self.verified_by,
            'isVerified': self.is_verified,
            'escalationReason': self.escalation_reason,
            'resolvedAt': to_iso(self.resolved_at),
            'cancellationReason': self.cancellation_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> 'Emergency':
        return cls(
            id=doc_id or data.get('emergencyId', ''),
            reporter_id=data.get('reporterId', ''),
            reporter_name=data.get('reporterName', ''),
            group_id=data.get('groupId', ''),
            location=GeoPoint.from_dict(data.get('location')) or GeoPoint(0.0, 0.0),
            message=data.get('message'),
            status=EmergencyStatus(data.get('status', EmergencyStatus.UNVERIFIED.value)),
            created_at=parse_timestamp(data.get('createdAt')) or utcnow(),
            updated_at=parse_timestamp(data.get('updatedAt')) or utcnow(),
            responses={
                k: VolunteerResponse.from_dict(v, volunteer_id=k)
                for k, v in (data.get('responses') or {}).items()
            },
            resolution=Resolution.from_dict(data.get('resolution')),
            notifications=[AttendeeNotification.from_dict(n) for n in data.get('notifications') or []],
            accepted_at=parse_timestamp(data.get('acceptedAt')),
            arrived_at=parse_timestamp(data.get('arrivedAt')),
            verified_at=parse_timestamp(data.get('verifiedAt')),
            verified_by=data.get('verifiedBy'),
            is_verified=data.get('isVerified'),
            escalation_reason=data.get('escalationReason'),
            resolved_at=parse_timestamp(data.get('resolvedAt')),
            cancellation_reason=data.get('cancellationReason'),
        )
