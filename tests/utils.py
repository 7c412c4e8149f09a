"""
Test utilities for seeding the document store.
"""
import asyncio
import math
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, Optional

from musterpoint.core.database import SERVER_TIMESTAMP, DocumentStore
from musterpoint.models.emergency import Emergency, EmergencyStatus, GeoPoint
from musterpoint.models.user import Actor, MemberLocation
from musterpoint.services.emergency.geo import EARTH_RADIUS_METERS
from musterpoint.services.emergency.store_paths import EMERGENCIES, GROUPS, LOCATIONS, USERS


METERS_PER_DEGREE = math.radians(1) * EARTH_RADIUS_METERS


async def seed_group(store: DocumentStore, group_id: str, members: Iterable[Actor],
                     positions: Optional[Dict[str, GeoPoint]] = None) -> None:
    """Create a group, its members' user documents and roster entries"""
    members = list(members)
    positions = positions or {}
    await store.set(GROUPS, group_id, {
        'name': f"Group {group_id}",
        'memberIds': [m.user_id for m in members],
    })
    for member in members:
        await store.set(USERS, member.user_id, {
            'displayName': member.display_name,
            'role': member.role.value,
            'groupId': group_id,
        })
        await seed_roster_entry(store, group_id, member, positions.get(member.user_id))


async def seed_roster_entry(store: DocumentStore, group_id: str, member: Actor,
                            position: Optional[GeoPoint]) -> None:
    await store.set(LOCATIONS, MemberLocation.document_id(group_id, member.user_id), {
        'userId': member.user_id,
        'userName': member.display_name,
        'groupId': group_id,
        'userRole': member.role.value,
        'latitude': position.latitude if position else None,
        'longitude': position.longitude if position else None,
        'isEmergency': False,
        'lastUpdated': SERVER_TIMESTAMP,
    })


def offset(point: GeoPoint, north_meters: float = 0.0, east_meters: float = 0.0) -> GeoPoint:
    """Approximate point displaced by the given metres (fine for a few km)"""
    dlat = north_meters / METERS_PER_DEGREE
    dlon = east_meters / (METERS_PER_DEGREE * math.cos(math.radians(point.latitude)))
    return GeoPoint(point.latitude + dlat, point.longitude + dlon)


async def insert_emergency(store: DocumentStore, reporter: Actor, group_id: str,
                           location: GeoPoint, created_at: datetime,
                           status: EmergencyStatus = EmergencyStatus.UNVERIFIED) -> str:
    """Write an emergency document directly, bypassing the one-live-emergency check"""
    emergency_id = str(uuid.uuid4())
    data = Emergency(
        id=emergency_id,
        reporter_id=reporter.user_id,
        reporter_name=reporter.display_name,
        group_id=group_id,
        location=location,
        status=status,
        created_at=created_at,
        updated_at=created_at,
    ).to_dict()
    await store.create(EMERGENCIES, data, doc_id=emergency_id)
    return emergency_id


async def wait_until(predicate: Callable[[], Awaitable[bool]], timeout: float = 2.0,
                     interval: float = 0.01) -> bool:
    """Poll an async predicate until it holds or the timeout passes"""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(interval)
    return await predicate()
