"""
Global pytest configuration and fixtures for MusterPoint testing.
"""
import pytest
import pytest_asyncio

from musterpoint.core.database import open_document_store
from musterpoint.core.identity import StaticIdentityProvider
from musterpoint.core.locks import AdvisoryLockService
from musterpoint.core.task_queue import BackgroundTaskQueue
from musterpoint.models.emergency import GeoPoint
from musterpoint.models.user import Actor, UserRole
from musterpoint.services.emergency.emergency_service import EmergencyCoordinator
from tests.mocks.emergency_mocks import RecordingPushDelivery


# Bangalore, where the reporter stands in the scenario tests
INCIDENT_LOCATION = GeoPoint(12.9716, 77.5946)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "musterpoint-test.db")


@pytest_asyncio.fixture
async def store(db_path):
    """Document store on a fresh temporary SQLite file"""
    store = open_document_store(db_path)
    yield store
    await store.drain()
    store.close_subscriptions()
    store.db.close()


@pytest_asyncio.fixture
async def tasks():
    queue = BackgroundTaskQueue(workers=2, max_queue_size=100, max_retries=1, retry_delay=0.01)
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
def locks(store):
    return AdvisoryLockService(store, default_ttl=10.0, max_attempts=5, initial_delay=0.01)


@pytest.fixture
def delivery():
    return RecordingPushDelivery()


@pytest.fixture
def identity():
    return StaticIdentityProvider()


@pytest.fixture
def reporter():
    return Actor(user_id="attendee-1", display_name="Asha", role=UserRole.ATTENDEE)


@pytest.fixture
def volunteer():
    return Actor(user_id="volunteer-1", display_name="Vikram", role=UserRole.VOLUNTEER)


@pytest.fixture
def second_volunteer():
    return Actor(user_id="volunteer-2", display_name="Meera", role=UserRole.VOLUNTEER)


@pytest.fixture
def organizer():
    return Actor(user_id="organizer-1", display_name="Omar", role=UserRole.ORGANIZER)


@pytest.fixture
def location():
    return INCIDENT_LOCATION


@pytest.fixture
def coordinator(store, identity, locks, tasks, delivery):
    """Coordinator acting as whichever actor the identity fixture has signed in"""
    return EmergencyCoordinator(store, identity, locks, tasks, delivery=delivery)
