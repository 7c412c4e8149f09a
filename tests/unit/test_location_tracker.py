"""
Unit tests for throttled location tracking
"""

import asyncio

import pytest
import pytest_asyncio

from musterpoint.models.emergency import EmergencyStatus, VolunteerStatus
from musterpoint.services.emergency.incident_manager import IncidentManager
from musterpoint.services.emergency.location_tracker import LocationThrottle, LocationTracker
from musterpoint.services.emergency.state_machine import EmergencyStateMachine
from tests.mocks.emergency_mocks import (
    FailingLocationSource, MovableLocationSource, ScriptedLocationSource
)
from tests.utils import offset, wait_until


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


async def watching(tracker, emergency_id):
    return tracker.watches.get(emergency_id) is not None


class TestLocationThrottle:

    def test_first_fix_always_passes(self, location):
        throttle = LocationThrottle(5, 5, clock=FakeClock())
        assert throttle.offer(location)

    def test_interval_gate(self, location):
        clock = FakeClock()
        throttle = LocationThrottle(5, 5, clock=clock)
        throttle.offer(location)

        clock.now += 4
        assert not throttle.offer(offset(location, north_meters=50))
        clock.now += 1
        assert throttle.offer(offset(location, north_meters=50))

    def test_displacement_gate(self, location):
        clock = FakeClock()
        throttle = LocationThrottle(3, 2, clock=clock)
        throttle.offer(location)

        clock.now += 10
        assert not throttle.offer(offset(location, east_meters=1))
        assert throttle.offer(offset(location, east_meters=3))

    def test_rejected_fix_is_not_recorded(self, location):
        clock = FakeClock()
        throttle = LocationThrottle(3, 2, clock=clock)
        throttle.offer(location)
        clock.now += 1
        throttle.offer(offset(location, north_meters=100))

        assert throttle.last_point == location
        assert throttle.last_time == 100.0


@pytest.fixture
def incidents(store):
    return IncidentManager(store)


@pytest_asyncio.fixture
async def tracker(incidents, tasks):
    tracker = LocationTracker(incidents, tasks,
                              attendee_interval=0.01, attendee_min_displacement=2,
                              volunteer_interval=0.01, volunteer_min_displacement=5)
    yield tracker
    await tracker.stop_all()


@pytest_asyncio.fixture
async def emergency(incidents, reporter, location):
    created, _ = await incidents.create_emergency(reporter, 'group-1', location)
    return created


class TestAttendeeTracking:

    @pytest.mark.asyncio
    async def test_moves_incident_location(self, tracker, incidents, emergency, location):
        moved = offset(location, north_meters=30)
        source = ScriptedLocationSource([location, moved])

        assert tracker.start_attendee_tracking(emergency, source)

        async def _moved():
            current = await incidents.get_emergency(emergency.id)
            return current.location == moved

        assert await wait_until(_moved)

    @pytest.mark.asyncio
    async def test_stationary_source_written_once(self, tracker, tasks, emergency, location):
        source = ScriptedLocationSource([location])
        tracker.start_attendee_tracking(emergency, source)

        async def _polled():
            return source.calls >= 5

        assert await wait_until(_polled)
        await tasks.join()
        session = tracker.sessions[f"{emergency.id}:{emergency.reporter_id}"]
        assert session.fixes_submitted == 1

    @pytest.mark.asyncio
    async def test_failing_source_keeps_session_alive(self, tracker, emergency):
        source = FailingLocationSource()
        tracker.start_attendee_tracking(emergency, source)

        async def _retried():
            return source.calls >= 3

        assert await wait_until(_retried)
        assert tracker.is_tracking(emergency.id, emergency.reporter_id)
        session = tracker.sessions[f"{emergency.id}:{emergency.reporter_id}"]
        assert session.errors >= 3
        assert session.fixes_submitted == 0


class TestSessions:

    @pytest.mark.asyncio
    async def test_single_session_per_participant(self, tracker, emergency, location):
        source = ScriptedLocationSource([location])
        assert tracker.start_attendee_tracking(emergency, source)
        assert not tracker.start_attendee_tracking(emergency, source)
        assert tracker.active_sessions == [f"{emergency.id}:{emergency.reporter_id}"]

    @pytest.mark.asyncio
    async def test_stop(self, tracker, emergency, location):
        tracker.start_volunteer_tracking(emergency, 'volunteer-1', ScriptedLocationSource([location]))

        assert await tracker.stop(emergency.id, 'volunteer-1')
        assert not tracker.is_tracking(emergency.id, 'volunteer-1')
        assert not await tracker.stop(emergency.id, 'volunteer-1')

    @pytest.mark.asyncio
    async def test_stop_emergency(self, tracker, incidents, emergency, location, second_volunteer):
        other, _ = await incidents.create_emergency(second_volunteer, 'group-1', location)
        source = ScriptedLocationSource([location])
        tracker.start_attendee_tracking(emergency, source)
        tracker.start_volunteer_tracking(emergency, 'volunteer-1', source)
        tracker.start_attendee_tracking(other, source)

        assert await tracker.stop_emergency(emergency.id) == 2
        assert tracker.active_sessions == [f"{other.id}:{second_volunteer.user_id}"]

    @pytest.mark.asyncio
    async def test_stopped_session_stops_polling(self, tracker, emergency, location):
        source = ScriptedLocationSource([location])
        tracker.start_attendee_tracking(emergency, source)
        await asyncio.sleep(0.05)
        await tracker.stop(emergency.id, emergency.reporter_id)

        calls = source.calls
        await asyncio.sleep(0.05)
        assert source.calls == calls


class TestVolunteerWrites:

    @pytest_asyncio.fixture
    async def accepted(self, store, emergency, volunteer):
        return await EmergencyStateMachine(store).accept(emergency.id, volunteer)

    @pytest.mark.asyncio
    async def test_writes_location_and_eta(self, tracker, incidents, accepted, volunteer, location):
        point = offset(location, north_meters=840)
        assert await tracker.write_volunteer_location(accepted.id, volunteer.user_id, point)

        current = await incidents.get_emergency(accepted.id)
        response = current.responses[volunteer.user_id]
        assert response.current_location == point
        assert response.estimated_arrival_time == "10 mins"
        assert current.updated_at > accepted.updated_at

    @pytest.mark.asyncio
    async def test_no_eta_once_arrived(self, store, tracker, incidents, accepted, volunteer, location):
        await EmergencyStateMachine(store).mark_arrived(accepted.id, volunteer)
        assert await tracker.write_volunteer_location(accepted.id, volunteer.user_id, location)

        response = (await incidents.get_emergency(accepted.id)).responses[volunteer.user_id]
        assert response.current_location == location
        assert response.estimated_arrival_time is None

    @pytest.mark.asyncio
    async def test_skipped_after_withdrawal(self, store, tracker, accepted, volunteer, location):
        await EmergencyStateMachine(store).update_volunteer_status(
            accepted.id, volunteer, VolunteerStatus.UNAVAILABLE)
        assert not await tracker.write_volunteer_location(accepted.id, volunteer.user_id, location)

    @pytest.mark.asyncio
    async def test_skipped_when_terminal(self, store, tracker, accepted, reporter, volunteer, location):
        await EmergencyStateMachine(store).cancel(accepted.id, reporter)
        assert not await tracker.write_volunteer_location(accepted.id, volunteer.user_id, location)

    @pytest.mark.asyncio
    async def test_skipped_for_unknown_volunteer_or_emergency(self, tracker, accepted, location):
        assert not await tracker.write_volunteer_location(accepted.id, 'volunteer-9', location)
        assert not await tracker.write_volunteer_location('missing', 'volunteer-1', location)

    @pytest.mark.asyncio
    async def test_volunteer_session_updates_response(self, tracker, incidents, accepted, volunteer, location):
        point = offset(location, east_meters=420)
        tracker.start_volunteer_tracking(accepted, volunteer.user_id, ScriptedLocationSource([point]))

        async def _written():
            current = await incidents.get_emergency(accepted.id)
            return current.responses[volunteer.user_id].current_location == point

        assert await wait_until(_written)

    @pytest.mark.asyncio
    async def test_session_ends_when_withdrawn_elsewhere(self, store, tracker, accepted, volunteer, location):
        tracker.start_volunteer_tracking(accepted, volunteer.user_id, ScriptedLocationSource([location]))
        assert await wait_until(lambda: watching(tracker, accepted.id))

        await EmergencyStateMachine(store).update_volunteer_status(
            accepted.id, volunteer, VolunteerStatus.UNAVAILABLE)
        await store.drain()

        assert not tracker.is_tracking(accepted.id, volunteer.user_id)
        assert tracker.watches == {}
        assert store.subscription_count == 0

    @pytest.mark.asyncio
    async def test_attendee_keeps_tracking_when_volunteer_withdraws(self, store, tracker, accepted,
                                                                    volunteer, location):
        source = ScriptedLocationSource([location])
        tracker.start_attendee_tracking(accepted, source)
        tracker.start_volunteer_tracking(accepted, volunteer.user_id, source)
        assert await wait_until(lambda: watching(tracker, accepted.id))

        await EmergencyStateMachine(store).update_volunteer_status(
            accepted.id, volunteer, VolunteerStatus.COMPLETED)
        await store.drain()

        assert not tracker.is_tracking(accepted.id, volunteer.user_id)
        assert tracker.is_tracking(accepted.id, accepted.reporter_id)
        assert accepted.id in tracker.watches


class TestClosedElsewhere:
    """Sessions end on terminal transitions this tracker did not commit"""

    @pytest.mark.asyncio
    async def test_attendee_session_ends_when_cancelled_elsewhere(self, store, tracker, tasks, incidents,
                                                                  emergency, reporter, location):
        source = MovableLocationSource(location)
        tracker.start_attendee_tracking(emergency, source)
        assert await wait_until(lambda: watching(tracker, emergency.id))

        await EmergencyStateMachine(store).cancel(emergency.id, reporter, "sorted it out")
        await store.drain()

        assert not tracker.is_tracking(emergency.id, emergency.reporter_id)
        assert tracker.watches == {}
        assert store.subscription_count == 0

        source.position = offset(location, north_meters=500)
        await asyncio.sleep(0.05)
        await tasks.join()
        current = await incidents.get_emergency(emergency.id)
        assert current.status is EmergencyStatus.RESOLVED
        assert current.location == location

    @pytest.mark.asyncio
    async def test_session_started_on_closed_emergency_ends_at_once(self, store, tracker, emergency,
                                                                    reporter, location):
        await EmergencyStateMachine(store).cancel(emergency.id, reporter)
        tracker.start_attendee_tracking(emergency, ScriptedLocationSource([location]))

        async def _ended():
            return not tracker.is_tracking(emergency.id, emergency.reporter_id)

        async def _released():
            return store.subscription_count == 0 and tracker.watches == {}

        assert await wait_until(_ended)
        assert await wait_until(_released)

    @pytest.mark.asyncio
    async def test_location_write_refused_once_closed(self, store, incidents, emergency, reporter, location):
        await EmergencyStateMachine(store).cancel(emergency.id, reporter)

        assert not await incidents.update_emergency_location(emergency, offset(location, north_meters=500))
        assert (await incidents.get_emergency(emergency.id)).location == location

    @pytest.mark.asyncio
    async def test_stop_releases_watch(self, store, tracker, emergency, location):
        tracker.start_attendee_tracking(emergency, ScriptedLocationSource([location]))
        assert await wait_until(lambda: watching(tracker, emergency.id))
        assert store.subscription_count == 1

        await tracker.stop(emergency.id, emergency.reporter_id)

        assert tracker.watches == {}
        assert store.subscription_count == 0
