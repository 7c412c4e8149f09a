"""
Property-Based Tests for Store-Backed Coordination

Tests dual resolution consensus and advisory lock exclusivity against a
real document store using Hypothesis. Each example runs on its own
temporary database.
"""

import asyncio
import tempfile
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

from hypothesis import HealthCheck, given, settings, strategies as st

from musterpoint.core.database import open_document_store
from musterpoint.core.locks import AdvisoryLockService
from musterpoint.core.timestamps import utcnow
from musterpoint.models.emergency import EmergencyStatus, GeoPoint
from musterpoint.models.user import Actor, UserRole
from musterpoint.services.emergency.incident_manager import IncidentManager
from musterpoint.services.emergency.resolution import DualResolution
from musterpoint.services.emergency.state_machine import EmergencyStateMachine


REPORTER = Actor('attendee-1', "Asha", UserRole.ATTENDEE)
VOLUNTEERS = [Actor(f'volunteer-{n}', f"Volunteer {n}", UserRole.VOLUNTEER) for n in range(1, 4)]
LOCATION = GeoPoint(12.9716, 77.5946)

PROPERTY_SETTINGS = settings(
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)


@contextmanager
def temp_store(clock=None):
    """Document store on a throwaway database file"""
    with tempfile.TemporaryDirectory() as directory:
        store = open_document_store(str(Path(directory) / "property.db"))
        if clock is not None:
            store.clock = clock
        try:
            yield store
        finally:
            store.close_subscriptions()
            store.db.close()


@st.composite
def acknowledgement_orders(draw):
    """Attendee plus a non-empty subset of volunteers, in any order, with repeats"""
    volunteers = draw(st.lists(st.sampled_from(VOLUNTEERS), min_size=1, max_size=3, unique=True))
    parties = [REPORTER] + volunteers
    order = draw(st.permutations(parties))
    repeats = draw(st.lists(st.sampled_from(parties), max_size=3))
    return list(order) + repeats


class TestResolutionConsensus:
    """
    For any order of acknowledgements, the emergency is resolved exactly
    when the attendee and at least one volunteer have acknowledged, and
    that transition is reported once.
    """

    @PROPERTY_SETTINGS
    @given(order=acknowledgement_orders())
    def test_resolved_exactly_when_both_sides_acknowledged(self, order):
        async def scenario():
            with temp_store() as store:
                machine = EmergencyStateMachine(store)
                resolution = DualResolution(machine)
                emergency, _ = await IncidentManager(store).create_emergency(REPORTER, 'group-1', LOCATION)
                await machine.accept(emergency.id, VOLUNTEERS[0])
                for volunteer in VOLUNTEERS[1:]:
                    await machine.join(emergency.id, volunteer)
                await machine.mark_arrived(emergency.id, VOLUNTEERS[0])
                await machine.verify(emergency.id, VOLUNTEERS[0], is_real=True)

                attendee_done = False
                volunteer_done = False
                completions = 0
                for party in order:
                    if party is REPORTER:
                        outcome = await resolution.attendee_resolve(emergency.id, party)
                        attendee_done = True
                    else:
                        outcome = await resolution.volunteer_resolve(emergency.id, party)
                        volunteer_done = True

                    both = attendee_done and volunteer_done
                    assert (outcome.emergency.status is EmergencyStatus.RESOLVED) == both
                    completions += int(outcome.fully_resolved)
                    if not both:
                        assert outcome.awaiting == ('volunteer' if attendee_done else 'attendee')

                assert completions == 1

        asyncio.run(scenario())


lock_operations = st.lists(
    st.tuples(
        st.sampled_from(['acquire', 'release']),
        st.sampled_from(['a', 'b', 'c']),
        st.integers(min_value=0, max_value=4),
    ),
    min_size=1,
    max_size=25,
)


class TestLockExclusivity:
    """
    For any interleaving of acquire/release calls and clock advances, the
    lock service agrees with a single-holder TTL model.
    """

    @PROPERTY_SETTINGS
    @given(operations=lock_operations, ttl=st.integers(min_value=1, max_value=5))
    def test_matches_single_holder_model(self, operations, ttl):
        start = utcnow()
        clock = {'now': start}

        async def scenario():
            with temp_store(clock=lambda: clock['now']) as store:
                locks = AdvisoryLockService(store, default_ttl=ttl, max_attempts=1, initial_delay=0)
                holder = None
                expires = None

                for operation, owner, advance in operations:
                    clock['now'] += timedelta(seconds=advance)
                    now = clock['now']
                    if operation == 'acquire':
                        if holder is None or expires <= now or holder == owner:
                            expected = True
                            holder, expires = owner, now + timedelta(seconds=ttl)
                        else:
                            expected = False
                        assert await locks.acquire('resource', owner) is expected
                    else:
                        if holder is None:
                            expected = True
                        elif holder == owner:
                            expected = True
                            holder = expires = None
                        else:
                            expected = False
                        assert await locks.release('resource', owner) is expected

                    live = holder if holder is not None and expires > now else None
                    assert await locks.get_holder('resource') == live

        asyncio.run(scenario())
