"""
Unit tests for the advisory lock service
"""

import asyncio
from datetime import timedelta

import pytest

from musterpoint.core.locks import LOCKS_COLLECTION, AdvisoryLockService, LockUnavailable
from musterpoint.core.timestamps import to_iso, utcnow


class TestAcquireRelease:

    @pytest.mark.asyncio
    async def test_acquire_free_lock(self, locks, store):
        assert await locks.acquire('resource', 'owner-a', ttl=5)
        snapshot = await store.get(LOCKS_COLLECTION, 'resource')
        assert snapshot.get('ownerId') == 'owner-a'
        assert snapshot.get('expiresAt') > snapshot.get('createdAt')

    @pytest.mark.asyncio
    async def test_held_lock_rejects_other_owner(self, locks):
        assert await locks.acquire('resource', 'owner-a', ttl=5)
        assert not await locks.acquire('resource', 'owner-b', ttl=5)
        assert await locks.get_holder('resource') == 'owner-a'

    @pytest.mark.asyncio
    async def test_same_owner_renews(self, locks, store):
        assert await locks.acquire('resource', 'owner-a', ttl=1)
        first_expiry = (await store.get(LOCKS_COLLECTION, 'resource')).get('expiresAt')
        assert await locks.acquire('resource', 'owner-a', ttl=30)
        assert (await store.get(LOCKS_COLLECTION, 'resource')).get('expiresAt') > first_expiry

    @pytest.mark.asyncio
    async def test_expired_lock_is_stolen(self, locks, store):
        await store.set(LOCKS_COLLECTION, 'resource', {
            'ownerId': 'crashed',
            'expiresAt': to_iso(utcnow() - timedelta(seconds=1)),
            'createdAt': to_iso(utcnow() - timedelta(seconds=11)),
        })
        assert await locks.get_holder('resource') is None
        assert await locks.acquire('resource', 'owner-b', ttl=5)
        assert await locks.get_holder('resource') == 'owner-b'

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_lock_expires_after_ttl(self, locks):
        assert await locks.acquire('resource', 'owner-a', ttl=1)
        await asyncio.sleep(1.1)
        assert await locks.acquire('resource', 'owner-b', ttl=5)

    @pytest.mark.asyncio
    async def test_release_requires_owner(self, locks):
        await locks.acquire('resource', 'owner-a', ttl=5)
        assert not await locks.release('resource', 'owner-b')
        assert await locks.get_holder('resource') == 'owner-a'
        assert await locks.release('resource', 'owner-a')
        assert await locks.get_holder('resource') is None

    @pytest.mark.asyncio
    async def test_release_absent_lock_succeeds(self, locks):
        assert await locks.release('never-taken', 'owner-a')

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_single_winner(self, locks):
        results = await asyncio.gather(
            locks.acquire('resource', 'owner-a', ttl=5),
            locks.acquire('resource', 'owner-b', ttl=5),
        )
        assert sorted(results) == [False, True]


class TestRunExclusive:

    @pytest.mark.asyncio
    async def test_runs_callback_and_releases(self, locks):
        async def _work():
            assert await locks.get_holder('resource') == 'owner-a'
            return 42

        assert await locks.run_exclusive('resource', 'owner-a', _work) == 42
        assert await locks.get_holder('resource') is None

    @pytest.mark.asyncio
    async def test_releases_when_callback_fails(self, locks):
        async def _boom():
            raise RuntimeError("callback failed")

        with pytest.raises(RuntimeError):
            await locks.run_exclusive('resource', 'owner-a', _boom)
        assert await locks.get_holder('resource') is None

    @pytest.mark.asyncio
    async def test_returns_none_when_unavailable(self, locks):
        await locks.acquire('resource', 'owner-a', ttl=30)
        calls = []

        async def _work():
            calls.append(1)

        result = await locks.run_exclusive('resource', 'owner-b', _work, max_attempts=3, initial_delay=0.01)
        assert result is None
        assert calls == []

    @pytest.mark.asyncio
    async def test_raises_when_asked(self, locks):
        await locks.acquire('resource', 'owner-a', ttl=30)

        async def _work():
            return 1

        with pytest.raises(LockUnavailable) as excinfo:
            await locks.run_exclusive('resource', 'owner-b', _work, max_attempts=2,
                                      initial_delay=0.01, raise_on_unavailable=True)
        assert excinfo.value.attempts == 2

    @pytest.mark.asyncio
    async def test_waits_for_holder_to_release(self, locks):
        await locks.acquire('resource', 'owner-a', ttl=30)

        async def _release_soon():
            await asyncio.sleep(0.03)
            await locks.release('resource', 'owner-a')

        async def _work():
            return 'ran'

        releaser = asyncio.create_task(_release_soon())
        result = await locks.run_exclusive('resource', 'owner-b', _work, max_attempts=6, initial_delay=0.01)
        await releaser
        assert result == 'ran'

    @pytest.mark.asyncio
    async def test_critical_sections_do_not_overlap(self, store):
        locks = AdvisoryLockService(store, default_ttl=5, max_attempts=12, initial_delay=0.01)
        active = []
        overlaps = []

        async def _section(owner):
            async def _work():
                active.append(owner)
                if len(active) > 1:
                    overlaps.append(tuple(active))
                await asyncio.sleep(0.01)
                active.remove(owner)
                return owner
            return await locks.run_exclusive('shared', owner, _work)

        results = await asyncio.gather(_section('a'), _section('b'), _section('c'))
        assert overlaps == []
        assert sorted(results) == ['a', 'b', 'c']

    @pytest.mark.asyncio
    async def test_hold_context_manager(self, locks):
        async with locks.hold('resource', 'owner-a'):
            assert await locks.get_holder('resource') == 'owner-a'
        assert await locks.get_holder('resource') is None

    @pytest.mark.asyncio
    async def test_hold_raises_when_unavailable(self, locks):
        await locks.acquire('resource', 'owner-a', ttl=30)
        with pytest.raises(LockUnavailable):
            async with locks.hold('resource', 'owner-b', max_attempts=1):
                pass
