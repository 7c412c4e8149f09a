"""
Unit tests for group membership reconciliation
"""

import pytest
import pytest_asyncio

from musterpoint.core.identity import StaticIdentityProvider
from musterpoint.services.emergency.store_paths import GROUPS, USERS
from musterpoint.services.sync.state_reconciliation import LocalStateCache, StateReconciler
from tests.utils import seed_group


@pytest.fixture
def cache():
    return LocalStateCache()


@pytest.fixture
def signed_in(volunteer):
    return StaticIdentityProvider(volunteer)


@pytest_asyncio.fixture
async def reconciler(store, signed_in, locks, cache):
    reconciler = StateReconciler(store, signed_in, locks, cache, lock_ttl=2.0)
    yield reconciler
    reconciler.stop()


@pytest_asyncio.fixture
async def membership(store, reporter, volunteer):
    await seed_group(store, 'group-1', [reporter, volunteer])


class TestLocalStateCache:

    def test_in_memory(self):
        cache = LocalStateCache()
        cache.set_group_id('group-1')
        assert cache.group_id == 'group-1'
        cache.clear()
        assert cache.group_id is None

    def test_persists_to_file(self, tmp_path):
        path = tmp_path / "state" / "cache.json"
        LocalStateCache(str(path)).set_group_id('group-1')
        assert LocalStateCache(str(path)).group_id == 'group-1'

    def test_unreadable_file_ignored(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text("{not json")
        assert LocalStateCache(str(path)).group_id is None


class TestStartup:

    @pytest.mark.asyncio
    async def test_requires_signed_in_user(self, store, locks, cache):
        reconciler = StateReconciler(store, StaticIdentityProvider(), locks, cache)
        assert await reconciler.start() is False
        assert await reconciler.force_sync() is False
        assert await reconciler.validate_consistency() is False

    @pytest.mark.asyncio
    async def test_adopts_remote_group(self, reconciler, cache, membership, volunteer):
        assert await reconciler.start()

        assert cache.group_id == 'group-1'
        status = reconciler.get_sync_status()
        assert status == {
            'userId': volunteer.user_id,
            'groupId': 'group-1',
            'cachedGroupId': 'group-1',
            'userDocSyncing': True,
            'groupDocSyncing': True,
        }
        assert await reconciler.validate_consistency()

    @pytest.mark.asyncio
    async def test_remote_overrides_stale_cache(self, reconciler, cache, membership):
        cache.set_group_id('group-old')
        await reconciler.start()
        assert cache.group_id == 'group-1'

    @pytest.mark.asyncio
    async def test_remote_without_group_clears_cache(self, store, reconciler, cache, membership, volunteer):
        await store.update(USERS, volunteer.user_id, {'groupId': None})
        cache.set_group_id('group-1')

        await reconciler.start()

        assert cache.group_id is None
        assert reconciler.get_sync_status()['groupDocSyncing'] is False


class TestDivergence:

    @pytest.mark.asyncio
    async def test_deleted_group_clears_both_sides(self, store, reconciler, cache, membership, volunteer):
        await reconciler.start()

        await store.delete(GROUPS, 'group-1')
        await store.drain()

        assert cache.group_id is None
        user = await store.get(USERS, volunteer.user_id)
        assert 'groupId' not in user.data
        assert reconciler.get_sync_status()['groupDocSyncing'] is False
        assert await reconciler.validate_consistency()

    @pytest.mark.asyncio
    async def test_removed_from_members(self, store, reconciler, cache, membership, reporter, volunteer):
        await reconciler.start()

        await store.update(GROUPS, 'group-1', {'memberIds': [reporter.user_id]})
        await store.drain()

        assert cache.group_id is None
        assert (await store.get(USERS, volunteer.user_id)).get('groupId') is None

    @pytest.mark.asyncio
    async def test_moved_to_another_group(self, store, reconciler, cache, membership, volunteer):
        await store.set(GROUPS, 'group-2', {'name': "Group group-2", 'memberIds': [volunteer.user_id]})
        await reconciler.start()

        await store.update(USERS, volunteer.user_id, {'groupId': 'group-2'})
        await store.drain()

        assert cache.group_id == 'group-2'
        assert reconciler.get_sync_status()['groupId'] == 'group-2'

    @pytest.mark.asyncio
    async def test_remote_clear_skips_newer_group(self, store, reconciler, membership, volunteer):
        await store.set(GROUPS, 'group-2', {'name': "Group group-2", 'memberIds': [volunteer.user_id]})
        await reconciler.start()
        await store.update(USERS, volunteer.user_id, {'groupId': 'group-2'})

        assert await reconciler._clear_remote_group('group-1') is False
        assert (await store.get(USERS, volunteer.user_id)).get('groupId') == 'group-2'

    @pytest.mark.asyncio
    async def test_remote_clear_waits_for_lock(self, store, locks, reconciler, membership, volunteer):
        await reconciler.start()
        await locks.acquire(f"user_group_{volunteer.user_id}", 'another-client', ttl=30)

        assert await reconciler._clear_remote_group('group-1') is False
        assert (await store.get(USERS, volunteer.user_id)).get('groupId') == 'group-1'


class TestForceSync:

    @pytest.mark.asyncio
    async def test_adopts_remote_membership(self, reconciler, cache, membership):
        assert await reconciler.force_sync()
        assert cache.group_id == 'group-1'

    @pytest.mark.asyncio
    async def test_clears_group_that_lost_the_user(self, store, reconciler, cache, membership,
                                                   reporter, volunteer):
        await store.update(GROUPS, 'group-1', {'memberIds': [reporter.user_id]})
        cache.set_group_id('group-stale')
        assert await reconciler.force_sync()

        assert cache.group_id is None
        assert (await store.get(USERS, volunteer.user_id)).get('groupId') is None

    @pytest.mark.asyncio
    async def test_missing_user_document(self, reconciler, cache):
        cache.set_group_id('group-1')
        assert await reconciler.force_sync()
        assert cache.group_id is None

    @pytest.mark.asyncio
    async def test_validate_detects_mismatch(self, reconciler, cache, membership):
        cache.set_group_id('group-elsewhere')
        assert await reconciler.validate_consistency() is False


class TestStop:

    @pytest.mark.asyncio
    async def test_stop_releases_subscriptions(self, store, reconciler, membership):
        await reconciler.start()
        assert store.subscription_count == 2

        reconciler.stop()

        assert store.subscription_count == 0
        status = reconciler.get_sync_status()
        assert status['userDocSyncing'] is False
        assert status['groupDocSyncing'] is False
