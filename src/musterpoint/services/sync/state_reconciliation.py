"""
State Reconciliation

Keeps a client's locally cached group membership in step with the store.
The store is the source of truth: a remote group id overrides the cache,
and a group that vanished (or no longer lists the user) is cleared both
locally and from the user's remote document.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ...core.database import (
    DELETE_FIELD, DatabaseError, DocumentSnapshot, DocumentStore,
    DocumentTransaction, Subscription
)
from ...core.identity import IdentityProvider
from ...core.locks import AdvisoryLockService
from ..emergency.store_paths import GROUPS, USERS


class LocalStateCache:
    """Client-local group id, optionally persisted to a JSON file"""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self.logger = logging.getLogger(__name__)
        self._group_id: Optional[str] = None
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, 'r') as f:
                self._group_id = json.load(f).get('groupId') or None
        except (OSError, ValueError) as e:
            self.logger.warning(f"Ignoring unreadable state cache {self.path}: {e}")

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump({'groupId': self._group_id}, f)

    @property
    def group_id(self) -> Optional[str]:
        return self._group_id

    def set_group_id(self, group_id: Optional[str]) -> None:
        self._group_id = group_id or None
        self._save()

    def clear(self) -> None:
        self.set_group_id(None)


class StateReconciler:
    """
    Watches the current user's document and cached group document and heals
    divergence as it is observed.
    """

    def __init__(self, store: DocumentStore, identity: IdentityProvider,
                 locks: AdvisoryLockService, cache: LocalStateCache,
                 lock_ttl: float = 8.0):
        self.store = store
        self.identity = identity
        self.locks = locks
        self.cache = cache
        self.lock_ttl = lock_ttl
        self.logger = logging.getLogger(__name__)

        self.user_id: Optional[str] = None
        self.current_group_id: Optional[str] = None
        self.user_subscription: Optional[Subscription] = None
        self.group_subscription: Optional[Subscription] = None

    async def start(self) -> bool:
        """Begin reconciling for the current actor; False when nobody is signed in"""
        actor = self.identity.current_actor()
        if actor is None:
            self.logger.warning("Cannot start state reconciliation: no authenticated user")
            return False

        self.stop()
        self.user_id = actor.user_id
        self.logger.info(f"Starting state reconciliation for user: {self.user_id}")

        self.user_subscription = await self.store.subscribe_document(
            USERS, self.user_id, self._on_user_snapshot)
        await self._follow_cached_group()
        return True

    def stop(self) -> None:
        if self.user_subscription is not None:
            self.user_subscription.cancel()
        self._stop_group_subscription()
        self.user_subscription = None
        self.user_id = None

    def _stop_group_subscription(self) -> None:
        if self.group_subscription is not None:
            self.group_subscription.cancel()
        self.group_subscription = None
        self.current_group_id = None

    async def _on_user_snapshot(self, snapshot: DocumentSnapshot) -> None:
        if not snapshot.exists:
            self.logger.warning(f"User document does not exist: {snapshot.id}")
            return

        remote_group_id = snapshot.get('groupId') or None
        local_group_id = self.cache.group_id
        if remote_group_id == local_group_id:
            return

        self.logger.warning(f"Group id mismatch - local: {local_group_id}, remote: {remote_group_id}")
        if remote_group_id:
            self.cache.set_group_id(remote_group_id)
            self.logger.info(f"Local group id synced to remote: {remote_group_id}")
            await self._follow_cached_group()
        else:
            self.cache.clear()
            self._stop_group_subscription()
            self.logger.info("Local group id cleared to match remote")

    async def _follow_cached_group(self) -> None:
        group_id = self.cache.group_id
        if not group_id:
            self._stop_group_subscription()
            return
        if group_id == self.current_group_id and self.group_subscription is not None:
            return

        self._stop_group_subscription()
        self.current_group_id = group_id

        async def _on_group_snapshot(snapshot: DocumentSnapshot) -> None:
            await self._check_group(group_id, snapshot)

        self.group_subscription = await self.store.subscribe_document(GROUPS, group_id, _on_group_snapshot)

    async def _check_group(self, group_id: str, snapshot: DocumentSnapshot) -> None:
        if not snapshot.exists:
            self.logger.warning(f"Group document does not exist: {group_id}")
            await self._drop_membership(group_id)
            return

        if self.user_id not in (snapshot.get('memberIds') or []):
            self.logger.warning(f"User {self.user_id} not found in group {group_id} members")
            await self._drop_membership(group_id)
            return

        self.logger.debug(f"Group membership verified for user: {self.user_id}")

    async def _drop_membership(self, group_id: str) -> None:
        if self.cache.group_id == group_id:
            self.cache.clear()
        if self.current_group_id == group_id:
            self._stop_group_subscription()
        await self._clear_remote_group(group_id)

    async def _clear_remote_group(self, group_id: str) -> bool:
        """
        Remove groupId from the user's document if it still names group_id.

        Runs under the user's advisory lock so concurrent clients do not
        interleave writes to the same membership field.
        """
        user_id = self.user_id
        if user_id is None:
            return False

        def _clear(txn: DocumentTransaction) -> bool:
            if not txn.exists or txn.data.get('groupId') != group_id:
                return False
            txn.update({'groupId': DELETE_FIELD})
            return True

        async def _write() -> bool:
            return await self.store.run_transaction(USERS, user_id, _clear)

        try:
            cleared = await self.locks.run_exclusive(f"user_group_{user_id}", user_id, _write,
                                                     ttl=self.lock_ttl)
        except DatabaseError as e:
            self.logger.error(f"Error clearing remote group for {user_id}: {e}")
            return False

        if cleared is None:
            self.logger.warning(f"Remote group clear for {user_id} skipped: lock unavailable")
            return False
        if cleared:
            self.logger.info(f"Cleared remote group reference {group_id} for {user_id}")
        return cleared

    async def _is_member(self, group_id: str, user_id: str) -> bool:
        group = await self.store.get(GROUPS, group_id)
        return group.exists and user_id in (group.get('memberIds') or [])

    async def force_sync(self) -> bool:
        """
        One-shot reconciliation against fresh reads.

        Returns:
            True if the sync completed (whether or not anything changed)
        """
        actor = self.identity.current_actor()
        if actor is None:
            self.logger.warning("Cannot force sync: no authenticated user")
            return False
        user_id = actor.user_id
        self.user_id = self.user_id or user_id

        try:
            user = await self.store.get(USERS, user_id)
            if not user.exists:
                self.logger.warning("User document does not exist during force sync")
                self.cache.clear()
                return True

            remote_group_id = user.get('groupId') or None
            local_group_id = self.cache.group_id
            if remote_group_id != local_group_id:
                self.logger.info(f"Force sync: local ({local_group_id}) -> remote ({remote_group_id})")
                if remote_group_id and await self._is_member(remote_group_id, user_id):
                    self.cache.set_group_id(remote_group_id)
                elif remote_group_id:
                    self.logger.warning(f"Force sync: {user_id} not a member of {remote_group_id}, clearing")
                    self.cache.clear()
                    await self._clear_remote_group(remote_group_id)
                else:
                    self.cache.clear()

            if self.user_subscription is not None:
                await self._follow_cached_group()
        except DatabaseError as e:
            self.logger.error(f"Error during force sync: {e}")
            return False

        self.logger.info("Force sync completed")
        return True

    async def validate_consistency(self) -> bool:
        """True when cache, user document and group membership all agree"""
        actor = self.identity.current_actor()
        if actor is None:
            return False

        try:
            user = await self.store.get(USERS, actor.user_id)
            if not user.exists:
                self.logger.warning("State validation: user document missing")
                return False

            remote_group_id = user.get('groupId') or None
            if remote_group_id != self.cache.group_id:
                self.logger.warning(
                    f"State inconsistency - local: {self.cache.group_id}, remote: {remote_group_id}")
                return False

            if remote_group_id and not await self._is_member(remote_group_id, actor.user_id):
                self.logger.warning("State validation: user not in group members (or group missing)")
                return False
        except DatabaseError as e:
            self.logger.error(f"Error validating state consistency: {e}")
            return False

        return True

    def get_sync_status(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'groupId': self.current_group_id,
            'cachedGroupId': self.cache.group_id,
            'userDocSyncing': self.user_subscription is not None and self.user_subscription.active,
            'groupDocSyncing': self.group_subscription is not None and self.group_subscription.active,
        }
