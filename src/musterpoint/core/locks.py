"""
Advisory Lock Service for MusterPoint

Named, TTL-bounded mutual exclusion stored as documents in the ``locks``
collection, so every process sharing the store sees the same holder.
Expired locks may be stolen, which bounds the damage of a crashed holder.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .database import DatabaseError, DocumentStore, DocumentTransaction, SERVER_TIMESTAMP
from .logging import get_logger
from .timestamps import parse_timestamp, to_iso


T = TypeVar('T')

LOCKS_COLLECTION = 'locks'


class LockUnavailable(Exception):
    """The lock could not be acquired after every retry attempt"""

    def __init__(self, resource_id: str, attempts: int):
        super().__init__(f"Could not acquire lock {resource_id} after {attempts} attempts")
        self.resource_id = resource_id
        self.attempts = attempts


class AdvisoryLockService:
    """
    TTL advisory locks on top of the document store.

    Only the recorded owner may release a lock; anyone may take over a lock
    whose expiry has passed according to the store clock.
    """

    def __init__(self, store: DocumentStore, default_ttl: float = 10.0,
                 max_attempts: int = 5, initial_delay: float = 0.2):
        self.store = store
        self.default_ttl = default_ttl
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.logger = get_logger('lock_service')

    async def acquire(self, resource_id: str, owner_id: str, ttl: Optional[float] = None) -> bool:
        """
        Try once to take the lock.

        Args:
            resource_id: Name of the protected resource
            owner_id: Identifier of the would-be holder
            ttl: Seconds until the lock may be stolen

        Returns:
            True if the caller now holds the lock
        """
        ttl = self.default_ttl if ttl is None else ttl

        def _acquire(txn: DocumentTransaction) -> bool:
            expires_at = to_iso(txn.now + timedelta(seconds=ttl))
            if not txn.exists:
                txn.set({
                    'ownerId': owner_id,
                    'expiresAt': expires_at,
                    'createdAt': SERVER_TIMESTAMP,
                })
                self.logger.info(f"Lock acquired: {resource_id} by {owner_id}")
                return True

            current_expiry = parse_timestamp(txn.data.get('expiresAt'))
            current_owner = txn.data.get('ownerId')
            if current_expiry is None or current_expiry <= txn.now:
                txn.update({'ownerId': owner_id, 'expiresAt': expires_at})
                self.logger.info(f"Expired lock stolen: {resource_id} by {owner_id} (was {current_owner})")
                return True

            if current_owner == owner_id:
                txn.update({'expiresAt': expires_at})
                self.logger.debug(f"Lock renewed: {resource_id} by {owner_id}")
                return True

            self.logger.info(f"Failed to acquire lock (held by {current_owner}): {resource_id} by {owner_id}")
            return False

        try:
            return await self.store.run_transaction(LOCKS_COLLECTION, resource_id, _acquire)
        except DatabaseError as e:
            self.logger.error(f"Error acquiring lock {resource_id}: {e}")
            return False

    async def release(self, resource_id: str, owner_id: str) -> bool:
        """Delete the lock if held by owner_id; an absent lock counts as released"""

        def _release(txn: DocumentTransaction) -> bool:
            if not txn.exists:
                return True
            current_owner = txn.data.get('ownerId')
            if current_owner == owner_id:
                txn.delete()
                self.logger.info(f"Lock released: {resource_id} by {owner_id}")
                return True
            self.logger.info(
                f"Lock not released (owner mismatch): {resource_id} expected {owner_id} got {current_owner}"
            )
            return False

        try:
            return await self.store.run_transaction(LOCKS_COLLECTION, resource_id, _release)
        except DatabaseError as e:
            self.logger.error(f"Error releasing lock {resource_id}: {e}")
            return False

    async def _acquire_with_backoff(self, resource_id: str, owner_id: str, ttl: Optional[float],
                                    max_attempts: Optional[int], initial_delay: Optional[float]) -> bool:
        max_attempts = self.max_attempts if max_attempts is None else max_attempts
        delay = self.initial_delay if initial_delay is None else initial_delay

        for attempt in range(max_attempts):
            if await self.acquire(resource_id, owner_id, ttl=ttl):
                return True
            if attempt < max_attempts - 1:
                await asyncio.sleep(delay)
                delay *= 2

        self.logger.warning(f"Could not acquire lock after {max_attempts} attempts: {resource_id}")
        return False

    async def run_exclusive(self, resource_id: str, owner_id: str,
                            fn: Callable[[], Awaitable[T]], ttl: Optional[float] = None,
                            max_attempts: Optional[int] = None,
                            initial_delay: Optional[float] = None,
                            raise_on_unavailable: bool = False) -> Optional[T]:
        """
        Run fn while holding the lock, retrying acquisition with exponential backoff.

        Returns:
            fn's result, or None if the lock stayed unavailable (unless
            raise_on_unavailable, which raises LockUnavailable instead)
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        if not await self._acquire_with_backoff(resource_id, owner_id, ttl, attempts, initial_delay):
            if raise_on_unavailable:
                raise LockUnavailable(resource_id, attempts)
            return None

        try:
            return await fn()
        finally:
            await self.release(resource_id, owner_id)

    @asynccontextmanager
    async def hold(self, resource_id: str, owner_id: str, ttl: Optional[float] = None,
                   max_attempts: Optional[int] = None, initial_delay: Optional[float] = None):
        """Scoped acquisition; raises LockUnavailable when the lock cannot be taken"""
        attempts = self.max_attempts if max_attempts is None else max_attempts
        if not await self._acquire_with_backoff(resource_id, owner_id, ttl, attempts, initial_delay):
            raise LockUnavailable(resource_id, attempts)
        try:
            yield self
        finally:
            await self.release(resource_id, owner_id)

    async def get_holder(self, resource_id: str) -> Optional[Any]:
        """Current owner id of an unexpired lock, if any"""
        snapshot = await self.store.get(LOCKS_COLLECTION, resource_id)
        if not snapshot.exists:
            return None
        expires_at = parse_timestamp(snapshot.data.get('expiresAt'))
        if expires_at is None or expires_at <= self.store.clock():
            return None
        return snapshot.data.get('ownerId')
