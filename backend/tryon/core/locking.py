"""Distributed per-account locking using Redis.

Every balance mutation for an account runs inside ``AccountLock.hold``.
Debits and credits on the same account therefore never interleave, even
across worker processes. Locks carry a TTL so a crashed holder cannot
wedge an account forever.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import redis.asyncio as redis
import structlog
from redis.exceptions import WatchError

from tryon.core.exceptions import AccountLockTimeout

logger = structlog.get_logger(__name__)


class AccountLock:
    """Manages per-account mutual exclusion with Redis ``SET NX EX``."""

    LOCK_PREFIX = "tryon:lock:account:"
    DEFAULT_TTL = 30

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl: int | None = None,
        wait_timeout: float = 10.0,
        poll_interval: float = 0.05,
    ):
        self.redis = redis_client
        self.ttl = ttl or self.DEFAULT_TTL
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval

    def _lock_key(self, account_id: str) -> str:
        return f"{self.LOCK_PREFIX}{account_id}"

    async def acquire(self, account_id: str, owner: str) -> bool:
        """Attempt to take the lock once.

        Args:
            account_id: Account whose balance is about to change
            owner: Unique token identifying this holder

        Returns:
            True if acquired, False if another holder has it
        """
        result = await self.redis.set(self._lock_key(account_id), owner, nx=True, ex=self.ttl)
        return bool(result)

    async def release(self, account_id: str, owner: str) -> bool:
        """Release the lock if ``owner`` still holds it.

        The owner check and the delete run under WATCH/MULTI, so a lock that
        expired and was re-acquired in between is left alone.

        Returns:
            True if released, False if the lock expired or belongs to someone else
        """
        key = self._lock_key(account_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.get(key) != owner:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def is_locked(self, account_id: str) -> bool:
        return bool(await self.redis.exists(self._lock_key(account_id)))

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncGenerator[str, None]:
        """Wait for the account lock and hold it for the block's duration.

        Raises:
            AccountLockTimeout: if the lock is not free within ``wait_timeout``

        Example:
            async with account_lock.hold(account_id):
                ...  # read-modify-write the balance
        """
        owner = uuid.uuid4().hex
        deadline = time.monotonic() + self.wait_timeout
        while not await self.acquire(account_id, owner):
            if time.monotonic() >= deadline:
                logger.warning("account_lock_timeout", account_id=account_id, waited_seconds=self.wait_timeout)
                raise AccountLockTimeout(account_id, self.wait_timeout)
            await asyncio.sleep(self.poll_interval)

        try:
            yield owner
        finally:
            released = await self.release(account_id, owner)
            if not released:
                # TTL elapsed mid-operation; the DB row lock still guarded the write
                logger.warning("account_lock_expired_before_release", account_id=account_id, ttl=self.ttl)
