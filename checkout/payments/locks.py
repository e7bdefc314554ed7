"""
Distributed lock on Upstash Redis.

Set-if-absent with a TTL; release deletes the key only if it still holds the
owner's token, so a holder whose lock expired and was taken by another
instance never frees the new holder's lock.
"""
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from checkout.logging import get_logger

logger = get_logger(__name__)

# Delete the key only if it still holds our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class DistributedLock:
    """
    One lock key, one holder at a time across all instances.

    Usage:
        lock = DistributedLock(redis, "qpay:reconcile:lock", ttl_seconds=55)
        if await lock.acquire():
            try:
                ...
            finally:
                await lock.release()
    """

    def __init__(self, redis, key: str, ttl_seconds: int):
        self.redis = redis
        self.key = key
        self.ttl_seconds = ttl_seconds
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._token is not None

    async def acquire(self) -> bool:
        """Try once. Returns False if another holder has it or Redis is unreachable."""
        token = secrets.token_hex(16)
        try:
            result = await self.redis.set(self.key, token, ex=self.ttl_seconds, nx=True)
        except Exception as e:
            logger.error("Lock %s: acquire failed: %s", self.key, e)
            return False

        if not result:
            return False

        self._token = token
        return True

    async def release(self) -> bool:
        """Release if we still own the key. Returns True when the key was deleted."""
        if self._token is None:
            return False

        token, self._token = self._token, None
        try:
            deleted = await self.redis.eval(RELEASE_SCRIPT, keys=[self.key], args=[token])
        except Exception as e:
            # TTL frees it eventually
            logger.warning("Lock %s: release failed: %s", self.key, e)
            return False

        if not deleted:
            logger.warning("Lock %s expired before release", self.key)
        return bool(deleted)


@asynccontextmanager
async def hold_lock(redis, key: str, ttl_seconds: int) -> AsyncIterator[bool]:
    """
    Context-manager form. Yields whether the lock was acquired; releases on exit.

    Usage:
        async with hold_lock(redis, key, 55) as acquired:
            if not acquired:
                return
    """
    lock = DistributedLock(redis, key, ttl_seconds)
    acquired = await lock.acquire()
    try:
        yield acquired
    finally:
        if acquired:
            await lock.release()
