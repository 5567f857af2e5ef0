"""Write lock shared by all synchronizer instances.

The lock is the single Redis key `write_lock` holding the id of its holder,
created with `SET NX EX` so that two instances racing for an empty key cannot
both win. The lease bounds how long a crashed holder blocks everybody else;
there is no explicit release.
"""

from __future__ import annotations

import redis.asyncio as redis

from cache import decode_value, translate_errors
from config import get_logger
from errors import CacheExpireError, CacheReadError, CacheWriteError

logger = get_logger(service="lock")

LOCK_KEY = "write_lock"
LOCK_LEASE_SECONDS = 2 * 60

# EXPIRE only if the caller still holds the lock, as one atomic step
RENEW_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("EXPIRE", KEYS[1], ARGV[2])
else
  return 0
end
"""


class LockManager:
    def __init__(self, client: redis.Redis, key: str = LOCK_KEY) -> None:
        self._redis = client
        self.key = key

    async def acquire(self, holder_id: str, lease_seconds: int = LOCK_LEASE_SECONDS) -> bool:
        """Create the lock for `holder_id` if nobody holds it.

        Returns True only when this call created the key. An existing key, even one
        held by `holder_id` itself, is left untouched and False is returned.
        """
        if lease_seconds <= 0:
            raise ValueError(f"lease_seconds must be positive, got {lease_seconds}")
        with translate_errors(self.key, CacheWriteError):
            created = await self._redis.set(self.key, holder_id, nx=True, ex=lease_seconds)
        logger.debug(f"Lock acquire by {holder_id}", extra={"acquired": bool(created)})
        return bool(created)

    async def holder(self) -> str | None:
        with translate_errors(self.key, CacheReadError):
            value = await self._redis.get(self.key)
        return decode_value(self.key, value)

    async def renew(self, holder_id: str, lease_seconds: int = LOCK_LEASE_SECONDS) -> bool:
        """Reset the lease if `holder_id` still holds the lock. Never touches a competitor's lease."""
        with translate_errors(self.key, CacheExpireError):
            renewed = await self._redis.eval(RENEW_SCRIPT, 1, self.key, holder_id, lease_seconds)
        logger.debug(f"Lock renew by {holder_id}", extra={"renewed": bool(renewed)})
        return bool(renewed)
