"""One `update-redis` run: take the write lock, fetch Slack, publish into Redis.

Users and user groups are independent sub-pipelines. A failed fetch of one
kind is recorded as an error and nothing of that kind is written, while the
other kind is still published. Lock errors are not recovered here; they
propagate to the caller.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone

from cache import RedisCache, WriteSummary
from config import SyncConfig, get_logger
from lock import LOCK_LEASE_SECONDS, LockManager
from slack import SlackDirectory

logger = get_logger(service="synchronizer")


class SyncState(enum.Enum):
    START = "start"
    LOCK_CHECK = "lock_check"
    ABORTED = "aborted"
    FETCH_USERS = "fetch_users"
    FETCH_GROUPS = "fetch_groups"
    WRITE_USERS = "write_users"
    WRITE_GROUPS = "write_groups"
    DONE = "done"


@dataclass
class SyncResult:
    start_time: datetime
    end_time: datetime | None = None
    state: SyncState = SyncState.START

    lock_holder: str | None = None
    lock_overridden: bool = False

    # None means the fetch failed and nothing of that kind was written
    users_fetched: int | None = None
    user_groups_fetched: int | None = None
    users_written: WriteSummary | None = None
    user_groups_written: WriteSummary | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def aborted(self) -> bool:
        return self.state == SyncState.ABORTED

    @property
    def success(self) -> bool:
        return self.state in (SyncState.DONE, SyncState.ABORTED) and not self.errors

    def log_start(self) -> None:
        logger.info(
            "Sync operation started",
            extra={"operation": "sync_start", "start_time": self.start_time.isoformat()},
        )

    def log_completion(self) -> None:
        duration_ms = None
        if self.end_time:
            duration_ms = int((self.end_time - self.start_time).total_seconds() * 1000)

        logger.info(
            "Sync operation completed",
            extra={
                "operation": "sync_complete",
                "state": self.state.value,
                "duration_ms": duration_ms,
                "success": self.success,
                "users_fetched": self.users_fetched,
                "user_groups_fetched": self.user_groups_fetched,
                "users_keys_skipped": self.users_written.skipped if self.users_written else None,
                "user_groups_keys_skipped": self.user_groups_written.skipped if self.user_groups_written else None,
                "errors": self.errors,
            },
        )


class Synchronizer:
    def __init__(  # noqa: PLR0913
        self,
        cache: RedisCache,
        lock: LockManager,
        directory: SlackDirectory,
        server_id: str,
        lease_seconds: int = LOCK_LEASE_SECONDS,
        ignore_lock: bool = False,
    ) -> None:
        self.cache = cache
        self.lock = lock
        self.directory = directory
        self.server_id = server_id
        self.lease_seconds = lease_seconds
        self.ignore_lock = ignore_lock

    @classmethod
    def from_config(cls, cfg: SyncConfig) -> Synchronizer:
        cache = RedisCache.from_url(cfg.redis_address, cfg.entity_ttl_seconds)
        return cls(
            cache=cache,
            lock=LockManager(cache.client),
            directory=SlackDirectory.from_token(
                cfg.slack_bot_token,
                requests_per_minute=cfg.users_requests_per_minute,
                page_limit=cfg.users_page_limit,
            ),
            server_id=cfg.server_id,
            lease_seconds=cfg.lock_lease_seconds,
            ignore_lock=cfg.ignore_lock,
        )

    async def run(self) -> SyncResult:
        result = SyncResult(start_time=datetime.now(timezone.utc))
        result.log_start()

        result.state = SyncState.LOCK_CHECK
        logger.debug("Getting server lock")
        if not await self._check_lock(result):
            result.state = SyncState.ABORTED
            result.end_time = datetime.now(timezone.utc)
            result.log_completion()
            return result
        logger.debug("Server lock acquired")

        result.state = SyncState.FETCH_USERS
        users = await self.directory.list_all_users()
        if users is None:
            result.errors.append("Unable to fetch users from Slack")
        else:
            result.users_fetched = len(users)
            logger.info(f"Fetched {len(users)} users to save into redis")

        result.state = SyncState.FETCH_GROUPS
        groups = await self.directory.list_all_user_groups()
        if groups is None:
            result.errors.append("Unable to fetch user groups from Slack")
        else:
            result.user_groups_fetched = len(groups)
            logger.info(f"Fetched {len(groups)} user groups to save into redis")

        result.state = SyncState.WRITE_USERS
        if users is not None:
            result.users_written = await self.cache.insert_users(users)
            logger.info(f"{len(users)} users saved")

        result.state = SyncState.WRITE_GROUPS
        if groups is not None:
            result.user_groups_written = await self.cache.insert_user_groups(groups)
            logger.info(f"{len(groups)} user groups saved")

        result.state = SyncState.DONE
        result.end_time = datetime.now(timezone.utc)
        result.log_completion()
        return result

    async def _check_lock(self, result: SyncResult) -> bool:
        """Return True if this run may write. Records the competing holder on `result`."""
        if await self.lock.acquire(self.server_id, self.lease_seconds):
            return True

        holder = await self.lock.holder()
        if holder is None:
            # The lease ran out between SET NX and GET
            logger.debug("Lock expired while checking its owner, retrying")
            if await self.lock.acquire(self.server_id, self.lease_seconds):
                return True
            holder = await self.lock.holder()
        result.lock_holder = holder
        logger.debug(f"Current lock owner: {holder}")

        if holder == self.server_id and await self.lock.renew(self.server_id, self.lease_seconds):
            logger.info("Lock already held by this server, lease renewed")
            return True
        if self.ignore_lock:
            logger.warning(f"Ignoring existing lock held by {holder}. Be careful!")
            result.lock_overridden = True
            return True
        logger.info(f"Another server ({holder}) has the lock. Giving up")
        return False
