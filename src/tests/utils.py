import fnmatch
from typing import Optional
from unittest.mock import AsyncMock, Mock

from redis.exceptions import RedisError

import lock as lock_module
from ratelimiter import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis, limited to the commands the cache and the lock send.

    Expiry follows `clock`. `fail_on(command, key)` makes a command raise for one key
    (or for every key with "*").
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.data: dict[str, tuple[object, Optional[float]]] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.closed = False

    def fail_on(self, command: str, key: str = "*", exc: Optional[Exception] = None) -> None:
        self.failures[(command, key)] = exc or RedisError("injected failure")

    def _check(self, command: str, key: str) -> None:
        for candidate in (key, "*"):
            exc = self.failures.get((command, candidate))
            if exc is not None:
                raise exc

    def _alive(self, key: str):
        item = self.data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self.clock() >= expires_at:
            del self.data[key]
            return None
        return value

    def ttl(self, key: str) -> Optional[float]:
        if self._alive(key) is None:
            return None
        expires_at = self.data[key][1]
        return None if expires_at is None else expires_at - self.clock()

    def live_keys(self) -> set[str]:
        return {key for key in list(self.data) if self._alive(key) is not None}

    async def get(self, key: str):
        self._check("get", key)
        return self._alive(key)

    async def set(self, key: str, value, ex: Optional[int] = None, nx: bool = False):
        self._check("set", key)
        if nx and self._alive(key) is not None:
            return None
        self.data[key] = (value, self.clock() + ex if ex else None)
        return True

    async def expire(self, key: str, seconds: int):
        self._check("expire", key)
        value = self._alive(key)
        if value is None:
            return False
        self.data[key] = (value, self.clock() + seconds)
        return True

    async def eval(self, script: str, numkeys: int, *args):
        key, holder, lease = args
        self._check("eval", key)
        assert script == lock_module.RENEW_SCRIPT
        if self._alive(key) != holder:
            return 0
        self.data[key] = (holder, self.clock() + int(lease))
        return 1

    async def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None):
        self._check("scan", match or "*")
        for key in list(self.data):
            if self._alive(key) is not None and fnmatch.fnmatchcase(key, match or "*"):
                yield key

    async def mget(self, keys):
        self._check("mget", "*")
        return [self._alive(key) for key in keys]

    async def aclose(self) -> None:
        self.closed = True


def instant_limiter(per_minute: int = 10) -> tuple[RateLimiter, list[float]]:
    """A limiter whose sleeps advance a fake clock instead of waiting. Returns the limiter and its recorded sleeps."""
    clock = FakeClock()
    sleeps: list[float] = []

    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.advance(seconds)

    return RateLimiter(per_minute=per_minute, clock=clock, sleep=sleep), sleeps


def slack_response(**data) -> Mock:
    return Mock(data={"ok": True} | data)


def raw_user(user_id: str, name: Optional[str] = "Name", email: Optional[str] = "user@example.com", **flags) -> dict:
    profile = {}
    if name is not None:
        profile["real_name"] = name
    if email is not None:
        profile["email"] = email
    return {"id": user_id, "deleted": False, "is_bot": False, "profile": profile} | flags


def raw_group(group_id: str, name: str, deleted: bool = True) -> dict:
    if deleted:
        return {"id": group_id, "name": name, "deleted_by": "U000ADMIN", "date_delete": 1_600_000_000}
    return {"id": group_id, "name": name, "deleted_by": None, "date_delete": None}


def users_pages(*pages: list[dict], cursors: Optional[list[Optional[str]]] = None) -> list[Mock]:
    """Slack users.list responses, chaining cursors c1, c2, ... and ending with an empty cursor."""
    if cursors is None:
        cursors = [f"c{i + 1}" for i in range(len(pages) - 1)] + [""]
    return [
        slack_response(members=members, response_metadata={"next_cursor": cursor})
        for members, cursor in zip(pages, cursors)
    ]


def fake_slack_client() -> Mock:
    client = Mock()
    client.users_list = AsyncMock()
    client.usergroups_list = AsyncMock()
    client.usergroups_users_list = AsyncMock()
    return client
