import pytest

from cache import RedisCache
from lock import LockManager
from slack import SlackDirectory
from .utils import FakeClock, FakeRedis, fake_slack_client, instant_limiter


def pytest_sessionstart(session):  # noqa: ANN201, ARG001, ANN001
    import os

    mock_env = {
        "server_id": "test-server",
        "slack_bot_token": "xoxb-test",
        "redis_address": "redis://127.0.0.1:6379/0",
        "log_level": "DEBUG",
    }
    os.environ |= mock_env


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def cache(fake_redis):
    return RedisCache(fake_redis, entity_ttl_seconds=12 * 60 * 60)


@pytest.fixture
def lock(fake_redis):
    return LockManager(fake_redis)


@pytest.fixture
def slack_client():
    return fake_slack_client()


@pytest.fixture
def directory(slack_client):
    limiter, _ = instant_limiter()
    return SlackDirectory(slack_client, users_limiter=limiter)
