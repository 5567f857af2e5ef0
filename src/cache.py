"""Redis-backed store for Slack users and user groups.

Every entity is written under two independent keys holding the same JSON
document and TTL:

    user:id:<id>                 user:email:<email>
    user_group:id:<id>           user_group:name:<name>

Nothing ties the two keys together. If one of the two writes fails, the
indexes disagree until the next successful sync (or until TTL expiry);
`RedisCache.reconcile` reports such gaps.

Reads return a three-way `CacheResponse`: `Found`, `Missing` (Redis had no
value) or `Failed` (connection, decode or deserialization error).
"""

from __future__ import annotations

import contextlib
import enum
from dataclasses import dataclass, field
from typing import Generic, Iterable, Iterator, Optional, Type, TypeVar, Union

import pydantic
import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from config import get_logger
from entities import User, UserGroup
from entities.model import OrderedById
from errors import (
    CacheConnectError,
    CacheDeserializeError,
    CacheError,
    CacheReadError,
    CacheValueDecodeError,
    CacheWriteError,
)

logger = get_logger(service="cache")

T = TypeVar("T")

CACHE_POOL_MAX_OPEN = 16
CACHE_POOL_TIMEOUT_SECONDS = 1
CACHE_POOL_HEALTH_CHECK_SECONDS = 60
ENTITY_TTL_SECONDS = 12 * 60 * 60
SCAN_BATCH_SIZE = 500


class EntityKind(enum.Enum):
    USER = ("user", "email", User)
    USER_GROUP = ("user_group", "name", UserGroup)

    def __init__(self, prefix: str, secondary_field: str, model: Type[OrderedById]) -> None:
        self.prefix = prefix
        self.secondary_field = secondary_field
        self.model = model

    def primary_key(self, entity_id: str) -> str:
        return f"{self.prefix}:id:{entity_id}"

    def secondary_key(self, value: str) -> str:
        return f"{self.prefix}:{self.secondary_field}:{value}"

    @property
    def primary_pattern(self) -> str:
        return self.primary_key("*")

    @property
    def secondary_pattern(self) -> str:
        return self.secondary_key("*")

    def keys_for(self, entity: OrderedById) -> tuple[str, str]:
        return self.primary_key(entity.id), self.secondary_key(getattr(entity, self.secondary_field))


@dataclass(frozen=True)
class Found(Generic[T]):
    value: T


@dataclass(frozen=True)
class Missing:
    pass


@dataclass(frozen=True)
class Failed:
    error: CacheError


CacheResponse = Union[Found[T], Missing, Failed]


@dataclass(frozen=True)
class WriteFailure:
    key: str
    reason: str


@dataclass
class WriteSummary:
    """Outcome of a batch write. Every entity accounts for two attempted keys."""

    kind: EntityKind
    entities: int = 0
    attempted: int = 0
    written: int = 0
    failures: list[WriteFailure] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return len(self.failures)

    @property
    def complete(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class IndexReport:
    """Entity ids reachable through each of the two indexes of one kind."""

    kind: EntityKind
    primary_ids: frozenset[str]
    secondary_ids: frozenset[str]

    @property
    def missing_from_secondary(self) -> frozenset[str]:
        return self.primary_ids - self.secondary_ids

    @property
    def missing_from_primary(self) -> frozenset[str]:
        return self.secondary_ids - self.primary_ids

    @property
    def consistent(self) -> bool:
        return self.primary_ids == self.secondary_ids


@contextlib.contextmanager
def translate_errors(key: str, error_cls: Type[CacheError]) -> Iterator[None]:
    """Re-raise redis-py errors as the matching CacheError. Connection and pool timeouts become CacheConnectError."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as e:
        raise CacheConnectError(key, e) from e
    except RedisError as e:
        raise error_cls(key, e) from e


def decode_value(key: str, value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CacheValueDecodeError(key, e) from e
    raise CacheValueDecodeError(key, TypeError(f"unexpected {type(value).__name__} value"))


def create_client(address: str) -> redis.Redis:
    """Redis client over a bounded pool: callers wait at most CACHE_POOL_TIMEOUT_SECONDS for a connection."""
    try:
        pool = redis.BlockingConnectionPool.from_url(
            address,
            max_connections=CACHE_POOL_MAX_OPEN,
            timeout=CACHE_POOL_TIMEOUT_SECONDS,
            health_check_interval=CACHE_POOL_HEALTH_CHECK_SECONDS,
        )
    except ValueError as e:
        raise CacheConnectError(address, e) from e
    return redis.Redis(connection_pool=pool)


class RedisCache:
    def __init__(self, client: redis.Redis, entity_ttl_seconds: int = ENTITY_TTL_SECONDS) -> None:
        self._redis = client
        self.entity_ttl_seconds = entity_ttl_seconds

    @classmethod
    def from_url(cls, address: str, entity_ttl_seconds: int = ENTITY_TTL_SECONDS) -> RedisCache:
        return cls(create_client(address), entity_ttl_seconds)

    @property
    def client(self) -> redis.Redis:
        return self._redis

    async def close(self) -> None:
        await self._redis.aclose()

    # Reads

    async def get_user_by_id(self, user_id: str) -> CacheResponse[User]:
        return await self.get_by_id(EntityKind.USER, user_id)

    async def get_user_by_email(self, email: str) -> CacheResponse[User]:
        return await self.get_by_secondary(EntityKind.USER, email)

    async def get_user_group_by_id(self, group_id: str) -> CacheResponse[UserGroup]:
        return await self.get_by_id(EntityKind.USER_GROUP, group_id)

    async def get_user_group_by_name(self, name: str) -> CacheResponse[UserGroup]:
        return await self.get_by_secondary(EntityKind.USER_GROUP, name)

    async def get_all_users(self) -> CacheResponse[list[User]]:
        return await self.list_all(EntityKind.USER)

    async def get_all_user_groups(self) -> CacheResponse[list[UserGroup]]:
        return await self.list_all(EntityKind.USER_GROUP)

    async def get_by_id(self, kind: EntityKind, entity_id: str) -> CacheResponse:
        return await self._get_entity(kind, kind.primary_key(entity_id))

    async def get_by_secondary(self, kind: EntityKind, value: str) -> CacheResponse:
        return await self._get_entity(kind, kind.secondary_key(value))

    async def list_all(self, kind: EntityKind) -> CacheResponse[list]:
        """Scan the primary index of `kind` and fetch every value in one MGET.

        Keys that expire between the scan and the MGET are silently absent from
        the result; values that cannot be decoded or parsed are logged and skipped.
        """
        try:
            return Found(await self._load_all(kind, kind.primary_pattern))
        except CacheError as e:
            logger.warning(f"Unable to list {kind.prefix} entries: {e}")
            return Failed(e)

    async def _get_entity(self, kind: EntityKind, key: str) -> CacheResponse:
        try:
            value = await self._get_str(key)
            if value is None:
                return Missing()
            return Found(self._deserialize(kind, key, value))
        except CacheError as e:
            logger.warning(f"Lookup of {key} failed: {e}")
            return Failed(e)

    async def _load_all(self, kind: EntityKind, pattern: str) -> list:
        keys = sorted(await self._scan_keys(pattern))
        logger.debug(f"Number of elements to search over: {len(keys)}")
        if not keys:
            return []

        with translate_errors(pattern, CacheReadError):
            values = await self._redis.mget(keys)
        if not isinstance(values, list):
            raise CacheReadError(pattern, TypeError("MGET did not return an array"))

        results = []
        for key, raw in zip(keys, values):
            try:
                value = decode_value(key, raw)
                if value is None:
                    continue
                results.append(self._deserialize(kind, key, value))
            except (CacheValueDecodeError, CacheDeserializeError) as e:
                logger.warning(f"Skipping unreadable entry: {e}")
        return results

    async def _scan_keys(self, pattern: str) -> set[str]:
        # SCAN may return a key more than once while the keyspace changes
        keys: set[str] = set()
        with translate_errors(pattern, CacheReadError):
            async for raw_key in self._redis.scan_iter(match=pattern, count=SCAN_BATCH_SIZE):
                try:
                    key = decode_value(pattern, raw_key)
                except CacheValueDecodeError as e:
                    logger.warning(f"Skipping undecodable key: {e}")
                    continue
                if key is not None:
                    keys.add(key)
        return keys

    async def _get_str(self, key: str) -> Optional[str]:
        with translate_errors(key, CacheReadError):
            value = await self._redis.get(key)
        logger.debug(f"GET {key}", extra={"found": value is not None})
        return decode_value(key, value)

    @staticmethod
    def _deserialize(kind: EntityKind, key: str, value: str) -> OrderedById:
        try:
            return kind.model.model_validate_json(value)
        except pydantic.ValidationError as e:
            raise CacheDeserializeError(key, e) from e

    # Writes

    async def insert_users(self, users: Iterable[User]) -> WriteSummary:
        return await self.put_entities(EntityKind.USER, users)

    async def insert_user_groups(self, groups: Iterable[UserGroup]) -> WriteSummary:
        return await self.put_entities(EntityKind.USER_GROUP, groups)

    async def put_entities(self, kind: EntityKind, entities: Iterable[OrderedById]) -> WriteSummary:
        """Write both keys of every entity. A failed key is recorded and the batch carries on."""
        summary = WriteSummary(kind=kind)
        for entity in entities:
            summary.entities += 1
            value = entity.to_json()
            for key in kind.keys_for(entity):
                summary.attempted += 1
                try:
                    await self._set_str(key, value, self.entity_ttl_seconds)
                    summary.written += 1
                except CacheError as e:
                    logger.warning(f"Unable to insert {entity.id}. Error: {e}")
                    summary.failures.append(WriteFailure(key=key, reason=str(e)))
        logger.info(
            f"Wrote {summary.written}/{summary.attempted} {kind.prefix} keys",
            extra={"entities": summary.entities, "skipped": summary.skipped},
        )
        return summary

    async def _set_str(self, key: str, value: str, ttl_seconds: int) -> None:
        with translate_errors(key, CacheWriteError):
            await self._redis.set(key, value, ex=ttl_seconds)
        logger.debug(f"SET {key}", extra={"ttl_seconds": ttl_seconds})

    # Diagnostics

    async def reconcile(self, kind: EntityKind) -> IndexReport:
        """Compare the entity ids reachable by id with those reachable by the secondary key."""
        primary = await self._load_all(kind, kind.primary_pattern)
        secondary = await self._load_all(kind, kind.secondary_pattern)
        report = IndexReport(
            kind=kind,
            primary_ids=frozenset(e.id for e in primary),
            secondary_ids=frozenset(e.id for e in secondary),
        )
        if not report.consistent:
            logger.warning(
                f"{kind.prefix} indexes disagree",
                extra={
                    "missing_from_secondary": sorted(report.missing_from_secondary),
                    "missing_from_primary": sorted(report.missing_from_primary),
                },
            )
        return report
