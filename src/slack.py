"""Slack directory ingestion: users and user groups.

Both fetches are all-or-nothing at the top level. A failed or malformed call
to `users.list` or `usergroups.list` yields `None` so that nothing is written
for that kind. Individual records are handled leniently: invalid users and
groups whose membership cannot be fetched are logged and dropped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import aiohttp
import jmespath as jp
from slack_sdk.errors import SlackClientError
from slack_sdk.http_retry.builtin_async_handlers import (
    AsyncConnectionErrorRetryHandler,
    AsyncRateLimitErrorRetryHandler,
    AsyncServerErrorRetryHandler,
)
from slack_sdk.web.async_client import AsyncWebClient

from config import get_logger
from entities import User, UserGroup
from errors import UpstreamFetchError
from ratelimiter import RateLimiter

logger = get_logger(service="slack")

USERS_PAGE_LIMIT = 200
USERS_REQUESTS_PER_MINUTE = 10

_TRANSPORT_ERRORS = (SlackClientError, aiohttp.ClientError, asyncio.TimeoutError)


@dataclass(frozen=True)
class Page:
    records: list[dict]
    next_cursor: Optional[str]

    @property
    def is_last(self) -> bool:
        return not self.next_cursor


class RateLimitedPager:
    """Walks a cursor-paginated listing, taking one rate limiter permit per request.

    The first request is sent without a cursor. Iteration stops after the page
    whose `next_cursor` is missing or empty. Errors raised by `fetch_page`
    propagate to the caller unchanged.
    """

    def __init__(self, fetch_page: Callable[[Optional[str]], Awaitable[Page]], limiter: RateLimiter) -> None:
        self._fetch_page = fetch_page
        self._limiter = limiter

    async def pages(self) -> AsyncIterator[Page]:
        cursor: Optional[str] = None
        page_number = 0
        while True:
            await self._limiter.acquire()
            logger.info(f"Fetching page number {page_number}")
            page = await self._fetch_page(cursor)
            yield page
            page_number += 1
            if page.is_last:
                return
            cursor = page.next_cursor


def parse_user(raw: dict) -> User:
    """Build a User from a `users.list` member, raising ValueError if a required field is missing."""
    user_id = jp.search("id", raw)
    if not user_id:
        raise ValueError("no user id")
    profile = jp.search("profile", raw)
    if not profile:
        raise ValueError(f"{user_id}: no profile")
    name = jp.search("real_name", profile)
    if not name:
        raise ValueError(f"{user_id}: no name")
    email = jp.search("email", profile)
    if not email:
        raise ValueError(f"{user_id} - {name}: no email")
    return User(id=user_id, name=name, email=email)


def is_human_and_active(raw: dict) -> bool:
    # Both flags must be present and false; records lacking either are dropped.
    return raw.get("deleted") is False and raw.get("is_bot") is False


def is_retained_user_group(raw: dict) -> bool:
    # NOTE: keeps only groups that carry both a deleting user and a deletion date,
    # i.e. deleted groups. Likely inverted, kept as-is until confirmed (see DESIGN.md).
    return raw.get("deleted_by") is not None and raw.get("date_delete") is not None


class SlackDirectory:
    def __init__(
        self,
        client: AsyncWebClient,
        users_limiter: Optional[RateLimiter] = None,
        page_limit: int = USERS_PAGE_LIMIT,
    ) -> None:
        self._client = client
        self._users_limiter = users_limiter or RateLimiter(per_minute=USERS_REQUESTS_PER_MINUTE)
        self._page_limit = page_limit

    @classmethod
    def from_token(
        cls,
        token: str,
        requests_per_minute: int = USERS_REQUESTS_PER_MINUTE,
        page_limit: int = USERS_PAGE_LIMIT,
    ) -> SlackDirectory:
        client = AsyncWebClient(
            token=token,
            retry_handlers=[
                AsyncConnectionErrorRetryHandler(),
                AsyncRateLimitErrorRetryHandler(max_retry_count=2),
                AsyncServerErrorRetryHandler(),
            ],
        )
        return cls(client, RateLimiter(per_minute=requests_per_minute), page_limit)

    async def _call(self, method: str, **kwargs: Any) -> dict:
        try:
            response = await getattr(self._client, method)(**kwargs)
        except _TRANSPORT_ERRORS as e:
            raise UpstreamFetchError(method, str(e)) from e
        data = response.data
        if not isinstance(data, dict):
            raise UpstreamFetchError(method, f"malformed response: {data!r}")
        if not data.get("ok", False):
            raise UpstreamFetchError(method, data.get("error") or "response not ok")
        return data

    async def _fetch_users_page(self, cursor: Optional[str]) -> Page:
        kwargs: dict[str, Any] = {"limit": self._page_limit}
        if cursor:
            kwargs["cursor"] = cursor
        data = await self._call("users_list", **kwargs)
        members = data.get("members")
        if not isinstance(members, list):
            raise UpstreamFetchError("users_list", "Slack responded with no members")
        if not all(isinstance(m, dict) for m in members):
            raise UpstreamFetchError("users_list", "malformed member record")
        logger.debug("response_metadata", extra={"response_metadata": data.get("response_metadata")})
        return Page(records=members, next_cursor=jp.search("response_metadata.next_cursor", data))

    async def list_all_users(self) -> Optional[list[User]]:
        """Fetch every active, human user. Returns None if any page could not be fetched."""
        logger.info("Fetching all users from Slack")
        all_users: set[User] = set()
        pager = RateLimitedPager(self._fetch_users_page, self._users_limiter)
        page_number = 0
        try:
            async for page in pager.pages():
                page_users = []
                for raw in page.records:
                    if not is_human_and_active(raw):
                        continue
                    logger.debug("Raw user data", extra={"raw_user": raw})
                    try:
                        page_users.append(parse_user(raw))
                    except ValueError as e:
                        logger.warning(f"Skipping invalid user: {e}")
                logger.info(f"Fetched {len(page_users)} users from page {page_number}")
                # set.update keeps the first occurrence of an id
                all_users.update(page_users)
                page_number += 1
        except UpstreamFetchError as e:
            logger.error(f"Unable to fetch data from Slack. Error: {e}")
            return None
        return sorted(all_users)

    async def list_all_user_groups(self) -> Optional[list[UserGroup]]:
        """Fetch user groups with their members. Returns None if the group listing failed."""
        logger.info("Fetching all usergroups")
        try:
            data = await self._call("usergroups_list", include_disabled=False, include_count=False, include_users=True)
        except UpstreamFetchError as e:
            logger.error(f"Unable to fetch data from Slack. Error: {e}")
            return None

        raw_groups = data.get("usergroups")
        if not isinstance(raw_groups, list):
            logger.warning("Slack responded with no usergroups.")
            return None

        groups: set[UserGroup] = set()
        for raw in raw_groups:
            if not isinstance(raw, dict):
                logger.warning(f"Skipping malformed usergroup: {raw!r}")
                continue
            if not is_retained_user_group(raw):
                continue
            try:
                groups.add(await self.build_user_group(raw))
            except (ValueError, UpstreamFetchError) as e:
                logger.warning(f"Unable to build usergroup: {e}")
        return sorted(groups)

    async def build_user_group(self, raw: dict) -> UserGroup:
        """Fetch the members of `raw` and build the group. A response without a member list yields a group with no members."""
        group_id = raw.get("id")
        if not group_id:
            raise ValueError("no group id")
        name = raw.get("name")
        if not name:
            raise ValueError(f"No name for group {group_id}")

        data = await self._call("usergroups_users_list", usergroup=group_id, include_disabled=False)
        member_ids = data.get("users") or []
        if not isinstance(member_ids, list):
            raise UpstreamFetchError("usergroups_users_list", f"malformed member list for group {group_id}")
        return UserGroup(id=group_id, name=name, users=[m for m in member_ids if m])
