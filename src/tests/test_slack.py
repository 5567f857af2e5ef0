import asyncio

import aiohttp
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from slack_sdk.errors import SlackApiError

from entities import User
from slack import Page, RateLimitedPager, SlackDirectory, is_human_and_active, is_retained_user_group, parse_user

from . import strategies
from .utils import fake_slack_client, instant_limiter, raw_group, raw_user, slack_response, users_pages


def run(coro):
    return asyncio.run(coro)


def new_directory(client=None) -> tuple[SlackDirectory, list[float]]:
    limiter, sleeps = instant_limiter()
    return SlackDirectory(client or fake_slack_client(), users_limiter=limiter), sleeps


class TestParseUser:
    def test_complete_record(self):
        parsed = parse_user(raw_user("U1", "Ann", "ann@example.com"))

        assert isinstance(parsed, User)
        assert (parsed.id, parsed.name, parsed.email) == ("U1", "Ann", "ann@example.com")

    @pytest.mark.parametrize(
        "record",
        [
            raw_user("", "Ann", "ann@example.com"),
            raw_user("U1", None, "ann@example.com"),
            raw_user("U1", "Ann", None),
            raw_user("U1", "", "ann@example.com"),
            {"id": "U1", "deleted": False, "is_bot": False},
        ],
    )
    def test_incomplete_record(self, record):
        with pytest.raises(ValueError):
            parse_user(record)


class TestFilters:
    @pytest.mark.parametrize(
        ("flags", "expected"),
        [
            ({"deleted": False, "is_bot": False}, True),
            ({"deleted": True, "is_bot": False}, False),
            ({"deleted": False, "is_bot": True}, False),
            ({}, False),
        ],
    )
    def test_is_human_and_active(self, flags, expected):
        record = {"id": "U1", "profile": {}} | flags

        assert is_human_and_active(record) is expected

    def test_retained_user_groups(self):
        assert is_retained_user_group(raw_group("S1", "gone", deleted=True))
        assert not is_retained_user_group(raw_group("S2", "live", deleted=False))
        assert not is_retained_user_group({"id": "S3", "name": "half", "deleted_by": "U0", "date_delete": None})


class TestRateLimitedPager:
    def test_follows_cursors_until_empty(self):
        cursors_seen = []
        pages = {None: Page(["a"], "c1"), "c1": Page(["b"], "c2"), "c2": Page(["c"], "")}

        async def fetch(cursor):
            cursors_seen.append(cursor)
            return pages[cursor]

        async def collect():
            limiter, _ = instant_limiter()
            return [page.records async for page in RateLimitedPager(fetch, limiter).pages()]

        assert run(collect()) == [["a"], ["b"], ["c"]]
        assert cursors_seen == [None, "c1", "c2"]

    def test_missing_cursor_ends_iteration(self):
        async def fetch(cursor):
            return Page([], None)

        async def collect():
            limiter, _ = instant_limiter()
            return [page async for page in RateLimitedPager(fetch, limiter).pages()]

        assert len(run(collect())) == 1

    def test_requests_are_paced(self):
        async def fetch(cursor):
            return Page([], str(int(cursor or 0) + 1) if int(cursor or 0) < 14 else "")

        async def collect():
            limiter, sleeps = instant_limiter(per_minute=10)
            pages = [page async for page in RateLimitedPager(fetch, limiter).pages()]
            return pages, sleeps

        pages, sleeps = run(collect())

        assert len(pages) == 15
        assert len(sleeps) == 5


class TestListAllUsers:
    def test_walks_all_pages(self, directory, slack_client):
        slack_client.users_list.side_effect = users_pages(
            [raw_user("U2", "Bob", "bob@example.com")],
            [raw_user("U1", "Ann", "ann@example.com")],
        )

        users = run(directory.list_all_users())

        assert [u.id for u in users] == ["U1", "U2"]
        calls = slack_client.users_list.await_args_list
        assert calls[0].kwargs == {"limit": 200}
        assert calls[1].kwargs == {"limit": 200, "cursor": "c1"}

    def test_page_without_cursor_metadata_is_last(self, directory, slack_client):
        slack_client.users_list.side_effect = [slack_response(members=[raw_user("U1")])]

        assert [u.id for u in run(directory.list_all_users())] == ["U1"]
        assert slack_client.users_list.await_count == 1

    def test_drops_deleted_bots_and_incomplete(self, directory, slack_client):
        slack_client.users_list.side_effect = users_pages(
            [
                raw_user("U1", "Ann", "ann@example.com"),
                raw_user("U2", "Bot", "bot@example.com", is_bot=True),
                raw_user("U3", "Gone", "gone@example.com", deleted=True),
                raw_user("U4", "No Mail", None),
                {"id": "U5", "profile": {"real_name": "No flags", "email": "x@example.com"}},
            ]
        )

        assert [u.id for u in run(directory.list_all_users())] == ["U1"]

    def test_duplicate_ids_across_pages_are_merged(self, directory, slack_client):
        slack_client.users_list.side_effect = users_pages(
            [raw_user("U1", "Ann", "ann@example.com")],
            [raw_user("U1", "Ann Again", "ann@example.com")],
        )

        users = run(directory.list_all_users())

        assert len(users) == 1
        assert users[0].name == "Ann"

    def test_failed_page_returns_none(self, directory, slack_client):
        slack_client.users_list.side_effect = [
            *users_pages([raw_user("U1")], [raw_user("U2")])[:1],
            aiohttp.ClientConnectionError("reset"),
        ]

        assert run(directory.list_all_users()) is None

    def test_not_ok_response_returns_none(self, directory, slack_client):
        slack_client.users_list.side_effect = [slack_response(ok=False, error="invalid_auth")]

        assert run(directory.list_all_users()) is None

    def test_api_error_returns_none(self, directory, slack_client):
        slack_client.users_list.side_effect = SlackApiError("ratelimited", response={"ok": False})

        assert run(directory.list_all_users()) is None

    def test_non_object_member_returns_none(self, directory, slack_client):
        slack_client.users_list.side_effect = users_pages([raw_user("U1"), None])

        assert run(directory.list_all_users()) is None

    def test_missing_members_returns_none(self, directory, slack_client):
        slack_client.users_list.side_effect = [slack_response(response_metadata={"next_cursor": ""})]

        assert run(directory.list_all_users()) is None

    def test_custom_page_limit(self, slack_client):
        limiter, _ = instant_limiter()
        directory = SlackDirectory(slack_client, users_limiter=limiter, page_limit=50)
        slack_client.users_list.side_effect = users_pages([])

        assert run(directory.list_all_users()) == []
        assert slack_client.users_list.await_args.kwargs == {"limit": 50}

    @settings(max_examples=50, deadline=None)
    @given(data=st.data(), records=strategies.unique_raw_users())
    def test_keeps_exactly_the_active_complete_users(self, data, records):
        pages = data.draw(strategies.split_into_pages(records))
        client = fake_slack_client()
        client.users_list.side_effect = users_pages(*pages)
        directory, _ = new_directory(client)

        users = run(directory.list_all_users())

        expected = sorted(
            r["id"]
            for r in records
            if r["id"]
            and r["deleted"] is False
            and r["is_bot"] is False
            and r["profile"]
            and r["profile"].get("real_name")
            and r["profile"].get("email")
        )
        assert [u.id for u in users] == expected
        assert client.users_list.await_count == len(pages)


class TestListAllUserGroups:
    def test_builds_retained_groups_with_members(self, directory, slack_client):
        slack_client.usergroups_list.return_value = slack_response(
            usergroups=[raw_group("S2", "ops"), raw_group("S1", "admins"), raw_group("S3", "live", deleted=False)]
        )
        slack_client.usergroups_users_list.side_effect = [
            slack_response(users=["U3"]),
            slack_response(users=["U2", "U1"]),
        ]

        groups = run(directory.list_all_user_groups())

        assert [(g.id, g.name, g.member_ids) for g in groups] == [("S1", "admins", ["U1", "U2"]), ("S2", "ops", ["U3"])]
        slack_client.usergroups_list.assert_awaited_once_with(
            include_disabled=False, include_count=False, include_users=True
        )
        assert [c.kwargs["usergroup"] for c in slack_client.usergroups_users_list.await_args_list] == ["S2", "S1"]

    def test_membership_failure_drops_only_that_group(self, directory, slack_client):
        slack_client.usergroups_list.return_value = slack_response(
            usergroups=[raw_group("S1", "admins"), raw_group("S2", "ops")]
        )
        slack_client.usergroups_users_list.side_effect = [
            aiohttp.ClientConnectionError("reset"),
            slack_response(users=["U1"]),
        ]

        groups = run(directory.list_all_user_groups())

        assert [g.id for g in groups] == ["S2"]

    def test_missing_member_list_keeps_an_empty_group(self, directory, slack_client):
        slack_client.usergroups_list.return_value = slack_response(usergroups=[raw_group("S1", "admins")])
        slack_client.usergroups_users_list.return_value = slack_response()

        groups = run(directory.list_all_user_groups())

        assert [(g.id, g.member_ids) for g in groups] == [("S1", [])]

    def test_malformed_member_list_drops_the_group(self, directory, slack_client):
        slack_client.usergroups_list.return_value = slack_response(usergroups=[raw_group("S1", "admins")])
        slack_client.usergroups_users_list.return_value = slack_response(users="U1")

        assert run(directory.list_all_user_groups()) == []

    def test_non_object_group_is_skipped(self, directory, slack_client):
        slack_client.usergroups_list.return_value = slack_response(usergroups=["S1", None, raw_group("S2", "ops")])
        slack_client.usergroups_users_list.return_value = slack_response(users=["U1"])

        groups = run(directory.list_all_user_groups())

        assert [g.id for g in groups] == ["S2"]
        assert slack_client.usergroups_users_list.await_count == 1

    def test_group_without_name_is_dropped(self, directory, slack_client):
        raw = raw_group("S1", "admins")
        raw["name"] = ""
        slack_client.usergroups_list.return_value = slack_response(usergroups=[raw])

        assert run(directory.list_all_user_groups()) == []
        slack_client.usergroups_users_list.assert_not_awaited()

    def test_listing_failure_returns_none(self, directory, slack_client):
        slack_client.usergroups_list.side_effect = aiohttp.ClientConnectionError("reset")

        assert run(directory.list_all_user_groups()) is None

    def test_missing_usergroups_returns_none(self, directory, slack_client):
        slack_client.usergroups_list.return_value = slack_response()

        assert run(directory.list_all_user_groups()) is None
