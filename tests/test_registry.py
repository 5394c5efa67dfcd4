"""Unit tests for CalendarRegistry: ranking, caching, and account resolution."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeCalendarClient, api_error, calendar_entry
from multi_calendar_mcp.errors import (
    AccountNotFoundError,
    InsufficientPermissionError,
    InvalidIdentifierError,
)
from multi_calendar_mcp.services.registry import (
    CalendarAccessEntry,
    CalendarRegistry,
    build_unified_calendar,
    permission_rank,
    select_accounts,
)

SHARED = "shared@group.calendar.google.com"
TEAM = "team@group.calendar.google.com"


def _by_id(calendars):
    return {cal.calendar_id: cal for cal in calendars}


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


def test_permission_rank_order():
    assert permission_rank("owner") > permission_rank("writer")
    assert permission_rank("writer") > permission_rank("reader")
    assert permission_rank("reader") > permission_rank("freeBusyReader")
    assert permission_rank("freeBusyReader") > permission_rank("something-new") == 0


async def test_preferred_account_is_highest_role(registry):
    accounts = {
        "a": FakeCalendarClient("a", [calendar_entry(SHARED, "reader")]),
        "b": FakeCalendarClient("b", [calendar_entry(SHARED, "owner")]),
        "c": FakeCalendarClient("c", [calendar_entry(SHARED, "writer")]),
    }

    calendars = await registry.get_unified_calendars(accounts)

    assert len(calendars) == 1
    shared = calendars[0]
    assert shared.preferred_account_id == "b"
    assert shared.preferred_entry.access_role == "owner"
    assert {e.account_id for e in shared.access_entries} == {"a", "b", "c"}


def test_ties_break_on_account_id():
    entries = [
        CalendarAccessEntry("zeta", "writer", False, "Shared"),
        CalendarAccessEntry("alpha", "writer", False, "Shared"),
    ]

    unified = build_unified_calendar(SHARED, entries)

    assert unified.preferred_account_id == "alpha"


def test_display_name_prefers_primary_override():
    entries = [
        CalendarAccessEntry("a", "owner", False, "Plain", "Preferred override"),
        CalendarAccessEntry("b", "reader", True, "Plain", "Primary override"),
    ]

    assert build_unified_calendar(SHARED, entries).display_name == "Primary override"


def test_display_name_falls_back_to_preferred_entry():
    with_override = [
        CalendarAccessEntry("a", "owner", False, "Plain", "Preferred override"),
        CalendarAccessEntry("b", "reader", True, "Other"),
    ]
    plain = [
        CalendarAccessEntry("a", "owner", False, "Plain"),
        CalendarAccessEntry("b", "reader", False, "Other", "Ignored"),
    ]

    assert build_unified_calendar(SHARED, with_override).display_name == "Preferred override"
    assert build_unified_calendar(SHARED, plain).display_name == "Plain"


async def test_listing_defaults_and_skips_entries_without_id(registry):
    accounts = {
        "a": FakeCalendarClient(
            "a", [calendar_entry("no-role@example.com", role=None), {"summary": "no id"}]
        )
    }

    calendars = await registry.get_unified_calendars(accounts)

    assert len(calendars) == 1
    entry = calendars[0].access_entries[0]
    assert entry.access_role == "reader"
    assert entry.display_name == "no-role@example.com"


async def test_shared_calendar_merged(registry, work_and_personal):
    calendars = _by_id(await registry.get_unified_calendars(work_and_personal))

    assert set(calendars) == {
        "work@example.com",
        "me@example.com",
        TEAM,
        "holidays@group.v.calendar.google.com",
    }
    team = calendars[TEAM]
    assert team.preferred_account_id == "work"
    assert team.display_name == "Team"
    assert team.to_dict()["accounts"][0] == {
        "account_id": "personal",
        "access_role": "reader",
        "primary": False,
        "name": "Team (shared)",
    }


async def test_failing_account_contributes_nothing(registry, work_and_personal):
    work_and_personal["broken"] = FakeCalendarClient("broken", list_error=api_error(500))

    calendars = _by_id(await registry.get_unified_calendars(work_and_personal))

    assert TEAM in calendars
    assert all(
        entry.account_id != "broken" for cal in calendars.values() for entry in cal.access_entries
    )


# ---------------------------------------------------------------------------
# Account selection
# ---------------------------------------------------------------------------


async def test_read_returns_preferred_account_any_role(registry):
    accounts = {"a": FakeCalendarClient("a", [calendar_entry(SHARED, "freeBusyReader")])}

    access = await registry.get_account_for_calendar(SHARED, accounts, "read")

    assert access is not None
    assert (access.account_id, access.access_role) == ("a", "freeBusyReader")


async def test_write_returns_preferred_writer(registry, work_and_personal):
    access = await registry.get_account_for_calendar(TEAM, work_and_personal, "write")

    assert access is not None
    assert (access.account_id, access.access_role) == ("work", "owner")


@pytest.mark.parametrize("role", ["reader", "freeBusyReader"])
async def test_write_refuses_read_only_preferred_account(registry, role):
    accounts = {
        "a": FakeCalendarClient("a", [calendar_entry(SHARED, role)]),
        "b": FakeCalendarClient("b", [calendar_entry(SHARED, "freeBusyReader")]),
    }

    assert await registry.get_account_for_calendar(SHARED, accounts, "write") is None


async def test_unknown_calendar(registry, work_and_personal):
    assert await registry.get_account_for_calendar("nope", work_and_personal) is None
    assert await registry.get_accounts_for_calendar("nope", work_and_personal) == []


async def test_get_accounts_for_calendar_returns_every_entry(registry, work_and_personal):
    entries = await registry.get_accounts_for_calendar(TEAM, work_and_personal)

    assert [(e.account_id, e.access_role) for e in entries] == [
        ("personal", "reader"),
        ("work", "owner"),
    ]


# ---------------------------------------------------------------------------
# Snapshot cache
# ---------------------------------------------------------------------------


async def test_snapshot_reused_within_ttl(registry, clock, work_and_personal):
    first = await registry.get_unified_calendars(work_and_personal)
    clock.advance(299)
    second = await registry.get_unified_calendars(work_and_personal)

    assert second is first
    assert work_and_personal["work"].list_calls == 1
    assert work_and_personal["personal"].list_calls == 1


async def test_snapshot_rebuilt_after_ttl(registry, clock, work_and_personal):
    await registry.get_unified_calendars(work_and_personal)
    clock.advance(301)
    await registry.get_unified_calendars(work_and_personal)

    assert work_and_personal["work"].list_calls == 2


async def test_clear_cache_forces_rebuild(registry, work_and_personal):
    await registry.get_unified_calendars(work_and_personal)
    registry.clear_cache()
    await registry.get_unified_calendars(work_and_personal)

    assert work_and_personal["personal"].list_calls == 2


async def test_cache_key_is_order_independent(registry, work_and_personal):
    reversed_accounts = dict(reversed(list(work_and_personal.items())))

    await registry.get_unified_calendars(work_and_personal)
    await registry.get_unified_calendars(reversed_accounts)

    assert CalendarRegistry.cache_key(reversed_accounts) == "personal,work"
    assert work_and_personal["work"].list_calls == 1


async def test_different_account_sets_cached_separately(registry, work_and_personal):
    await registry.get_unified_calendars(work_and_personal)
    await registry.get_unified_calendars({"work": work_and_personal["work"]})

    assert work_and_personal["work"].list_calls == 2
    assert work_and_personal["personal"].list_calls == 1


async def test_concurrent_misses_build_once(registry, work_and_personal):
    first, second = await asyncio.gather(
        registry.get_unified_calendars(work_and_personal),
        registry.get_unified_calendars(work_and_personal),
    )

    assert first is second
    assert work_and_personal["work"].list_calls == 1


async def test_oldest_snapshot_evicted(clock):
    registry = CalendarRegistry(max_snapshots=2, clock=clock)
    clients = {name: FakeCalendarClient(name, [calendar_entry(SHARED)]) for name in "abc"}

    for name in "abc":
        await registry.get_unified_calendars({name: clients[name]})
    await registry.get_unified_calendars({"a": clients["a"]})

    assert clients["a"].list_calls == 2
    assert clients["c"].list_calls == 1


# ---------------------------------------------------------------------------
# resolve_target
# ---------------------------------------------------------------------------


async def test_resolve_explicit_account(registry, work_and_personal):
    target = await registry.resolve_target("primary", work_and_personal, "personal")

    assert target.account_id == "personal"
    assert target.client is work_and_personal["personal"]
    assert target.calendar_id == "primary"


async def test_resolve_rejects_malformed_account(registry, work_and_personal):
    with pytest.raises(InvalidIdentifierError):
        await registry.resolve_target("primary", work_and_personal, "Not Valid!")


async def test_resolve_rejects_unknown_account(registry, work_and_personal):
    with pytest.raises(AccountNotFoundError, match="ghost"):
        await registry.resolve_target("primary", work_and_personal, "ghost")


async def test_resolve_explicit_read_only_account_cannot_write(registry, work_and_personal):
    with pytest.raises(InsufficientPermissionError):
        await registry.resolve_target(TEAM, work_and_personal, "personal", "write")

    target = await registry.resolve_target(TEAM, work_and_personal, "personal", "read")
    assert target.account_id == "personal"


async def test_resolve_auto_selects_writer(registry, work_and_personal):
    target = await registry.resolve_target(TEAM, work_and_personal)

    assert target.account_id == "work"


async def test_resolve_single_account_uses_it(registry, work_and_personal):
    only = {"work": work_and_personal["work"]}

    target = await registry.resolve_target("primary", only)

    assert target.account_id == "work"
    assert only["work"].list_calls == 0


async def test_resolve_primary_is_ambiguous_with_several_accounts(registry, work_and_personal):
    with pytest.raises(AccountNotFoundError, match="specify"):
        await registry.resolve_target("primary", work_and_personal)


async def test_resolve_read_only_calendar_for_write(registry, work_and_personal):
    with pytest.raises(InsufficientPermissionError):
        await registry.resolve_target(
            "holidays@group.v.calendar.google.com", work_and_personal, None, "write"
        )


async def test_resolve_unknown_calendar(registry, work_and_personal):
    with pytest.raises(AccountNotFoundError, match="not found"):
        await registry.resolve_target("missing@example.com", work_and_personal)


async def test_resolve_without_accounts(registry):
    with pytest.raises(AccountNotFoundError):
        await registry.resolve_target("primary", {})


async def test_find_calendar(registry, work_and_personal):
    team = await registry.find_calendar(TEAM, work_and_personal)

    assert team is not None
    assert team.display_name == "Team"
    assert await registry.find_calendar("missing@example.com", work_and_personal) is None


class GatedClient(FakeCalendarClient):
    """Blocks list_calendars until ``release`` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def list_calendars(self) -> list[dict]:
        self.list_calls += 1
        self.started.set()
        await self.release.wait()
        return list(self.calendars)


async def test_clear_during_build_discards_stale_snapshot(registry):
    client = GatedClient("a", [calendar_entry(SHARED)])
    accounts = {"a": client}

    first = asyncio.create_task(registry.get_unified_calendars(accounts))
    await client.started.wait()
    registry.clear_cache()
    waiting = asyncio.create_task(registry.get_unified_calendars(accounts))
    await asyncio.sleep(0)
    assert client.list_calls == 1

    client.release.set()
    await first
    await waiting

    # the waiter shared the build lock and rebuilt after the stale result
    assert client.list_calls == 2
    await registry.get_unified_calendars(accounts)
    assert client.list_calls == 2


# ---------------------------------------------------------------------------
# Account selection and calendar routing
# ---------------------------------------------------------------------------


def test_select_accounts_defaults_to_all(work_and_personal):
    assert set(select_accounts(work_and_personal)) == {"work", "personal"}
    assert set(select_accounts(work_and_personal, [])) == {"work", "personal"}


def test_select_accounts_accepts_id_or_list(work_and_personal):
    assert list(select_accounts(work_and_personal, "work")) == ["work"]
    assert list(select_accounts(work_and_personal, ["personal", "work", "personal"])) == [
        "personal",
        "work",
    ]


def test_select_accounts_rejects_unknown_and_malformed(work_and_personal):
    with pytest.raises(AccountNotFoundError, match="Available accounts: personal, work"):
        select_accounts(work_and_personal, ["work", "ghost"])
    with pytest.raises(InvalidIdentifierError):
        select_accounts(work_and_personal, "Not Valid")


async def test_route_calendars_expands_primary_per_account(registry, work_and_personal):
    routes, unresolved = await registry.route_calendars(
        ["primary", TEAM, "holidays@group.v.calendar.google.com", "missing@example.com"],
        work_and_personal,
    )

    assert routes == {
        "personal": ["primary", "holidays@group.v.calendar.google.com"],
        "work": ["primary", TEAM],
    }
    assert unresolved == ["missing@example.com"]


async def test_route_calendars_single_account_takes_everything(registry, work_and_personal):
    routes, unresolved = await registry.route_calendars(
        ["primary", "missing@example.com", "primary"], {"work": work_and_personal["work"]}
    )

    assert routes == {"work": ["primary", "missing@example.com"]}
    assert unresolved == []
    assert work_and_personal["work"].list_calls == 0
