"""
Calendar registry: one deduplicated view of every calendar across accounts.

Calendars are often visible from several of the user's accounts (a shared
team calendar seen from both a work and a personal identity). The registry
merges those into a single UnifiedCalendar per calendar id, ranks each
account's access, and picks the account to use for reads and writes.
"""

import asyncio
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping, Optional, Sequence, Union

from ..errors import AccountNotFoundError, InsufficientPermissionError, InvalidIdentifierError

logger = logging.getLogger(__name__)

Operation = Literal["read", "write"]

PERMISSION_RANK = {
    "owner": 4,
    "writer": 3,
    "reader": 2,
    "freeBusyReader": 1,
}
WRITE_ROLES = frozenset({"owner", "writer"})

DEFAULT_CACHE_TTL = 5 * 60
DEFAULT_MAX_SNAPSHOTS = 32

ACCOUNT_ID_RE = re.compile(r"^[a-z0-9_-]{1,64}$")


def permission_rank(role: str) -> int:
    return PERMISSION_RANK.get(role, 0)


def validate_account_id(account_id: str) -> str:
    if not isinstance(account_id, str) or not ACCOUNT_ID_RE.match(account_id):
        raise InvalidIdentifierError(
            f"Invalid account id {account_id!r}: use 1-64 lowercase letters, "
            "digits, dashes or underscores."
        )
    return account_id


def select_accounts(
    accounts: Mapping[str, Any], account: Union[str, Sequence[str], None] = None
) -> dict[str, Any]:
    """
    Narrow ``accounts`` to the requested account id or ids.

    ``None`` or an empty list selects every connected account.

    Raises:
        InvalidIdentifierError: A requested id is malformed.
        AccountNotFoundError: A requested account is not connected.
    """
    if account is None:
        return dict(accounts)
    requested = [account] if isinstance(account, str) else list(account)
    if not requested:
        return dict(accounts)
    for account_id in requested:
        validate_account_id(account_id)
        if account_id not in accounts:
            available = ", ".join(sorted(accounts)) or "none"
            raise AccountNotFoundError(
                f"Account {account_id!r} is not connected. Available accounts: {available}."
            )
    return {account_id: accounts[account_id] for account_id in dict.fromkeys(requested)}


@dataclass(frozen=True)
class CalendarAccessEntry:
    account_id: str
    access_role: str
    is_primary: bool
    display_name: str
    display_name_override: Optional[str] = None

    @property
    def can_write(self) -> bool:
        return self.access_role in WRITE_ROLES

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "access_role": self.access_role,
            "primary": self.is_primary,
            "name": self.display_name_override or self.display_name,
        }


@dataclass(frozen=True)
class UnifiedCalendar:
    calendar_id: str
    access_entries: tuple[CalendarAccessEntry, ...]
    preferred_account_id: str
    display_name: str

    @property
    def preferred_entry(self) -> CalendarAccessEntry:
        for entry in self.access_entries:
            if entry.account_id == self.preferred_account_id:
                return entry
        raise LookupError(self.preferred_account_id)

    def to_dict(self) -> dict:
        return {
            "id": self.calendar_id,
            "name": self.display_name,
            "preferred_account": self.preferred_account_id,
            "access_role": self.preferred_entry.access_role,
            "accounts": [entry.to_dict() for entry in self.access_entries],
        }


@dataclass(frozen=True)
class AccountAccess:
    account_id: str
    access_role: str


@dataclass(frozen=True)
class ResolvedTarget:
    """The account and client chosen to run one calendar operation."""

    account_id: str
    client: Any
    calendar_id: str


@dataclass
class _Snapshot:
    calendars: list[UnifiedCalendar]
    built_at: float


def build_unified_calendar(
    calendar_id: str, entries: list[CalendarAccessEntry]
) -> UnifiedCalendar:
    """Rank entries by permission (ties broken by account id) and merge them."""
    ranked = sorted(entries, key=lambda e: (-permission_rank(e.access_role), e.account_id))
    preferred = ranked[0]
    primary = next((e for e in entries if e.is_primary), None)
    display_name = (
        (primary.display_name_override if primary else None)
        or preferred.display_name_override
        or preferred.display_name
    )
    return UnifiedCalendar(
        calendar_id=calendar_id,
        access_entries=tuple(entries),
        preferred_account_id=preferred.account_id,
        display_name=display_name,
    )


class CalendarRegistry:
    """
    Deduplicated, cached calendar view across a set of accounts.

    Snapshots are keyed by the sorted account ids and expire after ``ttl``
    seconds. Callers must call ``clear_cache()`` when an account is added,
    removed, or re-authorized; the registry cannot detect that itself.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_CACHE_TTL,
        max_snapshots: int = DEFAULT_MAX_SNAPSHOTS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_snapshots = max_snapshots
        self._clock = clock
        self._snapshots: "OrderedDict[str, _Snapshot]" = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._generation = 0

    @staticmethod
    def cache_key(accounts: Mapping[str, Any]) -> str:
        return ",".join(sorted(accounts))

    def _fresh(self, key: str) -> Optional[list[UnifiedCalendar]]:
        snapshot = self._snapshots.get(key)
        if snapshot and self._clock() - snapshot.built_at < self.ttl:
            return snapshot.calendars
        return None

    async def get_unified_calendars(
        self, accounts: Mapping[str, Any]
    ) -> list[UnifiedCalendar]:
        key = self.cache_key(accounts)
        cached = self._fresh(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # another caller may have rebuilt while we waited
            cached = self._fresh(key)
            if cached is not None:
                return cached
            generation = self._generation
            calendars = await self._build(accounts)
            # a clear_cache() during the build makes this result stale
            if generation == self._generation:
                self._store(key, calendars)
            return calendars

    async def _list_account(self, account_id: str, client: Any) -> list[dict]:
        try:
            return await client.list_calendars()
        except Exception as e:
            logger.warning(
                "Listing calendars failed for account %s; skipping it: %s", account_id, e
            )
            return []

    async def _build(self, accounts: Mapping[str, Any]) -> list[UnifiedCalendar]:
        account_ids = sorted(accounts)
        listings = await asyncio.gather(
            *(self._list_account(account_id, accounts[account_id]) for account_id in account_ids)
        )

        grouped: dict[str, list[CalendarAccessEntry]] = {}
        for account_id, items in zip(account_ids, listings):
            for cal in items:
                calendar_id = cal.get("id")
                if not calendar_id:
                    continue
                grouped.setdefault(calendar_id, []).append(
                    CalendarAccessEntry(
                        account_id=account_id,
                        access_role=cal.get("accessRole") or "reader",
                        is_primary=bool(cal.get("primary", False)),
                        display_name=cal.get("summary") or calendar_id,
                        display_name_override=cal.get("summaryOverride"),
                    )
                )

        calendars = [
            build_unified_calendar(calendar_id, entries)
            for calendar_id, entries in grouped.items()
        ]
        logger.debug(
            "Built calendar registry for %d account(s): %d calendar(s)",
            len(account_ids),
            len(calendars),
        )
        return calendars

    def _store(self, key: str, calendars: list[UnifiedCalendar]) -> None:
        self._snapshots[key] = _Snapshot(calendars=calendars, built_at=self._clock())
        self._snapshots.move_to_end(key)
        while len(self._snapshots) > self.max_snapshots:
            evicted, _ = self._snapshots.popitem(last=False)
            lock = self._locks.get(evicted)
            if lock is not None and not lock.locked():
                del self._locks[evicted]

    def clear_cache(self) -> None:
        """Drop every snapshot. Builds already in flight are not stored."""
        self._snapshots.clear()
        self._generation += 1

    async def find_calendar(
        self, calendar_id: str, accounts: Mapping[str, Any]
    ) -> Optional[UnifiedCalendar]:
        for calendar in await self.get_unified_calendars(accounts):
            if calendar.calendar_id == calendar_id:
                return calendar
        return None

    async def get_account_for_calendar(
        self,
        calendar_id: str,
        accounts: Mapping[str, Any],
        operation: Operation = "read",
    ) -> Optional[AccountAccess]:
        """
        Pick the preferred account for a calendar.

        For writes the preferred account must hold owner or writer access.
        A lower-ranked account with write access is not considered.
        """
        calendar = await self.find_calendar(calendar_id, accounts)
        if calendar is None:
            return None
        preferred = calendar.preferred_entry
        if operation == "write" and not preferred.can_write:
            return None
        return AccountAccess(account_id=preferred.account_id, access_role=preferred.access_role)

    async def get_accounts_for_calendar(
        self, calendar_id: str, accounts: Mapping[str, Any]
    ) -> list[CalendarAccessEntry]:
        calendar = await self.find_calendar(calendar_id, accounts)
        return list(calendar.access_entries) if calendar else []

    async def route_calendars(
        self, calendar_ids: Sequence[str], accounts: Mapping[str, Any]
    ) -> tuple[dict[str, list[str]], list[str]]:
        """
        Assign each calendar to the account that should read it.

        With one account every calendar goes to it. With several, ``primary``
        means each account's own primary calendar and any other id is read
        through its preferred account among ``accounts``.

        Returns:
            (routes, unresolved): account id -> calendar ids in request order,
            and the ids that none of ``accounts`` can see.
        """
        requested = list(dict.fromkeys(calendar_ids))
        if len(accounts) == 1:
            (only_id,) = accounts
            return {only_id: requested}, []

        routes: dict[str, list[str]] = {}
        unresolved: list[str] = []
        for calendar_id in requested:
            if calendar_id == "primary":
                for account_id in sorted(accounts):
                    routes.setdefault(account_id, []).append(calendar_id)
                continue
            access = await self.get_account_for_calendar(calendar_id, accounts, "read")
            if access is None:
                unresolved.append(calendar_id)
            else:
                routes.setdefault(access.account_id, []).append(calendar_id)
        return routes, unresolved

    async def resolve_target(
        self,
        calendar_id: str,
        accounts: Mapping[str, Any],
        account_id: Optional[str] = None,
        operation: Operation = "write",
    ) -> ResolvedTarget:
        """
        Choose the account and client for an operation on ``calendar_id``.

        Raises:
            InvalidIdentifierError: ``account_id`` is malformed.
            AccountNotFoundError: The account or calendar is unknown.
            InsufficientPermissionError: No usable access for ``operation``.
        """
        if account_id is not None:
            validate_account_id(account_id)
            if account_id not in accounts:
                available = ", ".join(sorted(accounts)) or "none"
                raise AccountNotFoundError(
                    f"Account {account_id!r} is not connected. Available accounts: {available}."
                )
            if operation == "write" and calendar_id != "primary":
                entries = await self.get_accounts_for_calendar(calendar_id, accounts)
                entry = next((e for e in entries if e.account_id == account_id), None)
                if entry is not None and not entry.can_write:
                    raise InsufficientPermissionError(
                        f"Account {account_id!r} has {entry.access_role} access to "
                        f"calendar {calendar_id!r}; write access is required."
                    )
            return ResolvedTarget(account_id, accounts[account_id], calendar_id)

        if not accounts:
            raise AccountNotFoundError("No authenticated accounts are connected.")
        if len(accounts) == 1:
            (only_id,) = accounts
            return ResolvedTarget(only_id, accounts[only_id], calendar_id)
        if calendar_id == "primary":
            raise AccountNotFoundError(
                "Several accounts are connected; specify which account's primary "
                "calendar to use."
            )

        access = await self.get_account_for_calendar(calendar_id, accounts, operation)
        if access is None:
            entries = await self.get_accounts_for_calendar(calendar_id, accounts)
            if entries:
                raise InsufficientPermissionError(
                    f"No account has {operation} access to calendar {calendar_id!r} "
                    "through its preferred account."
                )
            raise AccountNotFoundError(
                f"Calendar {calendar_id!r} was not found in any connected account."
            )
        return ResolvedTarget(access.account_id, accounts[access.account_id], calendar_id)
