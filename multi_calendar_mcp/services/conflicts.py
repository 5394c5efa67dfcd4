"""Cross-account schedule conflict detection."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from ..clients.gcal import simplify_event
from .executor import ParallelExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimedEvent:
    account_id: str
    calendar_id: str
    start: datetime
    end: datetime
    event: dict

    @property
    def identity(self) -> Optional[str]:
        return self.event.get("iCalUID") or self.event.get("id")

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "calendar_id": self.calendar_id,
            "event": simplify_event(self.event),
        }


@dataclass(frozen=True)
class Conflict:
    overlap_start: datetime
    overlap_end: datetime
    first: TimedEvent
    second: TimedEvent

    def to_dict(self) -> dict:
        return {
            "overlap_start": self.overlap_start.isoformat(),
            "overlap_end": self.overlap_end.isoformat(),
            "overlap_minutes": round((self.overlap_end - self.overlap_start).total_seconds() / 60, 1),
            "accounts_involved": sorted({self.first.account_id, self.second.account_id}),
            "events": [self.first.to_dict(), self.second.to_dict()],
        }


def event_time_range(event: dict, tz: ZoneInfo) -> Optional[tuple[datetime, datetime]]:
    """Return the event's (start, end) as aware datetimes, or None if it has no usable times."""
    start = event.get("start") or {}
    end = event.get("end") or {}
    try:
        if start.get("dateTime") and end.get("dateTime"):
            s = datetime.fromisoformat(start["dateTime"])
            e = datetime.fromisoformat(end["dateTime"])
            if s.tzinfo is None:
                s = s.replace(tzinfo=tz)
            if e.tzinfo is None:
                e = e.replace(tzinfo=tz)
        elif start.get("date") and end.get("date"):
            # all-day end dates are exclusive
            s = datetime.combine(date.fromisoformat(start["date"]), time.min, tzinfo=tz)
            e = datetime.combine(date.fromisoformat(end["date"]), time.min, tzinfo=tz)
        else:
            return None
    except ValueError:
        return None
    if e <= s:
        return None
    return s, e


def find_cross_account_overlaps(events: Sequence[TimedEvent]) -> list[Conflict]:
    """
    Sweep events by start time and pair up overlaps between different accounts.

    The same meeting seen from two accounts (same iCalUID) is not a conflict.
    """
    active: list[TimedEvent] = []
    conflicts: list[Conflict] = []
    for current in sorted(events, key=lambda ev: (ev.start, ev.end)):
        active = [ev for ev in active if ev.end > current.start]
        for candidate in active:
            if candidate.account_id == current.account_id:
                continue
            if candidate.identity and candidate.identity == current.identity:
                continue
            overlap_start = max(candidate.start, current.start)
            overlap_end = min(candidate.end, current.end)
            if overlap_start < overlap_end:
                conflicts.append(Conflict(overlap_start, overlap_end, candidate, current))
        active.append(current)
    return conflicts


@dataclass
class ConflictReport:
    accounts: list[str]
    conflicts: list[Conflict]
    failed_calendars: list[dict]

    def to_dict(self) -> dict:
        n = len(self.conflicts)
        return {
            "accounts": self.accounts,
            "total_conflicts": n,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "failed_calendars": self.failed_calendars,
            "all_clear": n == 0,
            "note": (
                "No overlapping events detected across the selected accounts."
                if n == 0
                else f"Detected {n} overlapping event pair(s) across {len(self.accounts)} account(s)."
            ),
        }


class ConflictDetector:
    """Fetch events for every account in parallel and report cross-account overlaps."""

    def __init__(self, executor: ParallelExecutor, local_timezone: str):
        self.executor = executor
        self.tz = ZoneInfo(local_timezone)

    async def find_conflicts(
        self,
        accounts: Mapping[str, Any],
        time_min: datetime,
        time_max: datetime,
        calendar_ids: Optional[Sequence[str]] = None,
    ) -> ConflictReport:
        query = {
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "singleEvents": True,
            "orderBy": "startTime",
            "showDeleted": False,
        }

        def fetch(account_id: str, calendar_id: str):
            async def operation() -> dict:
                events = await accounts[account_id].list_events(calendar_id, **query)
                return {"account_id": account_id, "calendar_id": calendar_id, "events": events}

            return operation

        operations = [
            (f"{account_id}:{calendar_id}", fetch(account_id, calendar_id))
            for account_id in sorted(accounts)
            for calendar_id in (calendar_ids or ["primary"])
        ]
        batch = await self.executor.execute_parallel(operations)

        timed: list[TimedEvent] = []
        for fetched in batch.successful:
            for event in fetched["events"]:
                if event.get("status") == "cancelled":
                    continue
                span = event_time_range(event, self.tz)
                if span is None:
                    continue
                timed.append(
                    TimedEvent(fetched["account_id"], fetched["calendar_id"], span[0], span[1], event)
                )

        conflicts = find_cross_account_overlaps(timed)
        logger.debug(
            "Checked %d event(s) across %d account(s): %d conflict(s)",
            len(timed),
            len(accounts),
            len(conflicts),
        )
        return ConflictReport(
            accounts=sorted(accounts),
            conflicts=conflicts,
            failed_calendars=[failure.to_dict() for failure in batch.failed],
        )
