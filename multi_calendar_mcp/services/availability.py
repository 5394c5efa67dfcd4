"""Free/busy lookups across accounts and the free windows between them."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence

from .executor import ParallelExecutor

logger = logging.getLogger(__name__)

# the freebusy endpoint rejects longer ranges
MAX_FREEBUSY_RANGE = timedelta(days=90)

Interval = tuple[datetime, datetime]


def merge_busy(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort intervals and merge any that overlap or touch."""
    merged: list[Interval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def free_windows(
    busy: Sequence[Interval],
    window_start: datetime,
    window_end: datetime,
    min_duration: timedelta,
) -> list[Interval]:
    """Gaps of at least ``min_duration`` between merged busy periods inside the window."""
    windows: list[Interval] = []
    cursor = window_start
    for busy_start, busy_end in merge_busy(busy):
        if busy_end <= cursor:
            continue
        if busy_start >= window_end:
            break
        if busy_start - cursor >= min_duration:
            windows.append((cursor, busy_start))
        cursor = max(cursor, busy_end)
    if window_end - cursor >= min_duration:
        windows.append((cursor, window_end))
    return windows


@dataclass
class CalendarBusy:
    account_id: str
    calendar_id: str
    busy: list[Interval]
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {
            "account_id": self.account_id,
            "calendar_id": self.calendar_id,
            "busy": [{"start": s.isoformat(), "end": e.isoformat()} for s, e in self.busy],
        }
        if self.errors:
            payload["errors"] = self.errors
        return payload


@dataclass
class AvailabilityReport:
    time_min: datetime
    time_max: datetime
    calendars: list[CalendarBusy]
    failed_accounts: list[dict]

    @property
    def merged_busy(self) -> list[Interval]:
        return merge_busy(interval for cal in self.calendars for interval in cal.busy)

    def to_dict(self) -> dict:
        return {
            "time_min": self.time_min.isoformat(),
            "time_max": self.time_max.isoformat(),
            "calendars": [cal.to_dict() for cal in self.calendars],
            "merged_busy": [
                {"start": s.isoformat(), "end": e.isoformat()} for s, e in self.merged_busy
            ],
            "failed_accounts": self.failed_accounts,
        }


class AvailabilityChecker:
    """One freebusy request per account, fanned out through the executor."""

    def __init__(self, executor: ParallelExecutor):
        self.executor = executor

    async def query(
        self,
        routes: Mapping[str, Sequence[str]],
        accounts: Mapping[str, Any],
        time_min: datetime,
        time_max: datetime,
    ) -> AvailabilityReport:
        """
        Fetch busy periods for ``routes`` (account id -> calendar ids).

        Raises:
            ValueError: The range is empty or longer than 90 days.
        """
        if time_max <= time_min:
            raise ValueError("The end of the range must be after its start.")
        if time_max - time_min > MAX_FREEBUSY_RANGE:
            raise ValueError("The free/busy range must not exceed 3 months.")

        def fetch(account_id: str, calendar_ids: Sequence[str]):
            async def operation() -> tuple[str, dict]:
                calendars = await accounts[account_id].query_free_busy(
                    list(calendar_ids), time_min.isoformat(), time_max.isoformat()
                )
                return account_id, calendars

            return operation

        batch = await self.executor.execute_parallel(
            (account_id, fetch(account_id, calendar_ids))
            for account_id, calendar_ids in sorted(routes.items())
        )

        calendars: list[CalendarBusy] = []
        for account_id, data in batch.successful:
            for calendar_id in routes[account_id]:
                entry = data.get(calendar_id, {})
                busy: list[Interval] = []
                for period in entry.get("busy", []):
                    try:
                        start = datetime.fromisoformat(period["start"])
                        end = datetime.fromisoformat(period["end"])
                    except (KeyError, ValueError):
                        logger.debug("Ignoring malformed busy period %r", period)
                        continue
                    busy.append((start, end))
                calendars.append(
                    CalendarBusy(
                        account_id,
                        calendar_id,
                        busy,
                        [
                            {"domain": err.get("domain"), "reason": err.get("reason")}
                            for err in entry.get("errors", [])
                        ],
                    )
                )

        return AvailabilityReport(
            time_min=time_min,
            time_max=time_max,
            calendars=calendars,
            failed_accounts=[failure.to_dict() for failure in batch.failed],
        )
