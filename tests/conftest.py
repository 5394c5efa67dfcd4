from __future__ import annotations

import pytest

from fakes import FakeCalendarClient, calendar_entry
from multi_calendar_mcp.services.registry import CalendarRegistry


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> CalendarRegistry:
    return CalendarRegistry(clock=clock)


@pytest.fixture
def work_and_personal() -> dict[str, FakeCalendarClient]:
    """Two accounts sharing a team calendar; 'work' owns it, 'personal' only reads it."""
    return {
        "work": FakeCalendarClient(
            "work",
            [
                calendar_entry("work@example.com", "owner", primary=True, summary="Work"),
                calendar_entry("team@group.calendar.google.com", "owner", summary="Team"),
            ],
        ),
        "personal": FakeCalendarClient(
            "personal",
            [
                calendar_entry("me@example.com", "owner", primary=True, summary="Me"),
                calendar_entry(
                    "team@group.calendar.google.com",
                    "reader",
                    summary="Team",
                    override="Team (shared)",
                ),
                calendar_entry("holidays@group.v.calendar.google.com", "reader", summary="Holidays"),
            ],
        ),
    }
