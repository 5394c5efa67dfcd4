"""Cross-account schedule tools."""

import json
from typing import Optional
from zoneinfo import ZoneInfo

from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel, ConfigDict, Field

from ..context import ServerContext
from ..services.registry import select_accounts
from .calendar import date_range


def register_schedule_tools(mcp: FastMCP, ctx: ServerContext) -> None:
    """Register cross-account schedule tools."""

    # ------------------------------------------------------------------
    # Find scheduling conflicts
    # ------------------------------------------------------------------

    class FindConflictsInput(BaseModel):
        model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

        start_date: str = Field(..., description="Start of date range to check (ISO date string).")
        end_date: str = Field(..., description="End of date range to check (ISO date string).")
        accounts: Optional[list[str]] = Field(
            default=None,
            description="Accounts to compare. Omit to compare every connected account.",
        )
        calendar_ids: Optional[list[str]] = Field(
            default=None,
            description="Calendars to read from each account (default: each account's primary).",
            max_length=10,
        )

    @mcp.tool(
        name="schedule_find_conflicts",
        annotations={"readOnlyHint": True, "destructiveHint": False},
    )
    async def schedule_find_conflicts(params: FindConflictsInput) -> str:
        """
        Detect double-bookings between different accounts in a date range.

        Reads every selected account's calendars in parallel and reports each
        pair of overlapping events that belong to different accounts, such as
        a work meeting colliding with a personal appointment. The same
        meeting seen from two accounts is not reported.

        Args:
            params.start_date: Start of the range to scan.
            params.end_date: End of the range to scan.
            params.accounts: Accounts to compare (default: all).
            params.calendar_ids: Calendars to read per account (default: primary).

        Returns:
            str: JSON with 'conflicts', 'total_conflicts', 'failed_calendars',
                 and 'all_clear'.
        """
        try:
            accounts = select_accounts(ctx.accounts(), params.accounts)
            if not accounts:
                return "Error: No authenticated accounts available."

            time_min, time_max = date_range(
                params.start_date, params.end_date, ZoneInfo(ctx.settings.local_timezone)
            )
            report = await ctx.conflicts.find_conflicts(
                accounts, time_min, time_max, params.calendar_ids
            )
            payload = report.to_dict()
            payload["date_range"] = {"start": params.start_date, "end": params.end_date}
            return json.dumps(payload, indent=2)
        except Exception as e:
            return f"Error checking for conflicts: {e}"
