"""MCP tools for Google Calendar across connected accounts."""

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import BaseModel, ConfigDict, Field

from ..clients.gcal import create_time_object, simplify_event
from ..context import ServerContext
from ..errors import AccountNotFoundError, CalendarError, format_error
from ..models import MAX_BATCH_EVENTS, BatchDefaults, EventItem, SendUpdates
from ..services.availability import free_windows
from ..services.registry import select_accounts

AccountSelector = Optional[Union[str, list[str]]]


def date_range(start_date: str, end_date: str, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Local-midnight bounds covering start_date through end_date inclusive."""
    time_min = datetime.fromisoformat(start_date).replace(tzinfo=tz)
    time_max = datetime.fromisoformat(end_date).replace(tzinfo=tz) + timedelta(days=1)
    return time_min, time_max


def connected_accounts(ctx: ServerContext, account: AccountSelector) -> dict[str, Any]:
    accounts = select_accounts(ctx.accounts(), account)
    if not accounts:
        raise AccountNotFoundError("No authenticated accounts are connected.")
    return accounts


async def collect_events(
    ctx: ServerContext,
    calendar_ids: list[str],
    account: AccountSelector,
    query: dict,
) -> dict:
    """
    Read ``calendar_ids`` through the selected accounts and merge the events.

    With several accounts, 'primary' is read from every account's own
    primary calendar and other calendars through their preferred account.
    Calendars that cannot be found or read are listed in 'failed_calendars'.
    """
    accounts = connected_accounts(ctx, account)
    routes, unresolved = await ctx.registry.route_calendars(calendar_ids, accounts)
    failed: list[dict] = [
        {
            "id": calendar_id,
            "error": f"Calendar {calendar_id!r} was not found in any selected account.",
            "attempts": 0,
        }
        for calendar_id in unresolved
    ]

    account_ids = list(routes)
    results = await asyncio.gather(
        *(
            ctx.executor.fetch_across_calendars(accounts[account_id], routes[account_id], query)
            for account_id in account_ids
        )
    )

    events: list[dict] = []
    for account_id, batch in zip(account_ids, results):
        for fetched in batch.successful:
            for event in fetched["events"]:
                events.append(
                    {
                        **simplify_event(event),
                        "calendar_id": fetched["calendar_id"],
                        "account_id": account_id,
                    }
                )
        failed.extend({**failure.to_dict(), "account_id": account_id} for failure in batch.failed)

    events.sort(key=lambda ev: ev["start"] or "")
    return {
        "accounts": sorted(account_ids),
        "events": events,
        "total_count": len(events),
        "failed_calendars": failed,
    }


def register_calendar_tools(mcp: FastMCP, ctx: ServerContext) -> None:
    """Register all Google Calendar tools with the MCP server."""

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    @mcp.tool(
        name="gcal_list_accounts",
        annotations={"readOnlyHint": True, "destructiveHint": False},
    )
    async def gcal_list_accounts() -> str:
        """
        List the Google accounts currently connected to this server.

        Returns:
            str: JSON with the account ids usable as 'account' in other tools.
        """
        accounts = sorted(ctx.accounts())
        return json.dumps({"accounts": accounts, "count": len(accounts)}, indent=2)

    @mcp.tool(
        name="gcal_reload_accounts",
        annotations={"readOnlyHint": True, "destructiveHint": False, "idempotentHint": True},
    )
    async def gcal_reload_accounts() -> str:
        """
        Re-read account tokens from disk after an account was added, removed,
        or re-authorized with `multi-calendar-mcp auth <account>`.

        Returns:
            str: JSON with the reloaded account ids and whether anything changed.
        """
        try:
            changed = await asyncio.to_thread(ctx.reload_accounts)
            return json.dumps({"accounts": sorted(ctx.accounts()), "changed": changed}, indent=2)
        except Exception as e:
            return f"Error reloading accounts: {e}"

    # ------------------------------------------------------------------
    # List calendars
    # ------------------------------------------------------------------

    @mcp.tool(
        name="gcal_list_calendars",
        annotations={"readOnlyHint": True, "destructiveHint": False},
    )
    async def gcal_list_calendars() -> str:
        """
        List every calendar visible from any connected account.

        A calendar shared with several accounts appears once, with each
        account's access role and the preferred account (highest access)
        that other tools use by default.

        Returns:
            str: JSON array of calendars with id, name, preferred_account,
                 access_role, and per-account access.
        """
        try:
            calendars = await ctx.registry.get_unified_calendars(ctx.accounts())
            return json.dumps([cal.to_dict() for cal in calendars], indent=2)
        except Exception as e:
            return f"Error listing calendars: {e}"

    class CalendarAccessInput(BaseModel):
        model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

        calendar_id: str = Field(..., description="Calendar ID to inspect.")

    @mcp.tool(
        name="gcal_get_calendar_access",
        annotations={"readOnlyHint": True, "destructiveHint": False},
    )
    async def gcal_get_calendar_access(params: CalendarAccessInput) -> str:
        """
        Show which connected accounts can access a calendar and with what role.

        Args:
            params.calendar_id: Calendar to inspect.

        Returns:
            str: JSON with the read and write account chosen for this calendar
                 and every account's access entry.
        """
        try:
            accounts = ctx.accounts()
            entries = await ctx.registry.get_accounts_for_calendar(params.calendar_id, accounts)
            if not entries:
                return f"Error: Calendar {params.calendar_id} is not visible from any connected account."
            read = await ctx.registry.get_account_for_calendar(params.calendar_id, accounts, "read")
            write = await ctx.registry.get_account_for_calendar(params.calendar_id, accounts, "write")
            return json.dumps(
                {
                    "calendar_id": params.calendar_id,
                    "read_account": read.account_id if read else None,
                    "write_account": write.account_id if write else None,
                    "accounts": [entry.to_dict() for entry in entries],
                },
                indent=2,
            )
        except Exception as e:
            return f"Error reading calendar access: {e}"

    # ------------------------------------------------------------------
    # Get events
    # ------------------------------------------------------------------

    class GetEventsInput(BaseModel):
        model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

        start_date: str = Field(
            ..., description="Start date in ISO format (e.g. '2026-02-17')"
        )
        end_date: str = Field(
            ..., description="End date in ISO format (e.g. '2026-02-23')"
        )
        calendar_ids: list[str] = Field(
            default_factory=lambda: ["primary"],
            description=(
                "Calendar IDs to read. 'primary' means each selected account's "
                "own main calendar."
            ),
            min_length=1,
            max_length=25,
        )
        account: AccountSelector = Field(
            default=None,
            description="Account id or list of ids to read with. Omit to use every connected account.",
        )
        max_results: int = Field(
            default=50, description="Maximum events per calendar", ge=1, le=250
        )

    @mcp.tool(
        name="gcal_get_events",
        annotations={"readOnlyHint": True, "destructiveHint": False},
    )
    async def gcal_get_events(params: GetEventsInput) -> str:
        """
        Fetch events from one or more calendars within a date range.

        With several accounts connected, 'primary' is read from every
        account's own primary calendar, and each other calendar through the
        account with the best access to it. Calendars are fetched in
        parallel. A calendar that cannot be read is reported under
        'failed_calendars' instead of failing the whole call.

        Args:
            params.start_date: Start of the date range (ISO date string).
            params.end_date: End of the date range (ISO date string).
            params.calendar_ids: Calendars to query (default: primary).
            params.account: Optional account id or list of ids.
            params.max_results: Max events per calendar (default: 50).

        Returns:
            str: JSON with 'events' sorted by start time (each tagged with
                 'account_id' and 'calendar_id') and 'failed_calendars'.
        """
        try:
            time_min, time_max = date_range(
                params.start_date, params.end_date, ZoneInfo(ctx.settings.local_timezone)
            )
            query = {
                "timeMin": time_min.isoformat(),
                "timeMax": time_max.isoformat(),
                "maxResults": params.max_results,
                "singleEvents": True,
                "orderBy": "startTime",
            }
            payload = await collect_events(ctx, params.calendar_ids, params.account, query)
            return json.dumps(payload, indent=2)
        except Exception as e:
            return f"Error fetching events: {e}"

    class SearchEventsInput(GetEventsInput):
        query: str = Field(
            ...,
            description="Free text matched against summary, description, location and attendees.",
            min_length=1,
        )

    @mcp.tool(
        name="gcal_search_events",
        annotations={"readOnlyHint": True, "destructiveHint": False},
    )
    async def gcal_search_events(params: SearchEventsInput) -> str:
        """
        Search events by text within a date range across calendars and accounts.

        Calendars are routed to accounts the same way as gcal_get_events.

        Args:
            params.query: Text to search for.
            params.start_date/end_date: Date range to search (ISO date strings).
            params.calendar_ids: Calendars to search (default: primary).
            params.account: Optional account id or list of ids.

        Returns:
            str: JSON with matching 'events' and 'failed_calendars'.
        """
        try:
            time_min, time_max = date_range(
                params.start_date, params.end_date, ZoneInfo(ctx.settings.local_timezone)
            )
            query = {
                "q": params.query,
                "timeMin": time_min.isoformat(),
                "timeMax": time_max.isoformat(),
                "maxResults": params.max_results,
                "singleEvents": True,
                "orderBy": "startTime",
            }
            payload = await collect_events(ctx, params.calendar_ids, params.account, query)
            payload["query"] = params.query
            return json.dumps(payload, indent=2)
        except Exception as e:
            return f"Error searching events: {e}"

    class GetEventInput(BaseModel):
        model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

        event_id: str = Field(..., description="Google Calendar event ID.")
        calendar_id: str = Field(default="primary", description="Calendar containing the event.")
        account: Optional[str] = Field(default=None, description="Account to read with.")

    @mcp.tool(
        name="gcal_get_event",
        annotations={"readOnlyHint": True, "destructiveHint": False},
    )
    async def gcal_get_event(params: GetEventInput) -> str:
        """
        Fetch a single event by ID.

        Returns:
            str: JSON dict of the event with the account used to read it.
        """
        try:
            target = await ctx.registry.resolve_target(
                params.calendar_id, ctx.accounts(), params.account, "read"
            )
            event = await target.client.get_event(target.calendar_id, params.event_id)
            return json.dumps(
                {**simplify_event(event), "calendar_id": target.calendar_id, "account_id": target.account_id},
                indent=2,
            )
        except Exception as e:
            return format_error(e)

    # ------------------------------------------------------------------
    # Create events (batch)
    # ------------------------------------------------------------------

    class CreateEventsInput(BaseModel):
        model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

        events: list[EventItem] = Field(
            ...,
            description="Events to create, processed in order.",
            min_length=1,
            max_length=MAX_BATCH_EVENTS,
        )
        account: Optional[str] = Field(
            default=None,
            description="Default account. Omit to use the calendar's preferred account with write access.",
        )
        calendar_id: str = Field(default="primary", description="Default calendar for every event.")
        time_zone: Optional[str] = Field(
            default=None,
            description="Default IANA time zone for naive datetimes. Omit to use the calendar's time zone.",
        )
        send_updates: Optional[SendUpdates] = Field(
            default=None, description="Default guest notification policy."
        )

    @mcp.tool(
        name="gcal_create_events",
        annotations={"readOnlyHint": False, "destructiveHint": False, "idempotentHint": False},
    )
    async def gcal_create_events(params: CreateEventsInput) -> str:
        """
        Create one or more Google Calendar events (up to 50) in a single call.

        Shared defaults (account, calendar_id, time_zone, send_updates) apply
        to every event unless the event sets its own value. Events are created
        in order; failures are reported per event and the rest still run.
        After three consecutive failures with the same error, the remaining
        events are skipped.

        Args:
            params.events: Events to create (summary, start, end, ...).
            params.account/calendar_id/time_zone/send_updates: Shared defaults.

        Returns:
            str: JSON with total_requested, total_created, total_failed, and
                 the created events and/or failures. Reported as an error only
                 when no event was created.
        """
        defaults = BatchDefaults(
            account=params.account,
            calendar_id=params.calendar_id,
            time_zone=params.time_zone,
            send_updates=params.send_updates,
        )
        try:
            result = await ctx.batch.create_many(defaults, params.events, ctx.accounts())
        except CalendarError as e:
            raise ToolError(format_error(e)) from e

        payload = json.dumps(result.to_dict(), indent=2)
        if result.is_error:
            raise ToolError(payload)
        return payload

    # ------------------------------------------------------------------
    # Update event
    # ------------------------------------------------------------------

    class UpdateEventInput(BaseModel):
        model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

        event_id: str = Field(..., description="Google Calendar event ID to update.")
        calendar_id: str = Field(default="primary", description="Calendar containing the event.")
        account: Optional[str] = Field(
            default=None, description="Account to update with. Omit to use one with write access."
        )
        title: Optional[str] = Field(default=None, description="New title (leave blank to keep existing).")
        start: Optional[str] = Field(default=None, description="New start (ISO date or datetime).")
        end: Optional[str] = Field(default=None, description="New end (ISO date or datetime).")
        description: Optional[str] = Field(default=None, description="New description.")
        location: Optional[str] = Field(default=None, description="New location.")
        time_zone: Optional[str] = Field(
            default=None, description="IANA time zone for naive start/end datetimes."
        )
        send_updates: Optional[SendUpdates] = Field(default=None)

    @mcp.tool(
        name="gcal_update_event",
        annotations={"readOnlyHint": False, "destructiveHint": False, "idempotentHint": True},
    )
    async def gcal_update_event(params: UpdateEventInput) -> str:
        """
        Update one or more fields on an existing Google Calendar event.
        Only provided fields are changed; omitted fields remain as-is.

        Args:
            params.event_id: ID of the event to update.
            params.calendar_id: Calendar containing the event.
            params.account: Optional account to write with.
            params.title/start/end/description/location: Fields to update.

        Returns:
            str: JSON dict of the updated event.
        """
        try:
            target = await ctx.registry.resolve_target(
                params.calendar_id, ctx.accounts(), params.account, "write"
            )
            tz = params.time_zone or ctx.settings.local_timezone
            body: dict = {}
            if params.title is not None:
                body["summary"] = params.title
            if params.start is not None:
                body["start"] = create_time_object(params.start, tz)
            if params.end is not None:
                body["end"] = create_time_object(params.end, tz)
            if params.description is not None:
                body["description"] = params.description
            if params.location is not None:
                body["location"] = params.location
            if not body:
                return "Error updating event: no fields to update were provided."

            event = await target.client.patch_event(
                target.calendar_id, params.event_id, body, send_updates=params.send_updates
            )
            return json.dumps(
                {**simplify_event(event), "calendar_id": target.calendar_id, "account_id": target.account_id},
                indent=2,
            )
        except Exception as e:
            return format_error(e)

    # ------------------------------------------------------------------
    # Delete event
    # ------------------------------------------------------------------

    class DeleteEventInput(BaseModel):
        model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

        event_id: str = Field(..., description="Google Calendar event ID to delete.")
        calendar_id: str = Field(default="primary", description="Calendar containing the event.")
        account: Optional[str] = Field(
            default=None, description="Account to delete with. Omit to use one with write access."
        )
        send_updates: Optional[SendUpdates] = Field(default=None)

    @mcp.tool(
        name="gcal_delete_event",
        annotations={"readOnlyHint": False, "destructiveHint": True, "idempotentHint": True},
    )
    async def gcal_delete_event(params: DeleteEventInput) -> str:
        """
        Permanently delete a Google Calendar event.

        Args:
            params.event_id: ID of the event to delete.
            params.calendar_id: Calendar containing the event.
            params.account: Optional account to delete with.

        Returns:
            str: Confirmation message.
        """
        try:
            target = await ctx.registry.resolve_target(
                params.calendar_id, ctx.accounts(), params.account, "write"
            )
            await target.client.delete_event(
                target.calendar_id, params.event_id, send_updates=params.send_updates
            )
            return (
                f"Event {params.event_id} deleted from {target.calendar_id} "
                f"({target.account_id})."
            )
        except Exception as e:
            return format_error(e)

    # ------------------------------------------------------------------
    # Free/busy
    # ------------------------------------------------------------------

    class FreeBusyInput(BaseModel):
        model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

        start_date: str = Field(..., description="Start date in ISO format (e.g. '2026-02-17')")
        end_date: str = Field(..., description="End date in ISO format (e.g. '2026-02-23')")
        calendar_ids: list[str] = Field(
            default_factory=lambda: ["primary"],
            description="Calendars to check. 'primary' means each selected account's main calendar.",
            min_length=1,
            max_length=50,
        )
        account: AccountSelector = Field(
            default=None,
            description="Account id or list of ids. Omit to check every connected account.",
        )

    async def availability(calendar_ids: list[str], account: AccountSelector, time_min, time_max):
        accounts = connected_accounts(ctx, account)
        routes, unresolved = await ctx.registry.route_calendars(calendar_ids, accounts)
        report = await ctx.availability.query(routes, accounts, time_min, time_max)
        return report, sorted(routes), unresolved

    @mcp.tool(
        name="gcal_get_freebusy",
        annotations={"readOnlyHint": True, "destructiveHint": False},
    )
    async def gcal_get_freebusy(params: FreeBusyInput) -> str:
        """
        Report busy periods for calendars across accounts (at most 3 months).

        Each account is queried once for the calendars routed to it. Busy
        periods from every calendar are also merged into 'merged_busy'.

        Returns:
            str: JSON with per-calendar busy periods, merged_busy,
                 failed_accounts, and unresolved_calendars.
        """
        try:
            time_min, time_max = date_range(
                params.start_date, params.end_date, ZoneInfo(ctx.settings.local_timezone)
            )
            report, accounts, unresolved = await availability(
                params.calendar_ids, params.account, time_min, time_max
            )
            return json.dumps(
                {**report.to_dict(), "accounts": accounts, "unresolved_calendars": unresolved},
                indent=2,
            )
        except Exception as e:
            return f"Error checking free/busy: {e}"

    class FindFreeSlotsInput(BaseModel):
        model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

        date: str = Field(..., description="Date to find free slots on (ISO date string, e.g. '2026-02-17').")
        duration_minutes: int = Field(
            ..., description="Desired slot duration in minutes.", ge=15, le=480
        )
        earliest_hour: int = Field(
            default=8, description="Earliest hour to suggest (24h format, default 8).", ge=0, le=23
        )
        latest_hour: int = Field(
            default=20, description="Latest end hour to suggest (24h format, default 20).", ge=1, le=24
        )
        calendar_ids: list[str] = Field(
            default_factory=lambda: ["primary"],
            description="Calendars whose events block a slot.",
            min_length=1,
            max_length=50,
        )
        account: AccountSelector = Field(
            default=None,
            description="Account id or list of ids. Omit to respect every connected account.",
        )

    @mcp.tool(
        name="gcal_find_free_slots",
        annotations={"readOnlyHint": True, "destructiveHint": False},
    )
    async def gcal_find_free_slots(params: FindFreeSlotsInput) -> str:
        """
        Find time slots of a given duration that are free in every selected account.

        Busy periods from all selected calendars and accounts are merged, so
        a slot is only returned when nobody is booked.

        Args:
            params.date: The date to check (ISO date string).
            params.duration_minutes: Minimum slot length in minutes.
            params.earliest_hour: Don't suggest slots starting before this hour.
            params.latest_hour: Don't suggest slots ending after this hour.
            params.calendar_ids: Calendars to check for conflicts.
            params.account: Optional account id or list of ids.

        Returns:
            str: JSON with 'slots' (start, end, minutes) in local time.
        """
        try:
            if params.latest_hour <= params.earliest_hour:
                return "Error finding free slots: latest_hour must be after earliest_hour."
            tz = ZoneInfo(ctx.settings.local_timezone)
            midnight = datetime.fromisoformat(params.date).replace(tzinfo=tz)
            window_start = midnight + timedelta(hours=params.earliest_hour)
            window_end = midnight + timedelta(hours=params.latest_hour)

            report, accounts, unresolved = await availability(
                params.calendar_ids, params.account, window_start, window_end
            )
            windows = free_windows(
                report.merged_busy,
                window_start,
                window_end,
                timedelta(minutes=params.duration_minutes),
            )
            slots = [
                {
                    "start": start.astimezone(tz).isoformat(),
                    "end": end.astimezone(tz).isoformat(),
                    "minutes": int((end - start).total_seconds() // 60),
                }
                for start, end in windows
            ]
            payload: dict[str, Any] = {
                "slots": slots,
                "count": len(slots),
                "accounts": accounts,
                "failed_accounts": report.failed_accounts,
                "unresolved_calendars": unresolved,
            }
            if not slots:
                payload["message"] = "No free slots found on this date."
            return json.dumps(payload, indent=2)
        except Exception as e:
            return f"Error finding free slots: {e}"
