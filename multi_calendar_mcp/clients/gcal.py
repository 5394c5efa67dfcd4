"""Google Calendar API client bound to one authenticated account."""

import asyncio
import json
import re
from typing import Any, Optional

import httplib2
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..errors import CalendarApiError

_OFFSET_RE = re.compile(r"(Z|[+-]\d{2}:\d{2})$")


class GoogleCalendarClient:
    """
    Async wrapper around the Calendar v3 discovery client.

    Each call runs the blocking request in a worker thread with its own
    AuthorizedHttp, since httplib2 connections cannot be shared across threads.
    HttpError is re-raised as CalendarApiError so callers can inspect
    ``status_code``.
    """

    def __init__(self, account_id: str, credentials: Credentials):
        self.account_id = account_id
        self._credentials = credentials
        self._service = build(
            "calendar", "v3", credentials=credentials, cache_discovery=False
        )

    def __repr__(self) -> str:
        return f"GoogleCalendarClient({self.account_id!r})"

    async def _execute(self, request) -> dict:
        http = AuthorizedHttp(self._credentials, http=httplib2.Http())
        try:
            return await asyncio.to_thread(request.execute, http=http)
        except HttpError as e:
            raise CalendarApiError.from_http_error(e) from e

    # ------------------------------------------------------------------
    # Calendar listing
    # ------------------------------------------------------------------

    async def list_calendars(self) -> list[dict]:
        """Return every calendar list entry, following pagination."""
        items: list[dict] = []
        page_token: Optional[str] = None
        while True:
            result = await self._execute(
                self._service.calendarList().list(pageToken=page_token)
            )
            items.extend(result.get("items", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                return items

    async def get_calendar(self, calendar_id: str) -> dict:
        """Fetch one calendar list entry (includes its default timeZone)."""
        return await self._execute(
            self._service.calendarList().get(calendarId=calendar_id)
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def list_events(self, calendar_id: str, **params: Any) -> list[dict]:
        result = await self._execute(
            self._service.events().list(calendarId=calendar_id, **params)
        )
        return result.get("items", [])

    async def get_event(self, calendar_id: str, event_id: str) -> dict:
        return await self._execute(
            self._service.events().get(calendarId=calendar_id, eventId=event_id)
        )

    async def insert_event(
        self, calendar_id: str, body: dict, send_updates: Optional[str] = None
    ) -> dict:
        kwargs: dict[str, Any] = {"calendarId": calendar_id, "body": body}
        if send_updates:
            kwargs["sendUpdates"] = send_updates
        if body.get("conferenceData"):
            kwargs["conferenceDataVersion"] = 1
        return await self._execute(self._service.events().insert(**kwargs))

    async def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        body: dict,
        send_updates: Optional[str] = None,
    ) -> dict:
        kwargs: dict[str, Any] = {
            "calendarId": calendar_id,
            "eventId": event_id,
            "body": body,
        }
        if send_updates:
            kwargs["sendUpdates"] = send_updates
        return await self._execute(self._service.events().patch(**kwargs))

    async def delete_event(
        self, calendar_id: str, event_id: str, send_updates: Optional[str] = None
    ) -> None:
        kwargs: dict[str, Any] = {"calendarId": calendar_id, "eventId": event_id}
        if send_updates:
            kwargs["sendUpdates"] = send_updates
        await self._execute(self._service.events().delete(**kwargs))

    # ------------------------------------------------------------------
    # Free/busy
    # ------------------------------------------------------------------

    async def query_free_busy(
        self,
        calendar_ids: list[str],
        time_min: str,
        time_max: str,
        time_zone: Optional[str] = None,
    ) -> dict[str, dict]:
        """Return the freebusy ``calendars`` map: calendar id -> {'busy': [...], 'errors'?: [...]}."""
        body: dict[str, Any] = {
            "timeMin": time_min,
            "timeMax": time_max,
            "items": [{"id": calendar_id} for calendar_id in calendar_ids],
        }
        if time_zone:
            body["timeZone"] = time_zone
        result = await self._execute(self._service.freebusy().query(body=body))
        return result.get("calendars", {})


# ---------------------------------------------------------------------------
# Event time helpers
# ---------------------------------------------------------------------------

def has_utc_offset(value: str) -> bool:
    return bool(_OFFSET_RE.search(value))


def create_time_object(value: str, fallback_timezone: str) -> dict:
    """
    Build a Calendar API start/end object from a flexible time input.

    Accepts:
        '2026-02-17'                  -> all-day {'date': ...}
        '2026-02-17T14:00:00-08:00'   -> {'dateTime': ...} as given
        '2026-02-17T14:00:00'         -> {'dateTime': ..., 'timeZone': fallback}
        '{"dateTime": "...", "timeZone": "Europe/Paris"}' or '{"date": "..."}'

    Raises:
        ValueError: For malformed JSON objects or conflicting fields.
    """
    text = value.strip()
    if text.startswith("{"):
        try:
            obj = json.loads(text)
        except json.JSONDecodeError:
            raise ValueError("Invalid JSON in time input") from None
        if "date" in obj and "dateTime" in obj:
            raise ValueError("Cannot specify both 'date' and 'dateTime' in time input")
        if obj.get("date"):
            return {"date": obj["date"]}
        if obj.get("dateTime"):
            tz = obj.get("timeZone")
            if tz is not None:
                if not isinstance(tz, str):
                    raise ValueError("timeZone must be a string (IANA timezone)")
                if not tz.strip():
                    raise ValueError("timeZone cannot be empty; omit it or give an IANA timezone")
            if has_utc_offset(obj["dateTime"]):
                return {"dateTime": obj["dateTime"]}
            return {"dateTime": obj["dateTime"], "timeZone": tz or fallback_timezone}
        raise ValueError("Invalid time object: must have either dateTime or date")

    if "T" not in text:
        return {"date": text}
    if has_utc_offset(text):
        return {"dateTime": text}
    return {"dateTime": text, "timeZone": fallback_timezone}


def simplify_event(event: dict) -> dict:
    """Extract the most useful fields from a raw Google Calendar event dict."""
    start = event.get("start", {})
    end = event.get("end", {})
    return {
        "id": event.get("id"),
        "title": event.get("summary", "(no title)"),
        "start": start.get("dateTime") or start.get("date"),
        "end": end.get("dateTime") or end.get("date"),
        "time_zone": start.get("timeZone"),
        "description": event.get("description"),
        "location": event.get("location"),
        "html_link": event.get("htmlLink"),
        "status": event.get("status"),
        "organizer": event.get("organizer", {}).get("email"),
        "recurring_event_id": event.get("recurringEventId"),
    }
