"""Pydantic input models shared by the batch pipeline and the MCP tools."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .clients.gcal import create_time_object

SendUpdates = Literal["all", "externalOnly", "none"]

MAX_BATCH_EVENTS = 50


class EventReminders(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    use_default: bool = Field(default=True, alias="useDefault")
    overrides: Optional[list[dict[str, Any]]] = Field(
        default=None,
        description="Reminder overrides, e.g. [{'method': 'popup', 'minutes': 10}].",
    )


class EventItem(BaseModel):
    """One event in a batch create request. Unset routing fields fall back to the batch defaults."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    summary: str = Field(..., description="Event title/summary", min_length=1, max_length=500)
    start: str = Field(
        ...,
        description=(
            "Start as ISO date ('2026-02-17', all-day), datetime ('2026-02-17T14:00:00'), "
            "or JSON '{\"dateTime\": ..., \"timeZone\": ...}'."
        ),
    )
    end: str = Field(..., description="End, in the same formats as start.")
    description: Optional[str] = Field(default=None, description="Event description.")
    location: Optional[str] = Field(default=None, description="Location string.")
    attendees: Optional[list[str]] = Field(
        default=None, description="Attendee email addresses."
    )
    color_id: Optional[str] = Field(default=None, description="Calendar color id ('1'-'11').")
    reminders: Optional[EventReminders] = Field(default=None)
    recurrence: Optional[list[str]] = Field(
        default=None, description="RRULE/EXRULE/RDATE/EXDATE lines."
    )
    transparency: Optional[Literal["opaque", "transparent"]] = Field(default=None)
    visibility: Optional[Literal["default", "public", "private", "confidential"]] = Field(
        default=None
    )

    account: Optional[str] = Field(
        default=None, description="Account to create this event with (overrides the batch default)."
    )
    calendar_id: Optional[str] = Field(
        default=None, description="Calendar for this event (overrides the batch default)."
    )
    time_zone: Optional[str] = Field(
        default=None, description="IANA time zone for naive datetimes (overrides the batch default)."
    )
    send_updates: Optional[SendUpdates] = Field(
        default=None, description="Guest notification policy (overrides the batch default)."
    )

    def to_event_body(self, time_zone: str) -> dict:
        """Build the Calendar API request body, resolving naive times against ``time_zone``."""
        body: dict[str, Any] = {
            "summary": self.summary,
            "start": create_time_object(self.start, time_zone),
            "end": create_time_object(self.end, time_zone),
        }
        if self.description is not None:
            body["description"] = self.description
        if self.location is not None:
            body["location"] = self.location
        if self.attendees:
            body["attendees"] = [{"email": email} for email in self.attendees]
        if self.color_id is not None:
            body["colorId"] = self.color_id
        if self.reminders is not None:
            body["reminders"] = self.reminders.model_dump(by_alias=True, exclude_none=True)
        if self.recurrence:
            body["recurrence"] = self.recurrence
        if self.transparency is not None:
            body["transparency"] = self.transparency
        if self.visibility is not None:
            body["visibility"] = self.visibility
        return body


class BatchDefaults(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    account: Optional[str] = Field(
        default=None,
        description="Default account. Omit to let the server pick the account with write access.",
    )
    calendar_id: str = Field(default="primary", description="Default calendar for every event.")
    time_zone: Optional[str] = Field(
        default=None,
        description="Default IANA time zone. Omit to use each calendar's own time zone.",
    )
    send_updates: Optional[SendUpdates] = Field(default=None)
