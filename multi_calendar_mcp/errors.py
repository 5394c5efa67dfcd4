"""Error types shared by the registry, executor, and batch pipeline."""

from typing import Optional

from googleapiclient.errors import HttpError


class CalendarError(Exception):
    """Base class for calendar errors surfaced to tool callers."""

    kind = "calendar-error"
    retryable = False


class AccountNotFoundError(CalendarError):
    kind = "account-not-found"


class InsufficientPermissionError(CalendarError):
    kind = "insufficient-permission"


class InvalidIdentifierError(CalendarError):
    kind = "invalid-identifier-format"


class OperationTimeoutError(CalendarError):
    kind = "timeout"
    retryable = True


class CalendarApiError(CalendarError):
    """A Google Calendar API call failed with an HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500

    @property
    def kind(self) -> str:
        return "transient-remote" if self.retryable else "client-remote"

    @classmethod
    def from_http_error(cls, e: HttpError) -> "CalendarApiError":
        status = e.resp.status
        return cls(e._get_reason(), status_code=int(status) if status else None)


def format_error(e: BaseException) -> str:
    """Convert an exception to a human-readable message."""
    if isinstance(e, HttpError):
        e = CalendarApiError.from_http_error(e)
    if isinstance(e, CalendarApiError):
        code = e.status_code
        if code == 404:
            return f"Error: Calendar or event not found. {e}"
        if code == 403:
            return f"Error: Permission denied. {e}"
        if code == 409:
            return "Error: Conflict, this event may already exist."
        if code == 429:
            return "Error: Google Calendar API rate limit hit. Wait a moment and retry."
        if code is not None and code >= 500:
            return f"Error: Google Calendar server error {code}: {e}"
        if code is not None:
            return f"Error: Google Calendar API error {code}: {e}"
        return f"Error: Google Calendar API error: {e}"
    if isinstance(e, CalendarError):
        return f"Error: {e}"
    return f"Error: {str(e) or type(e).__name__}"
