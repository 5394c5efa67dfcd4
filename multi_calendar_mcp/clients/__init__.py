from .gcal import GoogleCalendarClient, create_time_object, simplify_event

__all__ = ["GoogleCalendarClient", "create_time_object", "simplify_event"]
