from .calendar import register_calendar_tools
from .schedule import register_schedule_tools

__all__ = [
    "register_calendar_tools",
    "register_schedule_tools",
]
