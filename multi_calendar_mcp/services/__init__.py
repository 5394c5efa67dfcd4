from .availability import AvailabilityChecker
from .batch import BatchCreateResult, BatchEventCreator, CircuitBreaker
from .conflicts import ConflictDetector
from .executor import BatchResult, ParallelExecutor
from .registry import CalendarRegistry, ResolvedTarget, UnifiedCalendar

__all__ = [
    "AvailabilityChecker",
    "BatchCreateResult",
    "BatchEventCreator",
    "BatchResult",
    "CalendarRegistry",
    "CircuitBreaker",
    "ConflictDetector",
    "ParallelExecutor",
    "ResolvedTarget",
    "UnifiedCalendar",
]
