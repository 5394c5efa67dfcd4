"""
Batch event creation across accounts and calendars.

Items are processed one at a time in input order so the resolution cache and
the circuit breaker evolve deterministically. Calendar inserts are not atomic
across items, so the result reports partial success item by item.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from ..clients.gcal import simplify_event
from ..errors import format_error
from ..models import MAX_BATCH_EVENTS, BatchDefaults, EventItem
from .registry import CalendarRegistry, ResolvedTarget

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 3
FALLBACK_TIMEZONE = "UTC"


@dataclass
class CircuitBreaker:
    """Trips after ``threshold`` consecutive failures with the same message."""

    threshold: int = MAX_CONSECUTIVE_FAILURES
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    @property
    def tripped(self) -> bool:
        return self.consecutive_failures >= self.threshold

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.last_error = None

    def record_failure(self, message: str) -> bool:
        """Track a failure; return True if the breaker is now tripped."""
        if message == self.last_error:
            self.consecutive_failures += 1
        else:
            self.consecutive_failures = 1
            self.last_error = message
        return self.tripped


@dataclass
class Resolution:
    account_id: str
    client: Any
    calendar_id: str
    time_zone: Optional[str] = None


class ResolutionCache:
    """
    Per-invocation cache of (account, calendar) -> resolved client and time zone.

    ``None`` (use the default account) is its own key, distinct from any
    explicit account value.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[Optional[str], str], Resolution] = {}

    @staticmethod
    def key(account: Optional[str], calendar_id: str) -> tuple[Optional[str], str]:
        return (account, calendar_id)

    def get(self, account: Optional[str], calendar_id: str) -> Optional[Resolution]:
        return self._entries.get(self.key(account, calendar_id))

    def put(self, account: Optional[str], calendar_id: str, target: ResolvedTarget) -> Resolution:
        resolution = Resolution(target.account_id, target.client, target.calendar_id)
        self._entries[self.key(account, calendar_id)] = resolution
        return resolution

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class CreatedItem:
    index: int
    account_id: str
    calendar_id: str
    event: dict

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "account_id": self.account_id,
            "calendar_id": self.calendar_id,
            "event": simplify_event(self.event),
        }


@dataclass
class FailedItem:
    index: int
    summary: str
    error: str

    def to_dict(self) -> dict:
        return {"index": self.index, "summary": self.summary, "error": self.error}


@dataclass
class BatchCreateResult:
    total_requested: int
    created: list[CreatedItem] = field(default_factory=list)
    failed: list[FailedItem] = field(default_factory=list)

    @property
    def total_created(self) -> int:
        return len(self.created)

    @property
    def total_failed(self) -> int:
        return len(self.failed)

    @property
    def is_error(self) -> bool:
        return self.total_created == 0 and self.total_failed > 0

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {
            "total_requested": self.total_requested,
            "total_created": self.total_created,
            "total_failed": self.total_failed,
        }
        if self.created:
            payload["created"] = [item.to_dict() for item in self.created]
        if self.failed:
            payload["failed"] = [item.to_dict() for item in self.failed]
        return payload


def merge_field(item: EventItem, defaults: BatchDefaults, name: str) -> Any:
    """Item value if given (empty strings included), else the batch default."""
    value = getattr(item, name)
    return value if value is not None else getattr(defaults, name)


class BatchEventCreator:
    """Create many events in one call, resolving accounts through the registry."""

    def __init__(
        self,
        registry: CalendarRegistry,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
    ):
        self.registry = registry
        self.max_consecutive_failures = max_consecutive_failures

    async def create_many(
        self,
        defaults: BatchDefaults,
        items: Sequence[EventItem],
        accounts: Mapping[str, Any],
    ) -> BatchCreateResult:
        """
        Create ``items`` in order and report per-item results.

        When no item overrides the account, write access for the default
        (account, calendar) is checked once up front and any resolution error
        propagates before a single event is created. All later failures are
        captured in the result instead of raised.

        Raises:
            ValueError: Fewer than 1 or more than 50 items.
            CalendarError: Pre-validation of the default target failed.
        """
        if not 1 <= len(items) <= MAX_BATCH_EVENTS:
            raise ValueError(f"Batch must contain between 1 and {MAX_BATCH_EVENTS} events")

        cache = ResolutionCache()
        breaker = CircuitBreaker(threshold=self.max_consecutive_failures)
        result = BatchCreateResult(total_requested=len(items))

        if not any(item.account is not None for item in items):
            target = await self.registry.resolve_target(
                defaults.calendar_id, accounts, defaults.account, "write"
            )
            cache.put(defaults.account, defaults.calendar_id, target)

        for index, item in enumerate(items):
            try:
                created = await self._create_one(index, item, defaults, accounts, cache)
            except Exception as e:
                message = format_error(e)
                result.failed.append(FailedItem(index, item.summary, message))
                logger.warning("Batch item %d (%r) failed: %s", index, item.summary, message)
                if breaker.record_failure(message) and index < len(items) - 1:
                    logger.warning(
                        "Stopping batch after %d identical failures; skipping %d event(s)",
                        breaker.consecutive_failures,
                        len(items) - index - 1,
                    )
                    for skipped_index in range(index + 1, len(items)):
                        result.failed.append(
                            FailedItem(
                                skipped_index,
                                items[skipped_index].summary,
                                f"Skipped: {message}",
                            )
                        )
                    break
            else:
                result.created.append(created)
                breaker.record_success()

        logger.info(
            "Batch create finished: %d/%d created, %d failed",
            result.total_created,
            result.total_requested,
            result.total_failed,
        )
        return result

    async def _resolve(
        self,
        account: Optional[str],
        calendar_id: str,
        accounts: Mapping[str, Any],
        cache: ResolutionCache,
    ) -> Resolution:
        resolution = cache.get(account, calendar_id)
        if resolution is None:
            target = await self.registry.resolve_target(calendar_id, accounts, account, "write")
            resolution = cache.put(account, calendar_id, target)
        return resolution

    async def _calendar_timezone(self, resolution: Resolution) -> str:
        if resolution.time_zone is None:
            try:
                details = await resolution.client.get_calendar(resolution.calendar_id)
                resolution.time_zone = details.get("timeZone") or FALLBACK_TIMEZONE
            except Exception as e:
                logger.debug(
                    "Time zone lookup failed for %s on %s, using %s: %s",
                    resolution.calendar_id,
                    resolution.account_id,
                    FALLBACK_TIMEZONE,
                    e,
                )
                resolution.time_zone = FALLBACK_TIMEZONE
        return resolution.time_zone

    async def _create_one(
        self,
        index: int,
        item: EventItem,
        defaults: BatchDefaults,
        accounts: Mapping[str, Any],
        cache: ResolutionCache,
    ) -> CreatedItem:
        account = merge_field(item, defaults, "account")
        calendar_id = merge_field(item, defaults, "calendar_id")
        time_zone = merge_field(item, defaults, "time_zone")
        send_updates = merge_field(item, defaults, "send_updates")

        resolution = await self._resolve(account, calendar_id, accounts, cache)
        if time_zone is None:
            time_zone = await self._calendar_timezone(resolution)

        event = await resolution.client.insert_event(
            resolution.calendar_id, item.to_event_body(time_zone), send_updates=send_updates
        )
        if not event:
            raise RuntimeError("Failed to create event, no data returned")
        return CreatedItem(index, resolution.account_id, resolution.calendar_id, event)
