"""Bounded-concurrency fan-out runner with per-call timeout and retries."""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from ..errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRY_DELAY = 30.0
MAX_JITTER = 1.0


@dataclass
class FailedOperation:
    id: str
    error: BaseException
    attempts_made: int

    def to_dict(self) -> dict:
        return {"id": self.id, "error": str(self.error), "attempts": self.attempts_made}


@dataclass
class BatchResult(Generic[T]):
    successful: list[T] = field(default_factory=list)
    failed: list[FailedOperation] = field(default_factory=list)
    total_time_ms: float = 0.0


@dataclass
class _Outcome:
    id: str
    value: Any = None
    error: Optional[BaseException] = None
    attempts_made: int = 0


def is_retryable(error: BaseException) -> bool:
    """Client errors other than 429 are terminal; everything else may be retried."""
    status = getattr(error, "status_code", None)
    if isinstance(status, int) and 400 <= status < 500 and status != 429:
        return False
    return True


class ParallelExecutor:
    """
    Run independent async operations with a concurrency ceiling.

    Operations past ``max_concurrency`` wait for a free slot in submission
    order. The ceiling is shared by concurrent ``execute_parallel`` calls on
    the same instance. Each attempt is bounded by ``timeout`` seconds; on expiry the
    attempt's task is cancelled. Work already handed to a thread keeps running
    and its result is discarded.

    Args:
        max_concurrency: Maximum operations in flight at once.
        timeout: Seconds allowed per attempt.
        retry_attempts: Attempts per operation, including the first.
        retry_delay: Base delay in seconds; doubles after every attempt.
        sleep: Awaitable sleep used between attempts (tests inject a fake).
        jitter: Returns the random jitter in seconds added to each delay.
    """

    def __init__(
        self,
        max_concurrency: int = 5,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[], float] = lambda: random.uniform(0, MAX_JITTER),
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.max_concurrency = max_concurrency
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._jitter = jitter
        self._gate = asyncio.Semaphore(max_concurrency)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-indexed)."""
        delay = self.retry_delay * (2 ** (attempt - 1)) + self._jitter()
        return min(delay, MAX_RETRY_DELAY)

    async def execute_parallel(
        self, operations: Iterable[tuple[str, Callable[[], Awaitable[T]]]]
    ) -> BatchResult[T]:
        """
        Run every operation to completion and split successes from failures.

        Args:
            operations: (id, factory) pairs. The factory is called once per
                attempt and must return a fresh awaitable each time.

        Returns:
            BatchResult with successful values in submission order, failures
            with their terminal error and attempt count, and elapsed time.
        """
        start = time.perf_counter()

        async def run(op_id: str, factory: Callable[[], Awaitable[T]]) -> _Outcome:
            async with self._gate:
                return await self._execute_with_retry(op_id, factory)

        outcomes = await asyncio.gather(*(run(op_id, factory) for op_id, factory in operations))

        result: BatchResult[T] = BatchResult()
        for outcome in outcomes:
            if outcome.error is None:
                result.successful.append(outcome.value)
            else:
                result.failed.append(
                    FailedOperation(outcome.id, outcome.error, outcome.attempts_made)
                )
        result.total_time_ms = (time.perf_counter() - start) * 1000
        if result.failed:
            logger.info(
                "Parallel batch finished: %d succeeded, %d failed in %.0f ms",
                len(result.successful),
                len(result.failed),
                result.total_time_ms,
            )
        return result

    async def _execute_with_retry(
        self, op_id: str, factory: Callable[[], Awaitable[T]]
    ) -> _Outcome:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                value = await asyncio.wait_for(factory(), timeout=self.timeout)
                return _Outcome(op_id, value=value, attempts_made=attempt)
            except asyncio.TimeoutError:
                last_error = OperationTimeoutError(
                    f"Operation timed out after {self.timeout:g}s"
                )
            except Exception as e:
                last_error = e
                if not is_retryable(e):
                    return _Outcome(op_id, error=e, attempts_made=attempt)

            if attempt < self.retry_attempts:
                delay = self.backoff_delay(attempt)
                logger.debug(
                    "Operation %s attempt %d failed (%s); retrying in %.2fs",
                    op_id,
                    attempt,
                    last_error,
                    delay,
                )
                await self._sleep(delay)

        return _Outcome(op_id, error=last_error, attempts_made=self.retry_attempts)

    async def fetch_across_calendars(
        self, client: Any, calendar_ids: Iterable[str], query_params: dict
    ) -> BatchResult[dict]:
        """List events from several calendars of one client in parallel."""

        def fetch(calendar_id: str) -> Callable[[], Awaitable[dict]]:
            async def operation() -> dict:
                events = await client.list_events(calendar_id, **query_params)
                return {"calendar_id": calendar_id, "events": events}

            return operation

        return await self.execute_parallel(
            (calendar_id, fetch(calendar_id)) for calendar_id in calendar_ids
        )
