"""Tests for ParallelExecutor: concurrency ceiling, timeouts, and retry policy."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeCalendarClient, api_error
from multi_calendar_mcp.errors import OperationTimeoutError
from multi_calendar_mcp.services.executor import ParallelExecutor, is_retryable


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _executor(**kwargs) -> tuple[ParallelExecutor, RecordingSleep]:
    sleep = RecordingSleep()
    kwargs.setdefault("jitter", lambda: 0.0)
    return ParallelExecutor(sleep=sleep, **kwargs), sleep


def _failing(error: Exception, calls: list[int]):
    async def operation():
        calls.append(1)
        raise error

    return operation


def _returning(value):
    async def operation():
        return value

    return operation


def test_defaults():
    executor = ParallelExecutor()

    assert executor.max_concurrency == 5
    assert executor.timeout == 30.0
    assert executor.retry_attempts == 3
    assert executor.retry_delay == 1.0


@pytest.mark.parametrize(
    "kwargs", [{"max_concurrency": 0}, {"retry_attempts": 0}, {"timeout": 0}]
)
def test_rejects_invalid_configuration(kwargs):
    with pytest.raises(ValueError):
        ParallelExecutor(**kwargs)


@pytest.mark.parametrize(
    "status, retryable",
    [(400, False), (403, False), (404, False), (429, True), (500, True), (503, True)],
)
def test_is_retryable_by_status(status, retryable):
    assert is_retryable(api_error(status)) is retryable


def test_errors_without_status_are_retryable():
    assert is_retryable(ConnectionResetError("reset"))


async def test_successes_keep_submission_order():
    executor, _ = _executor()

    result = await executor.execute_parallel([(str(i), _returning(i)) for i in range(4)])

    assert result.successful == [0, 1, 2, 3]
    assert result.failed == []
    assert result.total_time_ms >= 0


async def test_client_error_is_not_retried():
    executor, sleep = _executor()
    calls: list[int] = []

    result = await executor.execute_parallel([("missing", _failing(api_error(404), calls))])

    assert len(calls) == 1
    assert sleep.delays == []
    [failure] = result.failed
    assert failure.id == "missing"
    assert failure.attempts_made == 1
    assert failure.error.status_code == 404


async def test_rate_limit_is_retried_until_attempts_exhausted():
    executor, sleep = _executor(retry_attempts=3)
    calls: list[int] = []

    result = await executor.execute_parallel([("busy", _failing(api_error(429), calls))])

    assert len(calls) == 3
    assert result.failed[0].attempts_made == 3
    assert sleep.delays == [1.0, 2.0]


async def test_transient_failure_then_success():
    executor, _ = _executor()
    outcomes = [api_error(503), api_error(500), "ok"]

    async def flaky():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    result = await executor.execute_parallel([("flaky", flaky)])

    assert result.successful == ["ok"]
    assert result.failed == []


def test_backoff_is_exponential_with_jitter_and_capped():
    executor = ParallelExecutor(retry_delay=1.0, jitter=lambda: 0.5)
    capped = ParallelExecutor(retry_delay=20.0, jitter=lambda: 0.9)

    assert executor.backoff_delay(1) == 1.5
    assert executor.backoff_delay(3) == 4.5
    assert capped.backoff_delay(2) == 30.0


def test_default_jitter_stays_below_one_second():
    executor = ParallelExecutor(retry_delay=1.0)

    delays = [executor.backoff_delay(1) for _ in range(20)]

    assert all(1.0 <= d <= 2.0 for d in delays)


async def test_timeout_counts_as_retryable_failure():
    executor, sleep = _executor(timeout=0.01, retry_attempts=2)

    async def hang():
        await asyncio.sleep(10)

    result = await executor.execute_parallel([("slow", hang)])

    [failure] = result.failed
    assert isinstance(failure.error, OperationTimeoutError)
    assert failure.attempts_made == 2
    assert len(sleep.delays) == 1


async def test_failures_do_not_affect_siblings():
    executor, _ = _executor()
    calls: list[int] = []

    result = await executor.execute_parallel(
        [
            ("a", _returning("a")),
            ("bad", _failing(api_error(400), calls)),
            ("c", _returning("c")),
        ]
    )

    assert result.successful == ["a", "c"]
    assert [f.id for f in result.failed] == ["bad"]
    assert result.failed[0].to_dict()["attempts"] == 1


async def test_concurrency_ceiling():
    executor, _ = _executor(max_concurrency=2)
    active = 0
    peak = 0

    def make(i):
        async def operation():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return i

        return operation

    result = await executor.execute_parallel([(str(i), make(i)) for i in range(5)])

    assert peak == 2
    assert result.successful == [0, 1, 2, 3, 4]


async def test_fetch_across_calendars():
    client = FakeCalendarClient(
        "work",
        events={"a@example.com": [{"id": "1"}], "b@example.com": [{"id": "2"}, {"id": "3"}]},
        event_errors={"gone@example.com": api_error(404, "Not Found")},
    )
    executor, _ = _executor()

    result = await executor.fetch_across_calendars(
        client, ["a@example.com", "b@example.com", "gone@example.com"], {"maxResults": 10}
    )

    assert [(r["calendar_id"], len(r["events"])) for r in result.successful] == [
        ("a@example.com", 1),
        ("b@example.com", 2),
    ]
    assert [f.id for f in result.failed] == ["gone@example.com"]
    assert client.list_event_calls[0] == ("a@example.com", {"maxResults": 10})


async def test_concurrency_ceiling_spans_concurrent_calls():
    executor, _ = _executor(max_concurrency=2)
    active = 0
    peak = 0

    def make(i):
        async def operation():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return i

        return operation

    first, second = await asyncio.gather(
        executor.execute_parallel([(f"a{i}", make(i)) for i in range(3)]),
        executor.execute_parallel([(f"b{i}", make(i)) for i in range(3)]),
    )

    assert peak == 2
    assert first.successful == [0, 1, 2]
    assert second.successful == [0, 1, 2]
