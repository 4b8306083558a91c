import asyncio

import pytest

from bambu_lan.config import RetryConfig
from bambu_lan.errors import (
    AuthenticationError,
    ConnectionTimeout,
    FilamentNotFound,
    InvalidPathError,
    TransferAuthError,
    TransferConnectionError,
)
from bambu_lan.retry import RetryPolicy, is_retryable


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def flaky(failures, result="ok"):
    calls = {"count": 0}
    errors = list(failures)

    async def operation():
        calls["count"] += 1
        if errors:
            raise errors.pop(0)
        return result

    return operation, calls


@pytest.mark.asyncio
async def test_backoff_doubles_and_caps():
    sleep = RecordingSleep()
    policy = RetryPolicy(max_retries=4, initial_delay=1.0, max_delay=3.0, sleep=sleep)
    operation, calls = flaky([OSError("reset")] * 4)

    assert await policy.run(operation) == "ok"

    assert calls["count"] == 5
    assert sleep.delays == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    sleep = RecordingSleep()
    policy = RetryPolicy(max_retries=2, initial_delay=0.5, sleep=sleep)
    operation, calls = flaky([ValueError("nope")] * 5)

    with pytest.raises(ValueError):
        await policy.run(operation)

    assert calls["count"] == 3
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_conditional_stops_on_terminal_error():
    sleep = RecordingSleep()
    policy = RetryPolicy(max_retries=3, sleep=sleep)
    operation, calls = flaky([AuthenticationError("bad code", rc=5)])

    with pytest.raises(AuthenticationError):
        await policy.run_conditional(operation)

    assert calls["count"] == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_conditional_retries_transient_error_and_reports():
    sleep = RecordingSleep()
    seen = []
    policy = RetryPolicy(max_retries=3, initial_delay=0.1, sleep=sleep)
    operation, calls = flaky([ConnectionTimeout(10.0)])

    result = await policy.run_conditional(
        operation, on_retry=lambda attempt, exc, delay: seen.append((attempt, delay))
    )

    assert result == "ok"
    assert seen == [(1, 0.1)]


@pytest.mark.asyncio
async def test_cancellation_is_not_retried():
    policy = RetryPolicy(max_retries=3, sleep=RecordingSleep())
    operation, calls = flaky([asyncio.CancelledError()])

    with pytest.raises(asyncio.CancelledError):
        await policy.run(operation)

    assert calls["count"] == 1


def test_jitter_stays_within_ratio():
    policy = RetryPolicy(initial_delay=2.0, max_delay=2.0, jitter_ratio=0.5)

    for _ in range(20):
        assert 1.0 <= policy.delay_for(1) <= 3.0


def test_from_config():
    policy = RetryPolicy.from_config(
        RetryConfig(max_retries=1, initial_delay_seconds=0.2, max_delay_seconds=0.8),
        max_retries=5,
    )

    assert policy.max_retries == 5
    assert policy.delay_for(3) == 0.8


def test_rejects_negative_retries():
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=-1)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (ConnectionTimeout(5.0), True),
        (TransferConnectionError("h", 990, "refused"), True),
        (ConnectionResetError(), True),
        (TimeoutError(), True),
        (RuntimeError("ECONNREFUSED 192.168.1.50"), True),
        (RuntimeError("network unreachable"), True),
        (AuthenticationError("denied"), False),
        (TransferAuthError(), False),
        (InvalidPathError("bad"), False),
        (RuntimeError("disk full"), False),
    ],
)
def test_is_retryable(exc, expected):
    assert is_retryable(exc) is expected


def test_filament_errors_are_terminal():
    class Profile:
        type = "PLA"
        colour = "#FF0000"
        index = 0

    assert not is_retryable(FilamentNotFound(Profile(), "No filaments loaded"))
