from __future__ import annotations

import logging

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from stock_reconciliation import retry
from stock_reconciliation.config import Settings
from stock_reconciliation.retry import is_transient, retrying, with_retry


@pytest.fixture()
def sleeps(monkeypatch) -> list[float]:
    recorded: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        recorded.append(seconds)

    monkeypatch.setattr(retry, "_sleep", fake_sleep)
    return recorded


class FlakyOperation:
    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.mark.parametrize(
    "error",
    [
        RuntimeError("TypeError: fetch failed"),
        RuntimeError("read ECONNRESET"),
        RuntimeError("Network is unreachable"),
        OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly")),
        ConnectionResetError(),
        TimeoutError(),
    ],
)
def test_transient_errors_are_recognised(error: Exception) -> None:
    assert is_transient(error)


@pytest.mark.parametrize(
    "error",
    [
        ValueError("invalid literal for int()"),
        OperationalError("SELECT", {}, Exception("no such table: items")),
        IntegrityError("INSERT", {}, Exception("network UNIQUE constraint failed")),
    ],
)
def test_permanent_errors_are_not_transient(error: Exception) -> None:
    assert not is_transient(error)


async def test_transient_failures_are_retried_with_backoff(sleeps: list[float]) -> None:
    operation = FlakyOperation(2, RuntimeError("fetch failed"))

    result = await with_retry(operation, "items.fetch", max_attempts=3, base_delay=0.25)

    assert result == "ok"
    assert operation.calls == 3
    assert sleeps == [0.25, 0.5]


async def test_last_failure_is_raised_when_attempts_run_out(sleeps: list[float]) -> None:
    operation = FlakyOperation(5, RuntimeError("connection refused"))

    with pytest.raises(RuntimeError, match="connection refused"):
        await with_retry(operation, "items.fetch", max_attempts=3, base_delay=0.1)

    assert operation.calls == 3
    assert sleeps == [0.1, 0.2]


@pytest.mark.parametrize(
    "error",
    [
        ValueError("bad value"),
        IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: deposits.code")),
    ],
)
async def test_permanent_failures_are_not_retried(sleeps: list[float], error: Exception) -> None:
    operation = FlakyOperation(1, error)

    with pytest.raises(type(error)):
        await with_retry(operation, "deposits.insert", max_attempts=3, base_delay=0.25)

    assert operation.calls == 1
    assert sleeps == []


async def test_retry_logs_label_and_attempt(sleeps: list[float], caplog) -> None:
    operation = FlakyOperation(1, RuntimeError("fetch failed"))

    with caplog.at_level(logging.WARNING, logger="stock_reconciliation.retry"):
        await with_retry(operation, "deposit_items.upsert", max_attempts=2, base_delay=0)

    assert "deposit_items.upsert" in caplog.text
    assert "attempt 1/2" in caplog.text


async def test_decorated_call_rolls_back_session_between_attempts(sleeps: list[float]) -> None:
    class FakeSession:
        rollbacks = 0

        async def rollback(self) -> None:
            self.rollbacks += 1

    calls = []

    @retrying("locations.get")
    async def load(session, location_id):
        calls.append(location_id)
        if len(calls) == 1:
            raise RuntimeError("connection was closed")
        return location_id * 2

    session = FakeSession()

    assert await load(session, 21) == 42
    assert calls == [21, 21]
    assert session.rollbacks == 1


async def test_decorated_call_takes_policy_from_given_settings(sleeps: list[float]) -> None:
    class FakeSession:
        async def rollback(self) -> None:
            pass

    calls = []

    @retrying("items.fetch_meta")
    async def load(session, *, limit):
        calls.append(limit)
        raise RuntimeError("fetch failed")

    settings = Settings(retry_max_attempts=2, retry_base_delay=0)

    with pytest.raises(RuntimeError, match="fetch failed"):
        await load(FakeSession(), limit=5, settings=settings)

    assert calls == [5, 5]
    assert sleeps == [0]
