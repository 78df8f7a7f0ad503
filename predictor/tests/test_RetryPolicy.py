"""Unit tests for RetryPolicy."""

import asyncio
import importlib
import logging

import pytest

from predictor.src.RetryPolicy import RetryPolicy

retry_module = importlib.import_module("predictor.src.RetryPolicy")


@pytest.fixture
def sleeps(monkeypatch) -> list[float]:
    """Record sleeps instead of waiting."""
    recorded: list[float] = []
    monkeypatch.setattr(retry_module.time, "sleep", recorded.append)

    async def fake_sleep(delay: float) -> None:
        recorded.append(delay)

    monkeypatch.setattr(retry_module.asyncio, "sleep", fake_sleep)
    return recorded


class Flaky:
    """Fails a fixed number of times, then returns "ok"."""

    def __init__(self, failures: int, exc: type[Exception] = ConnectionError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return "ok"


class TestSchedule:
    """Test the delay schedule."""

    def test_default(self) -> None:
        assert list(RetryPolicy().schedule()) == [0.2, 0.5]

    def test_last_delay_repeats(self) -> None:
        assert list(RetryPolicy(max_attempts=5, delays=(0.1, 0.3)).schedule()) == [
            0.1, 0.3, 0.3, 0.3,
        ]

    def test_single_attempt(self) -> None:
        assert list(RetryPolicy(max_attempts=1).schedule()) == []

    def test_invalid(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(delays=(-1.0,))


class TestCall:
    """Test blocking retries."""

    def test_recovers(self, sleeps: list[float]) -> None:
        fn = Flaky(failures=2)
        assert RetryPolicy().call(fn) == "ok"
        assert fn.calls == 3
        assert sleeps == [0.2, 0.5]

    def test_gives_up(self, sleeps: list[float]) -> None:
        fn = Flaky(failures=5)
        with pytest.raises(ConnectionError, match="failure 3"):
            RetryPolicy().call(fn)
        assert fn.calls == 3

    def test_log_lines(self, sleeps: list[float], caplog) -> None:
        """Each failure is logged with the label, attempt count and error."""
        fn = Flaky(failures=5)
        with caplog.at_level(logging.DEBUG, logger=retry_module.__name__):
            with pytest.raises(ConnectionError):
                RetryPolicy().call(fn, what="[okx] trades BTC-USDC")
        records = [r for r in caplog.records if r.name == retry_module.__name__]
        assert [r.getMessage() for r in records] == [
            "[okx] trades BTC-USDC failed (attempt 1/3): failure 1",
            "[okx] trades BTC-USDC failed (attempt 2/3): failure 2",
            "[okx] trades BTC-USDC failed after 3 attempts: failure 3",
        ]
        assert [r.levelname for r in records] == ["DEBUG", "DEBUG", "WARNING"]

    def test_non_transient_not_retried(self, sleeps: list[float]) -> None:
        fn = Flaky(failures=1, exc=KeyError)
        policy = RetryPolicy(retry_on=(ConnectionError,))
        with pytest.raises(KeyError):
            policy.call(fn)
        assert fn.calls == 1
        assert sleeps == []


class TestCallAsync:
    """Test async retries."""

    def test_recovers(self, sleeps: list[float]) -> None:
        fn = Flaky(failures=1)

        async def attempt():
            return fn()

        assert asyncio.run(RetryPolicy().call_async(attempt)) == "ok"
        assert sleeps == [0.2]

    def test_gives_up(self, sleeps: list[float]) -> None:
        fn = Flaky(failures=3)

        async def attempt():
            return fn()

        with pytest.raises(ConnectionError):
            asyncio.run(RetryPolicy().call_async(attempt))
        assert sleeps == [0.2, 0.5]
