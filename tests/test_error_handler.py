"""Tests for ErrorHandler retries, fallbacks and the log ring."""

from __future__ import annotations

import asyncio

import pytest

from grouper.config import RetryConfig
from grouper.core.error_handler import ErrorHandler, LogLevel
from grouper.core.errors import (
    DatabaseError,
    ErrorCategory,
    ErrorContext,
    GroupingError,
    NetworkError,
    ValidationError,
)

CTX = ErrorContext(operation="fetch_candidates", component="tests", report_id="r1")


class FlakyOperation:
    """Fails ``failures`` times with ``error``, then returns ``value``."""

    def __init__(self, failures: int, error: Exception, value: str = "ok") -> None:
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def handler(sleeps):
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return ErrorHandler(RetryConfig(max_retries=3, retry_delay_ms=1000), sleep=fake_sleep)


@pytest.mark.asyncio
async def test_fail_twice_then_succeed(handler, sleeps):
    op = FlakyOperation(2, NetworkError("connection reset"))
    assert await handler.execute_with_retry(op, CTX) == "ok"
    assert op.calls == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retries_exhausted(handler, sleeps):
    reported = []
    handler.set_reporter(lambda err, ctx: reported.append((err, ctx)))
    op = FlakyOperation(10, DatabaseError("db unavailable"))

    with pytest.raises(DatabaseError):
        await handler.execute_with_retry(op, CTX)
    assert op.calls == 4
    assert sleeps == [1.0, 2.0, 4.0]
    assert len(reported) == 1
    assert reported[0][1] is CTX


@pytest.mark.asyncio
async def test_validation_errors_are_not_retried(handler, sleeps):
    op = FlakyOperation(1, ValidationError("missing title"))
    with pytest.raises(ValidationError):
        await handler.execute_with_retry(op, CTX)
    assert op.calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_retry_can_be_disabled(sleeps):
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    handler = ErrorHandler(RetryConfig(enable_retry=False), sleep=fake_sleep)
    op = FlakyOperation(1, NetworkError("timeout"))
    with pytest.raises(NetworkError):
        await handler.execute_with_retry(op, CTX)
    assert op.calls == 1


@pytest.mark.asyncio
async def test_unknown_exceptions_become_system_errors(handler):
    original = RuntimeError("boom")
    op = FlakyOperation(10, original)
    with pytest.raises(GroupingError) as exc_info:
        await handler.execute_with_retry(op, CTX, retries=0)
    error = exc_info.value
    assert error.category is ErrorCategory.SYSTEM
    assert error.__cause__ is original
    assert error.context is CTX


@pytest.mark.asyncio
async def test_fallback_used_when_primary_fails(handler):
    primary = FlakyOperation(10, NetworkError("down"))

    async def fallback():
        return []

    assert await handler.execute_with_fallback(primary, fallback, CTX) == []
    assert primary.calls == 4
    messages = [e.message for e in handler.recent_logs()]
    assert "primary_failed_trying_fallback" in messages
    assert "fallback_succeeded" in messages


@pytest.mark.asyncio
async def test_fallback_failure_raises_primary(handler):
    primary_error = NetworkError("down")
    fallback_error = RuntimeError("cache empty")
    primary = FlakyOperation(10, primary_error)

    async def fallback():
        raise fallback_error

    with pytest.raises(NetworkError) as exc_info:
        await handler.execute_with_fallback(primary, fallback, CTX)
    assert exc_info.value is primary_error
    assert exc_info.value.fallback_error is fallback_error


def test_error_defaults():
    assert NetworkError("x").recoverable
    assert not DatabaseError("x").recoverable
    assert ValidationError("x").category is ErrorCategory.VALIDATION
    assert GroupingError("x", category=ErrorCategory.EXTERNAL_SERVICE).category is ErrorCategory.EXTERNAL_SERVICE


def test_handle_error_keeps_grouping_errors(handler):
    error = NetworkError("down")
    assert handler.handle_error(error, CTX) is error
    assert error.context is CTX
    stats = handler.error_stats()
    assert stats["total_errors"] == 1
    assert stats["errors_by_category"] == {"network": 1}


def test_validate_input(handler):
    handler.validate_input(True, "fine", CTX)
    with pytest.raises(ValidationError):
        handler.validate_input(False, "title is required", CTX)


def test_log_ring_is_bounded():
    handler = ErrorHandler(RetryConfig(max_log_entries=5))
    for i in range(8):
        handler.info("tests", f"entry_{i}")
    entries = handler.recent_logs()
    assert len(entries) == 5
    assert entries[-1].message == "entry_7"


def test_recent_logs_filters_level(handler):
    handler.info("tests", "hello")
    handler.warn("tests", "careful")
    assert [e.message for e in handler.recent_logs(level=LogLevel.WARN)] == ["careful"]
    handler.clear_logs()
    assert [e.message for e in handler.recent_logs()] == ["log_entries_cleared"]


def test_min_level_drops_debug():
    handler = ErrorHandler(min_level=LogLevel.INFO)
    handler.debug("tests", "noise")
    handler.info("tests", "signal")
    assert [e.message for e in handler.recent_logs()] == ["signal"]


@pytest.mark.asyncio
async def test_asyncio_handler_routes_unhandled_errors(handler):
    loop = asyncio.get_running_loop()
    previous = loop.get_exception_handler()
    handler.install_asyncio_handler(loop)
    try:
        loop.call_exception_handler({"message": "task failed", "exception": RuntimeError("lost")})
    finally:
        loop.set_exception_handler(previous)
    assert handler.error_stats()["errors_by_category"] == {"system": 1}
