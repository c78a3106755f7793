"""Error handling, retries and structured logging for the grouping core.

One ``ErrorHandler`` is built by the host at startup and passed to whatever
needs it. It emits structlog events, keeps a bounded ring of recent entries
for the monitoring endpoint, and wraps async operations with retry and
primary/fallback policies.
"""

from __future__ import annotations

import asyncio
import enum
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from grouper.config import RetryConfig
from grouper.core.errors import ErrorCategory, ErrorContext, GroupingError, ValidationError

log = structlog.get_logger()

T = TypeVar("T")

ErrorReporter = Callable[[GroupingError, ErrorContext], None]


class LogLevel(str, enum.Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


_LEVEL_ORDER = [LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARN, LogLevel.ERROR, LogLevel.FATAL]

# structlog method per level.
_LOG_METHODS = {
    LogLevel.DEBUG: "debug",
    LogLevel.INFO: "info",
    LogLevel.WARN: "warning",
    LogLevel.ERROR: "error",
    LogLevel.FATAL: "critical",
}


@dataclass
class LogEntry:
    timestamp: datetime
    level: LogLevel
    category: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "category": self.category,
            "message": self.message,
            "context": self.context,
            "error": self.error,
        }


def _retryable(exc: BaseException) -> bool:
    # Bad input will not get better by asking again.
    return not isinstance(exc, ValidationError)


class ErrorHandler:
    """Structured logging plus retry/fallback wrappers.

    ``reporter`` is called for every handled error; hosts use it to forward
    errors to their monitoring. ``sleep`` is injectable so tests can observe
    the backoff without waiting.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        reporter: ErrorReporter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        min_level: LogLevel = LogLevel.DEBUG,
    ) -> None:
        self._config = config or RetryConfig()
        self._reporter = reporter
        self._sleep = sleep
        self._min_level = min_level
        self._entries: deque[LogEntry] = deque(maxlen=self._config.max_log_entries)

    @property
    def config(self) -> RetryConfig:
        return self._config

    def set_reporter(self, reporter: ErrorReporter | None) -> None:
        self._reporter = reporter

    # -- logging ---------------------------------------------------------

    def log(
        self,
        level: LogLevel,
        category: str,
        message: str,
        error: BaseException | None = None,
        **context: Any,
    ) -> None:
        if _LEVEL_ORDER.index(level) < _LEVEL_ORDER.index(self._min_level):
            return
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc),
            level=level,
            category=category,
            message=message,
            context=context,
            error=str(error) if error is not None else None,
        )
        self._entries.append(entry)

        emit = getattr(log, _LOG_METHODS[level])
        if error is not None and level in (LogLevel.ERROR, LogLevel.FATAL):
            emit(message, category=category, error=str(error), exc_info=error, **context)
        elif error is not None:
            emit(message, category=category, error=str(error), **context)
        else:
            emit(message, category=category, **context)

    def debug(self, category: str, message: str, **context: Any) -> None:
        self.log(LogLevel.DEBUG, category, message, **context)

    def info(self, category: str, message: str, **context: Any) -> None:
        self.log(LogLevel.INFO, category, message, **context)

    def warn(self, category: str, message: str, error: BaseException | None = None, **context: Any) -> None:
        self.log(LogLevel.WARN, category, message, error, **context)

    def error(self, category: str, message: str, error: BaseException | None = None, **context: Any) -> None:
        self.log(LogLevel.ERROR, category, message, error, **context)

    def recent_logs(self, limit: int = 100, level: LogLevel | None = None) -> list[LogEntry]:
        entries = [e for e in self._entries if level is None or e.level is level]
        return entries[-limit:] if limit > 0 else []

    def clear_logs(self) -> None:
        self._entries.clear()
        self.info("system", "log_entries_cleared")

    def error_stats(self) -> dict:
        """Error counts by category and level, plus the hourly rate over the last day."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=24)
        by_category: dict[str, int] = {}
        by_level: dict[str, int] = {}
        recent = 0
        for entry in self._entries:
            if entry.level not in (LogLevel.ERROR, LogLevel.FATAL):
                continue
            by_category[entry.category] = by_category.get(entry.category, 0) + 1
            by_level[entry.level.value] = by_level.get(entry.level.value, 0) + 1
            if entry.timestamp >= cutoff:
                recent += 1
        return {
            "total_errors": sum(by_level.values()),
            "errors_by_category": by_category,
            "errors_by_level": by_level,
            "recent_error_rate_per_hour": round(recent / 24, 3),
        }

    # -- error handling --------------------------------------------------

    def handle_error(self, error: BaseException, context: ErrorContext) -> GroupingError:
        """Log an error, hand it to the reporter and return it as a GroupingError.

        Unknown exceptions are wrapped as ``system`` errors with the original
        chained as the cause.
        """
        if isinstance(error, GroupingError):
            grouping_error = error
            if grouping_error.context is None:
                grouping_error.context = context
        else:
            grouping_error = GroupingError(
                str(error) or type(error).__name__,
                context,
                category=ErrorCategory.SYSTEM,
                cause=error,
            )

        self.error(
            grouping_error.category.value,
            "operation_failed",
            grouping_error,
            recoverable=grouping_error.recoverable,
            error_type=type(grouping_error).__name__,
            **context.as_log_fields(),
        )

        if self._reporter is not None:
            try:
                self._reporter(grouping_error, context)
            except Exception:
                log.error("error_reporter_failed", exc_info=True, **context.as_log_fields())

        return grouping_error

    def validate_input(self, condition: bool, message: str, context: ErrorContext) -> None:
        if not condition:
            error = ValidationError(message, context)
            self.handle_error(error, context)
            raise error

    def install_asyncio_handler(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route exceptions nobody awaited to ``handle_error``.

        Hosts call this once at startup instead of relying on a global hook.
        """
        def _handler(_loop: asyncio.AbstractEventLoop, ctx: dict) -> None:
            exc = ctx.get("exception") or RuntimeError(ctx.get("message", "unhandled error"))
            self.handle_error(exc, ErrorContext(operation="unhandled", component="event_loop"))

        loop.set_exception_handler(_handler)

    # -- wrappers --------------------------------------------------------

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: ErrorContext,
        retries: int | None = None,
    ) -> T:
        """Run ``operation``, retrying with ``delay * 2**attempt`` between attempts.

        Validation errors are raised immediately. After the last attempt the
        failure goes through ``handle_error`` and is raised as a GroupingError.
        """
        max_retries = self._config.max_retries if retries is None else retries
        if not self._config.enable_retry:
            max_retries = 0
        delay_s = self._config.retry_delay_ms / 1000

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            self.warn(
                "retry",
                "operation_retrying",
                exc,
                attempt=state.attempt_number,
                next_delay_s=state.next_action.sleep if state.next_action else None,
                **context.as_log_fields(),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_exponential(multiplier=delay_s, exp_base=2, min=0),
            retry=retry_if_exception(_retryable),
            sleep=self._sleep,
            before_sleep=_before_sleep,
            reraise=True,
        )

        attempt = 0
        try:
            async for attempt_state in retrying:
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    result = await operation()
        except Exception as exc:
            raise self.handle_error(exc, context)

        if attempt > 1:
            self.info("retry", "operation_succeeded_after_retry", attempt=attempt,
                      **context.as_log_fields())
        return result

    async def execute_with_fallback(
        self,
        primary: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
        context: ErrorContext,
    ) -> T:
        """Run ``primary`` with retries; if it still fails, run ``fallback`` once.

        If the fallback fails too, both failures are logged and the primary
        error is raised with the fallback error attached.
        """
        if not self._config.enable_fallback:
            return await self.execute_with_retry(primary, context)

        try:
            return await self.execute_with_retry(primary, context)
        except GroupingError as primary_error:
            self.warn("fallback", "primary_failed_trying_fallback", primary_error,
                      **context.as_log_fields())
            try:
                result = await fallback()
            except Exception as fallback_error:
                self.error(
                    "fallback",
                    "primary_and_fallback_failed",
                    fallback_error,
                    primary_error=str(primary_error),
                    **context.as_log_fields(),
                )
                primary_error.fallback_error = fallback_error
                raise primary_error
            self.info("fallback", "fallback_succeeded", **context.as_log_fields())
            return result
