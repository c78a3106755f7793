"""Typed errors raised by the grouping core.

Every error carries a category, a recoverability flag, the context of the
operation that failed and, optionally, the exception that caused it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class ErrorCategory(str, enum.Enum):
    VALIDATION = "validation"
    NETWORK = "network"
    DATABASE = "database"
    PROCESSING = "processing"
    CONFIGURATION = "configuration"
    EXTERNAL_SERVICE = "external_service"
    USER_INPUT = "user_input"
    SYSTEM = "system"


@dataclass(frozen=True)
class ErrorContext:
    operation: str
    component: str
    report_id: str | None = None
    group_id: str | None = None
    user_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def as_log_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {"operation": self.operation, "component": self.component}
        for name in ("report_id", "group_id", "user_id"):
            value = getattr(self, name)
            if value is not None:
                fields[name] = value
        fields.update(self.extra)
        return fields


class GroupingError(Exception):
    """Base error for the grouping core."""

    category = ErrorCategory.SYSTEM
    default_recoverable = True

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        *,
        category: ErrorCategory | None = None,
        recoverable: bool | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category
        self.context = context
        self.recoverable = self.default_recoverable if recoverable is None else recoverable
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)
        # Set when a fallback also failed; the primary error stays the operative one.
        self.fallback_error: BaseException | None = None
        if cause is not None:
            self.__cause__ = cause


class ValidationError(GroupingError):
    """Bad or missing input to a pure function. Never retried."""

    category = ErrorCategory.VALIDATION


class NetworkError(GroupingError):
    category = ErrorCategory.NETWORK


class ProcessingError(GroupingError):
    category = ErrorCategory.PROCESSING


class DatabaseError(GroupingError):
    category = ErrorCategory.DATABASE
    default_recoverable = False
