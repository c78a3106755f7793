"""In-process report store implementing CandidateSource.

Holds the latest snapshot of every report the host has told us about.
Used by the HTTP adapter and the tests; production hosts plug their own
database-backed CandidateSource in instead.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from grouper.core.models import Report
    from grouper.storage.base import CandidateWindow

log = structlog.get_logger()


class InMemoryReportStore:
    """CandidateSource backed by a dict. Zero dependencies."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reports: dict[str, Report] = {}

    def put(self, report: Report) -> None:
        with self._lock:
            self._reports[report.id] = report

    def remove(self, report_id: str) -> bool:
        with self._lock:
            return self._reports.pop(report_id, None) is not None

    def get(self, report_id: str) -> Report | None:
        with self._lock:
            return self._reports.get(report_id)

    def all(self) -> list[Report]:
        with self._lock:
            return list(self._reports.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._reports)

    async def fetch_candidate_reports(self, window: CandidateWindow) -> list[Report]:
        with self._lock:
            found = [r for r in self._reports.values() if window.contains(r.created_at)]
        log.debug("candidates_fetched", count=len(found),
                  start=window.start.isoformat(), end=window.end.isoformat())
        return found
