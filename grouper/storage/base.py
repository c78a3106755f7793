"""Storage interface (port) for fetching comparison candidates."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from grouper.core.models import Report


@dataclass(frozen=True)
class CandidateWindow:
    """Creation-time range the caller is interested in (inclusive)."""
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class CandidateSource(Protocol):
    """Port: supplies reports to compare new or changed reports against.

    May return an empty list. Reports outside the window are tolerated; the
    analyzer applies its own temporal filter.
    """

    async def fetch_candidate_reports(self, window: CandidateWindow) -> list[Report]: ...
