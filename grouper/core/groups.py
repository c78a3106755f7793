"""In-memory group book-keeping.

Applies accepted ``group`` recommendations to the set of known groups while
keeping the membership invariants: a report is in at most one group, groups
only grow, and the group priority is the highest member priority. Removing
a report from a group is an administrative action and is not offered here.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Mapping

import structlog

from grouper.core.analyzer import GroupingAnalyzer
from grouper.core.models import GroupingAnalysis, PairAnalysis, Report, ReportGroup

log = structlog.get_logger()


@dataclass
class GroupUpdate:
    group: ReportGroup
    created: bool
    added_report_ids: list[str] = field(default_factory=list)


class GroupRegistry:
    """Thread-safe registry of report groups."""

    def __init__(self, analyzer: GroupingAnalyzer) -> None:
        self._analyzer = analyzer
        self._lock = threading.Lock()
        self._groups: dict[str, ReportGroup] = {}
        # report_id → group_id
        self._membership: dict[str, str] = {}

    def get(self, group_id: str) -> ReportGroup | None:
        with self._lock:
            return self._groups.get(group_id)

    def group_of(self, report_id: str) -> ReportGroup | None:
        with self._lock:
            group_id = self._membership.get(report_id)
            return self._groups.get(group_id) if group_id else None

    def all(self) -> list[ReportGroup]:
        with self._lock:
            return list(self._groups.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._groups)

    def accept(
        self,
        target: Report,
        analysis: GroupingAnalysis,
        reports: Mapping[str, Report],
    ) -> GroupUpdate | None:
        """Apply the ``group`` recommendations of ``analysis``.

        The target joins (or pulls its matches into) an existing group when
        it or any match already belongs to one; otherwise a new group is
        formed. Matches that belong to a different group stay where they are.
        Returns None when nothing changed, including when ``max_group_size``
        leaves no room for a second member.
        """
        matches = [p for p in analysis.group_matches if p.report_id in reports]
        if not matches:
            return None

        with self._lock:
            group = self._find_existing(target.id, matches)

            if group is None:
                free = [reports[p.report_id] for p in matches if p.report_id not in self._membership]
                if not free:
                    return None
                if self._analyzer.config.max_group_size < 2:
                    log.info("group_not_formed", primary=target.id, reason="max_group_size",
                             max_group_size=self._analyzer.config.max_group_size)
                    return None
                group =self._analyzer.build_group(target, free, analysis)
                self._groups[group.id] = group
                for rid in group.report_ids:
                    self._membership[rid] = group.id
                log.info("group_created", group_id=group.id, primary=target.id,
                         reports=group.report_count, priority=group.priority.value)
                return GroupUpdate(group=group, created=True,
                                   added_report_ids=list(group.report_ids))

            additions: list[tuple[Report, PairAnalysis]] = []
            if target.id not in self._membership:
                anchor = next(p for p in matches if self._membership.get(p.report_id) == group.id)
                additions.append((target, anchor))
            for pair in matches:
                if pair.report_id not in self._membership:
                    additions.append((reports[pair.report_id], pair))

            added = self._analyzer.extend_group(group, additions)
            if not added:
                return None
            for rid in added:
                self._membership[rid] = group.id
            log.info("group_extended", group_id=group.id, added=added,
                     reports=group.report_count, priority=group.priority.value)
            return GroupUpdate(group=group, created=False, added_report_ids=added)

    def _find_existing(self, target_id: str, matches: list[PairAnalysis]) -> ReportGroup | None:
        """The target's own group, else the group of its best-scoring grouped match. Caller holds lock."""
        group_id = self._membership.get(target_id)
        if group_id is not None:
            return self._groups[group_id]
        max_size = self._analyzer.config.max_group_size
        for pair in matches:
            group_id = self._membership.get(pair.report_id)
            if group_id is not None and self._groups[group_id].report_count < max_size:
                return self._groups[group_id]
        return None
