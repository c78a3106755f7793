"""Grouping statistics.

Thread-safe in-memory counters describing what the grouping hooks have
done since startup. No framework dependencies.
"""

from __future__ import annotations

import threading
import time


class GroupingStats:
    """Thread-safe counters for events, analyses, batches and groups."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()

        # Counters
        self.events_received: dict[str, int] = {"created": 0, "updated": 0, "deleted": 0}
        self.updates_ignored: int = 0
        self.reports_analyzed: int = 0
        self.analysis_errors: int = 0
        self.batches_processed: int = 0
        self.batch_failures: int = 0
        self.matches_group: int = 0
        self.matches_review: int = 0
        self.groups_created: int = 0
        self.groups_extended: int = 0
        self.pending_depth: int = 0
        self.pending_max_depth: int = 0
        self.last_batch_ms: float = 0.0

    def record_event(self, kind: str) -> None:
        with self._lock:
            self.events_received[kind] = self.events_received.get(kind, 0) + 1

    def record_update_ignored(self) -> None:
        with self._lock:
            self.updates_ignored += 1

    def record_analysis(self, group_matches: int, review_matches: int) -> None:
        with self._lock:
            self.reports_analyzed += 1
            self.matches_group += group_matches
            self.matches_review += review_matches

    def record_analysis_error(self) -> None:
        with self._lock:
            self.analysis_errors += 1

    def record_batch(self, elapsed_ms: float, *, failed: bool = False) -> None:
        with self._lock:
            self.batches_processed += 1
            self.last_batch_ms = elapsed_ms
            if failed:
                self.batch_failures += 1

    def record_group(self, *, created: bool) -> None:
        with self._lock:
            if created:
                self.groups_created += 1
            else:
                self.groups_extended += 1

    def update_pending_depth(self, depth: int) -> None:
        with self._lock:
            self.pending_depth = depth
            if depth > self.pending_max_depth:
                self.pending_max_depth = depth

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "events_received": dict(self.events_received),
                "updates_ignored": self.updates_ignored,
                "reports_analyzed": self.reports_analyzed,
                "analysis_errors": self.analysis_errors,
                "batches_processed": self.batches_processed,
                "batch_failures": self.batch_failures,
                "matches": {
                    "group": self.matches_group,
                    "review": self.matches_review,
                },
                "groups": {
                    "created": self.groups_created,
                    "extended": self.groups_extended,
                },
                "pending_depth": self.pending_depth,
                "pending_max_depth_ever": self.pending_max_depth,
                "last_batch_ms": round(self.last_batch_ms, 1),
            }
