"""Grouping hooks: batch report events and drive the analyzer off the hot path.

The host calls ``report_created`` / ``report_updated`` / ``report_deleted``
from its own report workflow. Events are collected into a pending batch
that is flushed when the debounce delay passes without new events, or as
soon as the batch reaches ``max_batch_size``:

    Idle → Accumulating → Flushing → Idle

Only one flush runs at a time. A timer that fires during a flush re-arms
instead of starting a second one; events that arrive meanwhile simply wait
for the next batch. A single asyncio.Lock guards the pending batch.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping

import structlog

from grouper.config import BatchConfig
from grouper.core.errors import ErrorContext, GroupingError, NetworkError, ProcessingError
from grouper.storage.base import CandidateWindow

if TYPE_CHECKING:
    from grouper.core.analyzer import GroupingAnalyzer
    from grouper.core.error_handler import ErrorHandler
    from grouper.core.groups import GroupRegistry, GroupUpdate
    from grouper.core.models import DocumentVector, GroupingAnalysis, Report
    from grouper.core.stats import GroupingStats
    from grouper.storage.base import CandidateSource

log = structlog.get_logger()

# Only changes to these fields can change a grouping decision.
MEANINGFUL_FIELDS = frozenset({"title", "description", "category", "location", "status"})

FETCH_FALLBACK_EMPTY = "empty"
FETCH_PROPAGATE = "propagate"


class BatchState(str, enum.Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"


class EventType(str, enum.Enum):
    CREATED = "report_created"
    UPDATED = "report_updated"
    DELETED = "report_deleted"


@dataclass(frozen=True)
class GroupingEvent:
    type: EventType
    report_id: str
    timestamp: datetime
    user_id: str | None = None
    changed_fields: tuple[str, ...] = ()


@dataclass
class GroupingCallbacks:
    """Result callbacks wired by the host to persistence and notifications.

    Each may be a plain function or a coroutine function.
    """
    on_grouping_detected: Callable[[str, GroupingAnalysis], Any] | None = None
    on_grouping_error: Callable[[str, GroupingError], Any] | None = None
    on_batch_complete: Callable[[dict[str, GroupingAnalysis]], Any] | None = None
    on_group_updated: Callable[[GroupUpdate], Any] | None = None


@dataclass
class _Pending:
    event: GroupingEvent
    report: Report


@dataclass
class BatchStatus:
    state: BatchState
    pending_count: int
    is_processing: bool
    next_batch_in_ms: float | None = None
    pending_report_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "pending_count": self.pending_count,
            "is_processing": self.is_processing,
            "next_batch_in_ms": (
                round(self.next_batch_in_ms, 1) if self.next_batch_in_ms is not None else None
            ),
            "pending_report_ids": list(self.pending_report_ids),
        }


class GroupingHooks:
    """Batches report events and runs grouping analysis in the background."""

    def __init__(
        self,
        analyzer: GroupingAnalyzer,
        source: CandidateSource,
        error_handler: ErrorHandler,
        config: BatchConfig | None = None,
        *,
        registry: GroupRegistry | None = None,
        callbacks: GroupingCallbacks | None = None,
        stats: GroupingStats | None = None,
    ) -> None:
        self._analyzer = analyzer
        self._source = source
        self._errors = error_handler
        self._config = config or BatchConfig()
        self._registry = registry
        self._callbacks = callbacks or GroupingCallbacks()
        self._stats = stats

        self._lock = asyncio.Lock()
        self._pending: dict[str, _Pending] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._processing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks: set[asyncio.Task] = set()

    # -- configuration ---------------------------------------------------

    @property
    def config(self) -> BatchConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        return self._config.enable_auto_detection

    def set_callbacks(self, callbacks: GroupingCallbacks) -> None:
        self._callbacks = callbacks

    async def set_enabled(self, enabled: bool) -> None:
        self._config.enable_auto_detection = enabled
        if not enabled:
            await self.clear()
        log.info("grouping_hooks_toggled", enabled=enabled)

    # -- events ----------------------------------------------------------

    async def report_created(self, report: Report, user_id: str | None = None) -> None:
        if not self.enabled:
            return
        self._record_event("created")
        event = GroupingEvent(EventType.CREATED, report.id, _now(), user_id)
        log.debug("report_created_hook", report_id=report.id)
        await self._dispatch(event, report)

    async def report_updated(
        self,
        report: Report,
        changes: Mapping[str, Any] | Iterable[str],
        user_id: str | None = None,
    ) -> bool:
        """Queue an updated report. Returns False when no relevant field changed."""
        if not self.enabled:
            return False
        self._record_event("updated")
        changed = tuple(sorted(set(changes)))
        if not MEANINGFUL_FIELDS.intersection(changed):
            if self._stats is not None:
                self._stats.record_update_ignored()
            log.debug("report_update_ignored", report_id=report.id, changed=list(changed))
            return False
        event = GroupingEvent(EventType.UPDATED, report.id, _now(), user_id, changed)
        log.debug("report_updated_hook", report_id=report.id, changed=list(changed))
        await self._dispatch(event, report)
        return True

    async def report_deleted(self, report_id: str, user_id: str | None = None) -> bool:
        """Drop a report from the pending batch.

        Existing groups are left alone: dissolving them is an administrative
        decision.
        """
        self._record_event("deleted")
        async with self._lock:
            removed = self._pending.pop(report_id, None) is not None
            if not self._pending:
                self._cancel_timer()
            self._update_depth()
        log.info("report_deleted_hook", report_id=report_id, was_pending=removed, user_id=user_id)
        return removed

    async def _dispatch(self, event: GroupingEvent, report: Report) -> None:
        if not self._config.enable_async_processing:
            # Synchronous mode still goes through the single-flush guard.
            async with self._lock:
                self._pending[report.id] = _Pending(event, report)
                self._update_depth()
            await self._flush_when_idle(requeue_on_failure=False)
            return

        force = False
        async with self._lock:
            self._pending[report.id] = _Pending(event, report)
            self._cancel_timer()
            if len(self._pending) >= self._config.max_batch_size:
                force = True
            else:
                self._arm_timer()
            self._update_depth()

        if force:
            log.debug("batch_full", size=self._config.max_batch_size)
            self._spawn(self._flush_pending())

    # -- timer -----------------------------------------------------------

    def _arm_timer(self) -> None:
        """(Re)start the debounce timer. Runs without awaiting, so it is atomic on the loop."""
        self._cancel_timer()
        delay_s = self._config.batch_processing_delay_ms / 1000
        self._timer = asyncio.get_running_loop().call_later(delay_s, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if self._processing:
            log.debug("timer_fired_during_flush")
            self._arm_timer()
            return
        self._spawn(self._flush_pending())

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._errors.handle_error(exc, ErrorContext(operation="flush", component="hooks"))

    # -- flushing --------------------------------------------------------

    @property
    def state(self) -> BatchState:
        if self._processing:
            return BatchState.FLUSHING
        if self._pending:
            return BatchState.ACCUMULATING
        return BatchState.IDLE

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def flush(self) -> dict[str, GroupingAnalysis]:
        """Process the pending batch now.

        Waits for an in-flight flush to finish first, then flushes whatever
        is still pending.
        """
        return await self._flush_when_idle()

    async def _flush_when_idle(self, requeue_on_failure: bool = True) -> dict[str, GroupingAnalysis]:
        while True:
            await self._idle.wait()
            results = await self._flush_pending(requeue_on_failure)
            if results is not None:
                return results

    async def wait_idle(self) -> None:
        """Wait until no flush is running (does not flush by itself)."""
        await self._idle.wait()

    async def clear(self) -> int:
        """Drop the pending batch and cancel the timer. Returns how many were dropped."""
        async with self._lock:
            dropped = len(self._pending)
            self._pending.clear()
            self._cancel_timer()
            self._update_depth()
        log.info("pending_batch_cleared", dropped=dropped)
        return dropped

    async def _flush_pending(self, requeue_on_failure: bool = True) -> dict[str, GroupingAnalysis] | None:
        """Take the pending batch and process it.

        Returns None if another flush is in flight (the timer is re-armed so
        the pending reports are not forgotten), an empty dict if there was
        nothing to do.
        """
        async with self._lock:
            if self._processing:
                if self._pending and self._timer is None:
                    self._arm_timer()
                return None
            if not self._pending:
                return {}
            self._processing = True
            self._idle.clear()
            self._cancel_timer()
            batch = list(self._pending.values())
            self._pending.clear()
            self._update_depth()

        try:
            return await self._process_batch(batch, requeue_on_failure)
        finally:
            async with self._lock:
                self._processing = False
                if self._pending and self._timer is None:
                    self._arm_timer()
            self._idle.set()

    async def _process_batch(
        self,
        batch: list[_Pending],
        requeue_on_failure: bool = True,
    ) -> dict[str, GroupingAnalysis]:
        started = time.perf_counter()
        log.info("batch_processing", size=len(batch))
        try:
            return await self._run_batch(batch, started, requeue_on_failure)
        except Exception as exc:
            error = self._errors.handle_error(
                exc,
                ErrorContext(operation="process_batch", component="hooks",
                             extra={"batch_size": len(batch)}),
            )
            await self._fail_batch(batch, error, started, requeue_on_failure)
            return {}

    async def _run_batch(
        self,
        batch: list[_Pending],
        started: float,
        requeue_on_failure: bool,
    ) -> dict[str, GroupingAnalysis]:
        # Reports that cannot be placed in time are failed on their own.
        scorable: list[_Pending] = []
        for item in batch:
            if item.report.created_at.tzinfo is None:
                ctx = ErrorContext(operation="analyze", component="hooks",
                                   report_id=item.report.id, user_id=item.event.user_id)
                error = ProcessingError(f"report {item.report.id} has a timestamp without a time zone", ctx)
                await self._report_failure(item.report.id, self._errors.handle_error(error, ctx))
            else:
                scorable.append(item)

        results: dict[str, GroupingAnalysis] = {}
        if not scorable:
            return await self._complete_batch(batch, results, started)

        batch_reports = [item.report for item in scorable]
        try:
            candidates = await self._fetch_candidates(batch_reports)
        except GroupingError as exc:
            await self._fail_batch(scorable, exc, started, requeue_on_failure)
            return {}

        # Latest snapshot wins: batch reports override what the source returned.
        pool: dict[str, Report] = {c.id: c for c in candidates}
        pool.update({r.id: r for r in batch_reports})
        pool_list = list(pool.values())
        cache: dict[str, DocumentVector] = {}

        for item in scorable:
            report = item.report
            ctx = ErrorContext(operation="analyze", component="hooks", report_id=report.id,
                               user_id=item.event.user_id)
            try:
                analysis = await self._errors.execute_with_retry(
                    lambda: self._analyze(report, pool_list, cache), ctx,
                )
            except GroupingError as exc:
                await self._report_failure(report.id, exc)
                continue

            try:
                await self._handle_results(item, analysis, pool)
            except Exception as exc:
                group_ctx = ErrorContext(operation="apply_grouping", component="hooks",
                                         report_id=report.id, user_id=item.event.user_id)
                await self._report_failure(report.id, self._errors.handle_error(exc, group_ctx))
                continue
            results[report.id] = analysis

        return await self._complete_batch(batch, results, started)

    async def _report_failure(self, report_id: str, error: GroupingError) -> None:
        if self._stats is not None:
            self._stats.record_analysis_error()
        await self._notify("on_grouping_error", report_id, error)

    async def _fail_batch(
        self,
        batch: list[_Pending],
        error: GroupingError,
        started: float,
        requeue_on_failure: bool,
    ) -> None:
        log.warning("batch_failed", size=len(batch), error=str(error))
        for item in batch:
            await self._notify("on_grouping_error", item.report.id, error)
        if requeue_on_failure:
            await self._requeue(batch)
        if self._stats is not None:
            self._stats.record_batch((time.perf_counter() - started) * 1000, failed=True)
        await self._notify("on_batch_complete", {})

    async def _complete_batch(
        self,
        batch: list[_Pending],
        results: dict[str, GroupingAnalysis],
        started: float,
    ) -> dict[str, GroupingAnalysis]:
        elapsed_ms = (time.perf_counter() - started) * 1000
        if self._stats is not None:
            self._stats.record_batch(elapsed_ms)
        await self._notify("on_batch_complete", results)
        log.info("batch_processed", size=len(batch), analyzed=len(results),
                 elapsed_ms=round(elapsed_ms, 1))
        return results

    async def _analyze(
        self,
        report: Report,
        pool: list[Report],
        cache: dict[str, DocumentVector],
    ) -> GroupingAnalysis:
        # Scoring is CPU-bound; keep the event loop free for incoming events.
        return await asyncio.to_thread(self._analyzer.analyze, report, pool, vector_cache=cache)

    async def _requeue(self, batch: list[_Pending]) -> None:
        async with self._lock:
            for item in batch:
                # A newer event for the same report takes precedence.
                self._pending.setdefault(item.report.id, item)
            if self._pending and self._timer is None:
                self._arm_timer()
            self._update_depth()
        log.info("batch_requeued", size=len(batch))

    # -- candidates ------------------------------------------------------

    def _window_for(self, reports: list[Report]) -> CandidateWindow:
        span = timedelta(days=self._analyzer.config.temporal_window_days)
        return CandidateWindow(
            start=min(r.created_at for r in reports) - span,
            end=max(r.created_at for r in reports) + span,
        )

    async def _fetch_candidates(self, reports: list[Report]) -> list[Report]:
        window = self._window_for(reports)
        ctx = ErrorContext(operation="fetch_candidates", component="hooks",
                           extra={"batch_size": len(reports)})

        async def primary() -> list[Report]:
            try:
                return list(await self._source.fetch_candidate_reports(window))
            except (ConnectionError, TimeoutError, OSError) as exc:
                raise NetworkError(f"candidate fetch failed: {exc}", ctx, cause=exc) from exc

        async def no_candidates() -> list[Report]:
            return []

        if self._config.fetch_failure_policy == FETCH_PROPAGATE:
            return await self._errors.execute_with_retry(primary, ctx)
        return await self._errors.execute_with_fallback(primary, no_candidates, ctx)

    # -- results ---------------------------------------------------------

    async def _handle_results(
        self,
        item: _Pending,
        analysis: GroupingAnalysis,
        pool: Mapping[str, Report],
    ) -> None:
        group_matches = analysis.group_matches
        review_matches = analysis.review_matches
        if self._stats is not None:
            self._stats.record_analysis(len(group_matches), len(review_matches))

        if group_matches and self._registry is not None and self._analyzer.config.enable_auto_grouping:
            update = self._registry.accept(item.report, analysis, pool)
            if update is not None:
                if self._stats is not None:
                    self._stats.record_group(created=update.created)
                await self._notify("on_group_updated", update)

        if review_matches:
            log.info("review_required", report_id=item.report.id,
                     matches=[p.report_id for p in review_matches])

        await self._notify("on_grouping_detected", item.report.id, analysis)
        log.debug("grouping_analysis_completed", report_id=item.report.id,
                  event_type=item.event.type.value, similar=len(analysis.similar_reports),
                  group=len(group_matches), review=len(review_matches))

    async def _notify(self, name: str, *args: Any) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self._errors.handle_error(exc, ErrorContext(operation=name, component="hooks"))

    # -- manual control --------------------------------------------------

    async def analyze_now(self, report: Report) -> GroupingAnalysis:
        """Analyze one report immediately, bypassing the batch and callbacks."""
        log.info("manual_analysis", report_id=report.id)
        candidates = await self._fetch_candidates([report])
        return await self._analyze(report, candidates, {})

    def batch_status(self) -> BatchStatus:
        next_in = None
        if self._timer is not None:
            next_in = max(0.0, (self._timer.when() - asyncio.get_running_loop().time()) * 1000)
        return BatchStatus(
            state=self.state,
            pending_count=len(self._pending),
            is_processing=self._processing,
            next_batch_in_ms=next_in,
            pending_report_ids=list(self._pending),
        )

    async def shutdown(self) -> None:
        """Cancel the timer and any background flush."""
        self._cancel_timer()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -- helpers ---------------------------------------------------------

    def _record_event(self, kind: str) -> None:
        if self._stats is not None:
            self._stats.record_event(kind)

    def _update_depth(self) -> None:
        if self._stats is not None:
            self._stats.update_pending_depth(len(self._pending))


def _now() -> datetime:
    return datetime.now(timezone.utc)
