"""Tests for the batching grouping hooks."""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import replace

import pytest
from structlog.testing import capture_logs

from grouper.config import BatchConfig, GroupingConfig, RetryConfig
from grouper.core.analyzer import GroupingAnalyzer
from grouper.core.error_handler import ErrorHandler
from grouper.core.errors import ErrorCategory, ErrorContext, NetworkError, ProcessingError
from grouper.core.groups import GroupRegistry
from grouper.core.stats import GroupingStats
from grouper.hooks.batcher import BatchState, GroupingCallbacks, GroupingHooks
from grouper.storage.memory_store import InMemoryReportStore


class FakeSource:
    """CandidateSource that can fail on demand and tracks concurrent fetches."""

    def __init__(self, reports=(), delay_s: float = 0.0) -> None:
        self.reports = list(reports)
        self.delay_s = delay_s
        self.failing = False
        self.fetches = 0
        self.active = 0
        self.max_active = 0

    async def fetch_candidate_reports(self, window):
        self.fetches += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            if self.failing:
                raise ConnectionError("database unreachable")
            return [r for r in self.reports if window.contains(r.created_at)]
        finally:
            self.active -= 1


class FailingAnalyzer(GroupingAnalyzer):
    """Raises a ProcessingError for selected report ids."""

    def __init__(self, fail_ids, **kwargs) -> None:
        super().__init__(**kwargs)
        self.fail_ids = set(fail_ids)

    def analyze(self, target, candidates, config=None, *, vector_cache=None):
        if target.id in self.fail_ids:
            raise ProcessingError(
                "corrupt report",
                ErrorContext(operation="analyze", component="tests", report_id=target.id),
            )
        return super().analyze(target, candidates, config, vector_cache=vector_cache)


class Recorder:
    """Collects every callback invocation."""

    def __init__(self) -> None:
        self.detected: list[str] = []
        self.errors: list[tuple[str, Exception]] = []
        self.batches: list[dict] = []
        self.group_updates = []

    def callbacks(self) -> GroupingCallbacks:
        return GroupingCallbacks(
            on_grouping_detected=lambda rid, analysis: self.detected.append(rid),
            on_grouping_error=lambda rid, err: self.errors.append((rid, err)),
            on_batch_complete=self.on_batch_complete,
            on_group_updated=self.group_updates.append,
        )

    async def on_batch_complete(self, results):
        self.batches.append(results)


async def _no_sleep(seconds: float) -> None:
    return None


async def _eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
async def build_hooks(recorder):
    """Factory for hooks wired to a recorder; shut down after the test."""
    created: list[GroupingHooks] = []

    def _build(source=None, *, analyzer=None, registry=None, stats=None, **batch_overrides):
        batch = BatchConfig(**{"batch_processing_delay_ms": 50, "max_batch_size": 10, **batch_overrides})
        analyzer = analyzer or GroupingAnalyzer(GroupingConfig())
        hooks = GroupingHooks(
            analyzer,
            source if source is not None else FakeSource(),
            ErrorHandler(RetryConfig(retry_delay_ms=1), sleep=_no_sleep),
            batch,
            registry=registry,
            callbacks=recorder.callbacks(),
            stats=stats,
        )
        created.append(hooks)
        return hooks

    yield _build

    for hooks in created:
        await hooks.shutdown()


@pytest.mark.asyncio
async def test_debounce_flushes_after_quiet_period(build_hooks, recorder, pothole_pair):
    hooks = build_hooks()
    first, second = pothole_pair

    await hooks.report_created(first)
    await hooks.report_created(second)
    assert hooks.state is BatchState.ACCUMULATING
    assert recorder.detected == []

    await _eventually(lambda: len(recorder.batches) == 1)
    assert sorted(recorder.detected) == ["r1", "r2"]
    assert set(recorder.batches[0]) == {"r1", "r2"}
    await hooks.wait_idle()
    assert hooks.state is BatchState.IDLE


@pytest.mark.asyncio
async def test_new_event_restarts_timer(build_hooks, recorder, make_report):
    hooks = build_hooks(batch_processing_delay_ms=150)
    await hooks.report_created(make_report("r1"))
    await asyncio.sleep(0.1)
    await hooks.report_created(make_report("r2", meters_north=5))
    await asyncio.sleep(0.1)
    # 200 ms since the first event, 100 ms since the last one.
    assert recorder.batches == []
    await _eventually(lambda: len(recorder.batches) == 1)
    assert set(recorder.batches[0]) == {"r1", "r2"}


@pytest.mark.asyncio
async def test_full_batch_flushes_immediately(build_hooks, recorder, make_report):
    hooks = build_hooks(batch_processing_delay_ms=60_000, max_batch_size=3)
    for i in range(3):
        await hooks.report_created(make_report(f"r{i}", meters_north=i))
    await _eventually(lambda: len(recorder.detected) == 3)
    assert len(recorder.batches) == 1


@pytest.mark.asyncio
async def test_flushes_never_overlap(build_hooks, recorder, make_report):
    source = FakeSource(delay_s=0.1)
    hooks = build_hooks(source, batch_processing_delay_ms=20, max_batch_size=2)

    for i in range(6):
        await hooks.report_created(make_report(f"r{i}", meters_north=i))
        await asyncio.sleep(0.01)

    await _eventually(lambda: len(recorder.detected) == 6, timeout=5.0)
    await hooks.wait_idle()
    assert source.max_active == 1
    assert Counter(recorder.detected) == Counter({f"r{i}": 1 for i in range(6)})


@pytest.mark.asyncio
async def test_manual_flush_returns_results(build_hooks, make_report, pothole_pair):
    hooks = build_hooks(batch_processing_delay_ms=60_000)
    first, second = pothole_pair
    await hooks.report_created(first)
    await hooks.report_created(second)

    results = await hooks.flush()
    assert set(results) == {"r1", "r2"}
    assert [p.report_id for p in results["r1"].similar_reports] == ["r2"]
    assert hooks.batch_status().pending_count == 0
    assert await hooks.flush() == {}


@pytest.mark.asyncio
async def test_clear_drops_pending(build_hooks, recorder, pothole_pair):
    hooks = build_hooks()
    for report in pothole_pair:
        await hooks.report_created(report)

    assert await hooks.clear() == 2
    assert hooks.state is BatchState.IDLE
    await asyncio.sleep(0.15)
    assert recorder.batches == []


@pytest.mark.asyncio
async def test_delete_removes_pending_report(build_hooks, pothole_pair):
    hooks = build_hooks(batch_processing_delay_ms=60_000)
    first, second = pothole_pair
    await hooks.report_created(first)
    await hooks.report_created(second)

    assert await hooks.report_deleted("r1") is True
    assert await hooks.report_deleted("missing") is False
    results = await hooks.flush()
    assert set(results) == {"r2"}


@pytest.mark.asyncio
async def test_irrelevant_update_is_ignored(build_hooks, make_report):
    stats = GroupingStats()
    hooks = build_hooks(batch_processing_delay_ms=60_000, stats=stats)
    report = make_report("r1")

    assert await hooks.report_updated(report, {"priority": "urgent", "user_id": "u2"}) is False
    assert hooks.batch_status().pending_count == 0
    assert await hooks.report_updated(report, ["description"]) is True
    assert hooks.batch_status().pending_report_ids == ["r1"]
    assert stats.snapshot()["updates_ignored"] == 1


@pytest.mark.asyncio
async def test_failing_report_does_not_stop_the_batch(build_hooks, recorder, make_report):
    stats = GroupingStats()
    analyzer = FailingAnalyzer({"bad"}, config=GroupingConfig())
    hooks = build_hooks(analyzer=analyzer, stats=stats, batch_processing_delay_ms=60_000)

    for rid in ("r1", "bad", "r3"):
        await hooks.report_created(make_report(rid))
    results = await hooks.flush()

    assert set(results) == {"r1", "r3"}
    assert sorted(recorder.detected) == ["r1", "r3"]
    assert [rid for rid, _ in recorder.errors] == ["bad"]
    assert isinstance(recorder.errors[0][1], ProcessingError)
    assert stats.snapshot()["analysis_errors"] == 1


@pytest.mark.asyncio
async def test_fetch_failure_falls_back_to_batch_only(build_hooks, recorder, pothole_pair):
    source = FakeSource()
    source.failing = True
    hooks = build_hooks(source, batch_processing_delay_ms=60_000)
    first, second = pothole_pair
    await hooks.report_created(first)
    await hooks.report_created(second)

    results = await hooks.flush()
    # Candidates come from the batch itself.
    assert [p.report_id for p in results["r1"].similar_reports] == ["r2"]
    assert recorder.errors == []
    assert source.fetches == 4


@pytest.mark.asyncio
async def test_fetch_failure_propagates_and_requeues(build_hooks, recorder, pothole_pair):
    source = FakeSource()
    source.failing = True
    stats = GroupingStats()
    hooks = build_hooks(source, stats=stats, batch_processing_delay_ms=60_000,
                        fetch_failure_policy="propagate")
    first, second = pothole_pair
    await hooks.report_created(first)
    await hooks.report_created(second)

    assert await hooks.flush() == {}
    assert sorted(rid for rid, _ in recorder.errors) == ["r1", "r2"]
    assert all(isinstance(err, NetworkError) for _, err in recorder.errors)
    assert all(err.category is ErrorCategory.NETWORK for _, err in recorder.errors)
    assert recorder.batches == [{}]
    assert sorted(hooks.batch_status().pending_report_ids) == ["r1", "r2"]
    assert stats.snapshot()["batch_failures"] == 1

    source.failing = False
    results = await hooks.flush()
    assert set(results) == {"r1", "r2"}


@pytest.mark.asyncio
async def test_group_registry_is_updated(build_hooks, recorder, pothole_pair):
    analyzer = GroupingAnalyzer(GroupingConfig())
    registry = GroupRegistry(analyzer)
    stats = GroupingStats()
    hooks = build_hooks(analyzer=analyzer, registry=registry, stats=stats,
                        batch_processing_delay_ms=60_000)
    for report in pothole_pair:
        await hooks.report_created(report)
    await hooks.flush()

    assert len(registry) == 1
    group = registry.all()[0]
    assert sorted(group.report_ids) == ["r1", "r2"]
    assert len(recorder.group_updates) == 1
    assert recorder.group_updates[0].created
    snap = stats.snapshot()
    assert snap["groups"]["created"] == 1
    assert snap["matches"]["group"] == 2


@pytest.mark.asyncio
async def test_auto_grouping_off_leaves_registry_alone(build_hooks, pothole_pair):
    analyzer = GroupingAnalyzer(GroupingConfig(enable_auto_grouping=False))
    registry = GroupRegistry(analyzer)
    hooks = build_hooks(analyzer=analyzer, registry=registry, batch_processing_delay_ms=60_000)
    for report in pothole_pair:
        await hooks.report_created(report)
    results = await hooks.flush()

    assert results["r1"].group_matches
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_synchronous_mode(build_hooks, recorder, pothole_pair):
    first, second = pothole_pair
    hooks = build_hooks(FakeSource([first]), enable_async_processing=False)
    await hooks.report_created(second)
    assert recorder.detected == ["r2"]
    assert hooks.state is BatchState.IDLE


@pytest.mark.asyncio
async def test_disabled_hooks_ignore_events(build_hooks, recorder, pothole_pair):
    hooks = build_hooks(batch_processing_delay_ms=60_000)
    first, second = pothole_pair
    await hooks.report_created(first)
    await hooks.set_enabled(False)
    assert hooks.batch_status().pending_count == 0

    await hooks.report_created(second)
    assert hooks.batch_status().pending_count == 0
    await hooks.set_enabled(True)
    await hooks.report_created(second)
    assert hooks.batch_status().pending_count == 1


@pytest.mark.asyncio
async def test_callback_errors_are_contained(build_hooks, pothole_pair):
    hooks = build_hooks(batch_processing_delay_ms=60_000)

    def explode(rid, analysis):
        raise RuntimeError("notification service down")

    hooks.set_callbacks(GroupingCallbacks(on_grouping_detected=explode))
    for report in pothole_pair:
        await hooks.report_created(report)
    results = await hooks.flush()
    assert set(results) == {"r1", "r2"}


@pytest.mark.asyncio
async def test_analyze_now_bypasses_batch(build_hooks, recorder, pothole_pair):
    first, second = pothole_pair
    store = InMemoryReportStore()
    store.put(first)
    store.put(second)
    hooks = build_hooks(store, batch_processing_delay_ms=60_000)

    analysis = await hooks.analyze_now(first)
    assert [p.report_id for p in analysis.similar_reports] == ["r2"]
    assert recorder.detected == []
    assert hooks.batch_status().pending_count == 0


@pytest.mark.asyncio
async def test_batch_status(build_hooks, make_report):
    hooks = build_hooks(batch_processing_delay_ms=60_000)
    status = hooks.batch_status()
    assert status.state is BatchState.IDLE
    assert status.next_batch_in_ms is None

    await hooks.report_created(make_report("r1"))
    status = hooks.batch_status()
    assert status.state is BatchState.ACCUMULATING
    assert status.pending_count == 1
    assert 0 < status.next_batch_in_ms <= 60_000
    assert status.to_dict()["state"] == "accumulating"


class ExplodingRegistry(GroupRegistry):
    """Registry whose storage fails for selected target reports."""

    def __init__(self, analyzer, fail_ids) -> None:
        super().__init__(analyzer)
        self.fail_ids = set(fail_ids)

    def accept(self, target, analysis, reports):
        if target.id in self.fail_ids:
            raise RuntimeError("group store offline")
        return super().accept(target, analysis, reports)


class MalformedSource(FakeSource):
    """Returns records that are not reports until repaired."""

    def __init__(self) -> None:
        super().__init__()
        self.broken = True

    async def fetch_candidate_reports(self, window):
        if self.broken:
            return [{"id": "row-1"}]
        return await super().fetch_candidate_reports(window)


@pytest.mark.asyncio
async def test_analysis_completed_log_carries_event_type(build_hooks, pothole_pair):
    hooks = build_hooks(batch_processing_delay_ms=60_000)
    for report in pothole_pair:
        await hooks.report_created(report)

    with capture_logs() as logs:
        results = await hooks.flush()

    assert set(results) == {"r1", "r2"}
    completed = [e for e in logs if e["event"] == "grouping_analysis_completed"]
    assert [e["report_id"] for e in completed] == ["r1", "r2"]
    assert all(e["event_type"] == "report_created" for e in completed)


@pytest.mark.asyncio
async def test_single_member_groups_do_not_abort_batch(build_hooks, recorder, pothole_pair, make_report):
    analyzer = GroupingAnalyzer(GroupingConfig(max_group_size=1))
    registry = GroupRegistry(analyzer)
    hooks = build_hooks(analyzer=analyzer, registry=registry, batch_processing_delay_ms=60_000)
    lamp = make_report("r3", title="Broken streetlight on Oak Avenue", category="Lighting",
                       meters_north=5_000)
    for report in (*pothole_pair, lamp):
        await hooks.report_created(report)

    results = await hooks.flush()
    assert set(results) == {"r1", "r2", "r3"}
    assert results["r1"].group_matches
    assert len(registry) == 0
    assert recorder.errors == []
    assert len(recorder.batches) == 1
    assert hooks.batch_status().pending_count == 0


@pytest.mark.asyncio
async def test_grouping_step_failure_is_isolated(build_hooks, recorder, pothole_pair, make_report):
    stats = GroupingStats()
    analyzer = GroupingAnalyzer(GroupingConfig())
    registry = ExplodingRegistry(analyzer, {"r1"})
    hooks = build_hooks(analyzer=analyzer, registry=registry, stats=stats,
                        batch_processing_delay_ms=60_000)
    lamp = make_report("r3", title="Broken streetlight on Oak Avenue", category="Lighting",
                       meters_north=5_000)
    for report in (*pothole_pair, lamp):
        await hooks.report_created(report)

    results = await hooks.flush()
    assert set(results) == {"r2", "r3"}
    assert sorted(recorder.detected) == ["r2", "r3"]
    assert [rid for rid, _ in recorder.errors] == ["r1"]
    assert recorder.errors[0][1].category is ErrorCategory.SYSTEM
    # r2 still formed the group with r1.
    assert sorted(registry.all()[0].report_ids) == ["r1", "r2"]
    assert recorder.batches == [results]
    assert stats.snapshot()["analysis_errors"] == 1


@pytest.mark.asyncio
async def test_report_without_time_zone_is_isolated(build_hooks, recorder, pothole_pair, make_report):
    stats = GroupingStats()
    hooks = build_hooks(stats=stats, batch_processing_delay_ms=60_000)
    naive = make_report("bad", meters_north=3)
    naive = replace(naive, created_at=naive.created_at.replace(tzinfo=None))
    for report in (*pothole_pair, naive):
        await hooks.report_created(report)

    results = await hooks.flush()
    assert set(results) == {"r1", "r2"}
    assert [p.report_id for p in results["r1"].similar_reports] == ["r2"]
    assert [rid for rid, _ in recorder.errors] == ["bad"]
    assert isinstance(recorder.errors[0][1], ProcessingError)
    assert recorder.batches == [results]
    assert hooks.batch_status().pending_count == 0
    assert stats.snapshot()["analysis_errors"] == 1


@pytest.mark.asyncio
async def test_unexpected_batch_failure_requeues(build_hooks, recorder, pothole_pair):
    source = MalformedSource()
    stats = GroupingStats()
    hooks = build_hooks(source, stats=stats, batch_processing_delay_ms=60_000)
    for report in pothole_pair:
        await hooks.report_created(report)

    assert await hooks.flush() == {}
    assert sorted(rid for rid, _ in recorder.errors) == ["r1", "r2"]
    assert all(err.category is ErrorCategory.SYSTEM for _, err in recorder.errors)
    assert recorder.batches == [{}]
    assert sorted(hooks.batch_status().pending_report_ids) == ["r1", "r2"]
    assert stats.snapshot()["batch_failures"] == 1

    source.broken = False
    results = await hooks.flush()
    assert set(results) == {"r1", "r2"}


@pytest.mark.asyncio
async def test_clear_and_new_events_during_flush(build_hooks, recorder, pothole_pair, make_report):
    source = FakeSource(delay_s=0.2)
    hooks = build_hooks(source, batch_processing_delay_ms=60_000)
    for report in pothole_pair:
        await hooks.report_created(report)

    in_flight = asyncio.create_task(hooks.flush())
    await _eventually(lambda: source.active == 1)
    assert hooks.state is BatchState.FLUSHING

    await hooks.report_created(make_report("r3", meters_north=3))
    await hooks.report_created(make_report("r4", meters_north=4))
    # r1 is being scored, not pending.
    assert await hooks.report_deleted("r1") is False
    assert await hooks.clear() == 2
    await hooks.report_created(make_report("r5", meters_north=5))

    results = await in_flight
    assert set(results) == {"r1", "r2"}
    assert [p.report_id for p in results["r1"].similar_reports] == ["r2"]
    assert sorted(recorder.detected) == ["r1", "r2"]
    assert hooks.batch_status().pending_report_ids == ["r5"]

    results = await hooks.flush()
    assert set(results) == {"r5"}
    assert sorted(recorder.detected) == ["r1", "r2", "r5"]
    assert len(recorder.batches) == 2


@pytest.mark.asyncio
async def test_synchronous_mode_never_overlaps(build_hooks, recorder, make_report):
    source = FakeSource(delay_s=0.05)
    hooks = build_hooks(source, enable_async_processing=False)

    await asyncio.gather(*(
        hooks.report_created(make_report(f"r{i}", meters_north=i)) for i in range(3)
    ))

    assert source.max_active == 1
    assert Counter(recorder.detected) == Counter({f"r{i}": 1 for i in range(3)})
    await hooks.wait_idle()
    assert hooks.state is BatchState.IDLE
