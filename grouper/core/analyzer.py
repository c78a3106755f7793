"""Grouping analyzer: scores candidate report pairs and assembles groups.

For a target report, every candidate inside the temporal window is scored
on text similarity, distance, category, status, priority and time gap. The
strong signals (text, proximity, category) are blended into an overall
score; all of them feed a separate confidence estimate. The pair is then
recommended for automatic grouping, human review, or kept separate.

The analyzer is synchronous and holds no mutable state, so one instance can
be shared by any number of threads or tasks.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable, Mapping

import structlog

from grouper.config import GroupingConfig
from grouper.core import geo
from grouper.core.errors import ErrorContext, GroupingError, ProcessingError, ValidationError
from grouper.core.models import (
    AccuracyTier,
    AnalysisMetadata,
    DocumentVector,
    GroupingAnalysis,
    PairAnalysis,
    PairSignals,
    Priority,
    Recommendation,
    Report,
    ReportGroup,
)
from grouper.core.text_similarity import TextSimilarityEngine

log = structlog.get_logger()

ALGORITHM_VERSION = "1.0.0"

_SECONDS_PER_DAY = 86_400.0

_ACCURACY_CONFIDENCE = {
    AccuracyTier.HIGH: 1.0,
    AccuracyTier.MEDIUM: 0.8,
    AccuracyTier.LOW: 0.6,
}

REASON_TEXT = "textual similarity"
REASON_SPATIAL = "spatial proximity"
REASON_CATEGORY = "category match"


def new_group_id() -> str:
    return f"grp_{uuid.uuid4().hex[:12]}"


class GroupingAnalyzer:
    """Scores report pairs and builds ``ReportGroup`` aggregates."""

    def __init__(
        self,
        config: GroupingConfig | None = None,
        text_engine: TextSimilarityEngine | None = None,
        accuracy_tiers: geo.AccuracyTiers | None = None,
    ) -> None:
        self._config = config or GroupingConfig()
        self._text = text_engine or TextSimilarityEngine()
        self._tiers = accuracy_tiers or geo.DEFAULT_TIERS

    @property
    def config(self) -> GroupingConfig:
        return self._config

    @property
    def text_engine(self) -> TextSimilarityEngine:
        return self._text

    # -- individual signals ----------------------------------------------

    @staticmethod
    def temporal_gap_days(a: Report, b: Report) -> float:
        return abs((a.created_at - b.created_at).total_seconds()) / _SECONDS_PER_DAY

    def status_consistent(self, status1: str, status2: str, config: GroupingConfig | None = None) -> bool:
        cfg = config or self._config
        s1, s2 = status1.strip().lower(), status2.strip().lower()
        if s1 == s2:
            return True
        return any(s1 in pair and s2 in pair for pair in cfg.compatible_statuses)

    def priority_aligned(self, p1: Priority, p2: Priority, config: GroupingConfig | None = None) -> bool:
        cfg = config or self._config
        return abs(p1.rank - p2.rank) <= cfg.max_priority_gap

    def filter_candidates(
        self,
        target: Report,
        candidates: Iterable[Report],
        config: GroupingConfig | None = None,
    ) -> list[Report]:
        """Candidates inside the temporal window (both directions, inclusive), minus the target."""
        cfg = config or self._config
        return [
            c for c in candidates
            if c.id != target.id and self.temporal_gap_days(target, c) <= cfg.temporal_window_days
        ]

    # -- pair scoring ----------------------------------------------------

    def analyze_pair(
        self,
        target: Report,
        candidate: Report,
        config: GroupingConfig | None = None,
        vector_cache: dict[str, DocumentVector] | None = None,
    ) -> PairAnalysis:
        cfg = config or self._config

        text = self._text.compare(target.combined_text, candidate.combined_text, vector_cache)

        proximity = None
        if geo.is_valid_coordinate(target.location) and geo.is_valid_coordinate(candidate.location):
            proximity = geo.within_radius(
                target.location, candidate.location, cfg.proximity_radius_meters, self._tiers,
            )

        signals = PairSignals(
            text=text,
            proximity=proximity,
            category_match=target.category.strip().lower() == candidate.category.strip().lower(),
            status_consistent=self.status_consistent(target.status, candidate.status, cfg),
            priority_aligned=self.priority_aligned(target.priority, candidate.priority, cfg),
            temporal_gap_days=self.temporal_gap_days(target, candidate),
        )

        overall = self.overall_score(signals, cfg)
        confidence = self.confidence(signals, overall, cfg)
        return PairAnalysis(
            report_id=candidate.id,
            overall_score=overall,
            confidence=confidence,
            signals=signals,
            recommendation=self.recommend(overall, confidence, cfg),
        )

    @staticmethod
    def _weighted_mean(parts: list[tuple[float, float]]) -> float:
        total_weight = sum(w for _, w in parts)
        if total_weight <= 0:
            return 0.0
        return sum(s * w for s, w in parts) / total_weight

    def overall_score(self, signals: PairSignals, config: GroupingConfig | None = None) -> float:
        """Weighted mean over the signals that actually fired.

        Text counts only when its weighted score clears the threshold,
        proximity only inside the radius (closer scores higher), category
        only on a match. Missing signals drop out of the denominator, so a
        report without a location is judged on text and category alone. A
        text match that clears the threshold never pulls the score below
        what the other signals give on their own.
        """
        cfg = config or self._config
        parts: list[tuple[float, float]] = []

        prox = signals.proximity
        if prox is not None and prox.is_within_radius:
            radius = cfg.proximity_radius_meters
            closeness = max(0.0, (radius - prox.distance_m) / radius) if radius > 0 else 1.0
            parts.append((closeness, cfg.proximity_weight))

        if signals.category_match:
            parts.append((1.0, cfg.category_match_weight))

        without_text = self._weighted_mean(parts)
        if signals.text.weighted_score >= cfg.text_similarity_threshold:
            with_text = self._weighted_mean(parts + [(signals.text.weighted_score, cfg.text_similarity_weight)])
            return max(with_text, without_text) if parts else with_text
        return without_text

    def confidence(self, signals: PairSignals, overall: float, config: GroupingConfig | None = None) -> float:
        """How far the evidence can be trusted, blended 70/30 with the score."""
        cfg = config or self._config
        factors = [signals.text.confidence]
        if signals.proximity is not None:
            factors.append(_ACCURACY_CONFIDENCE[signals.proximity.accuracy])
        factors.append(1.0 if signals.category_match else 0.0)
        factors.append(0.8 if signals.status_consistent else 0.0)
        factors.append(0.7 if signals.priority_aligned else 0.0)
        if cfg.temporal_window_days > 0:
            factors.append(max(0.0, 1.0 - signals.temporal_gap_days / cfg.temporal_window_days))
        else:
            factors.append(1.0 if signals.temporal_gap_days == 0 else 0.0)

        average = sum(factors) / len(factors)
        return average * 0.7 + overall * 0.3

    def recommend(self, overall: float, confidence: float, config: GroupingConfig | None = None) -> Recommendation:
        cfg = config or self._config
        if (overall >= cfg.auto_group_score and confidence >= cfg.auto_group_confidence
                and not cfg.require_human_review):
            return Recommendation.GROUP
        if overall >= cfg.min_confidence_threshold and confidence >= cfg.review_confidence:
            return Recommendation.REVIEW
        return Recommendation.SEPARATE

    # -- analysis --------------------------------------------------------

    def analyze(
        self,
        target: Report,
        candidates: Iterable[Report],
        config: GroupingConfig | None = None,
        *,
        vector_cache: dict[str, DocumentVector] | None = None,
    ) -> GroupingAnalysis:
        """Score ``target`` against ``candidates`` and rank the qualifying pairs.

        Raises ProcessingError when a report cannot be scored (for example a
        naive timestamp compared against an aware one).
        """
        cfg = config or self._config
        started = time.perf_counter()
        cache = vector_cache if vector_cache is not None else {}

        try:
            eligible = self.filter_candidates(target, candidates, cfg)
            pairs = [self.analyze_pair(target, c, cfg, cache) for c in eligible]
        except GroupingError:
            raise
        except (TypeError, ValueError, AttributeError) as exc:
            raise ProcessingError(
                f"could not score report {target.id}: {exc}",
                ErrorContext(operation="analyze", component="analyzer", report_id=target.id),
                cause=exc,
            ) from exc

        qualifying = [p for p in pairs if p.overall_score >= cfg.min_confidence_threshold]
        qualifying.sort(key=lambda p: p.overall_score, reverse=True)

        suggested = None
        if any(p.recommendation is Recommendation.GROUP for p in qualifying):
            suggested = new_group_id()

        elapsed_ms = (time.perf_counter() - started) * 1000
        log.debug("report_analyzed", report_id=target.id, candidates=len(eligible),
                  qualifying=len(qualifying), elapsed_ms=round(elapsed_ms, 3))

        return GroupingAnalysis(
            report_id=target.id,
            similar_reports=qualifying,
            suggested_group_id=suggested,
            metadata=AnalysisMetadata(
                timestamp=datetime.now(timezone.utc),
                algorithm_version=ALGORITHM_VERSION,
                processing_time_ms=elapsed_ms,
            ),
        )

    def analyze_all(
        self,
        reports: list[Report],
        config: GroupingConfig | None = None,
    ) -> dict[str, GroupingAnalysis]:
        """Analyze every report against every other one.

        O(n^2) pair evaluations: callers keep ``reports`` small, typically one
        temporal window of one area.
        """
        cache: dict[str, DocumentVector] = {}
        return {r.id: self.analyze(r, reports, config, vector_cache=cache) for r in reports}

    def quick_duplicates(
        self,
        report: Report,
        candidates: list[Report],
        threshold: float = 0.8,
    ) -> list[Report]:
        """Candidates whose overall score reaches ``threshold``, best first."""
        by_id = {c.id: c for c in candidates}
        analysis = self.analyze(report, candidates)
        return [by_id[p.report_id] for p in analysis.similar_reports
                if p.overall_score >= threshold and p.report_id in by_id]

    # -- group assembly --------------------------------------------------

    def build_group(
        self,
        primary: Report,
        matched: list[Report],
        analysis: GroupingAnalysis,
        group_id: str | None = None,
        config: GroupingConfig | None = None,
    ) -> ReportGroup:
        """Merge ``primary`` and its matched reports into a new group.

        Every matched report must appear in ``analysis``; repeated reports
        count once. Membership is capped at ``max_group_size``, keeping the
        best-scoring matches.
        """
        cfg = config or self._config
        ctx = ErrorContext(operation="build_group", component="analyzer", report_id=primary.id)
        if not matched:
            raise ValidationError("a group needs at least one matched report", ctx)

        members: list[tuple[Report, PairAnalysis]] = []
        seen = {primary.id}
        for report in matched:
            pair = analysis.pair_for(report.id)
            if pair is None:
                raise ValidationError(f"report {report.id} is not part of the analysis", ctx)
            if report.id not in seen:
                seen.add(report.id)
                members.append((report, pair))
        members.sort(key=lambda m: m[1].overall_score, reverse=True)
        members = members[: max(cfg.max_group_size - 1, 0)]
        if not members:
            raise ValidationError("no room for matched reports in the group", ctx)

        now = datetime.now(timezone.utc)
        group = ReportGroup(
            id=group_id or analysis.suggested_group_id or new_group_id(),
            title=primary.title,
            description=primary.description,
            category=primary.category,
            status=primary.status,
            priority=primary.priority,
            primary_report_id=primary.id,
            created_at=now,
            updated_at=now,
            report_ids=[primary.id],
        )
        if geo.is_valid_coordinate(primary.location):
            group.member_locations[primary.id] = primary.location

        self._absorb(group, members, cfg)
        return group

    def extend_group(
        self,
        group: ReportGroup,
        additions: list[tuple[Report, PairAnalysis]],
        config: GroupingConfig | None = None,
    ) -> list[str]:
        """Add reports to an existing group. Returns the ids actually added.

        Existing members are never removed; reports already in the group and
        additions beyond ``max_group_size`` are skipped.
        """
        cfg = config or self._config
        room = cfg.max_group_size - group.report_count
        seen = set(group.report_ids)
        fresh: list[tuple[Report, PairAnalysis]] = []
        for report, pair in additions:
            if report.id not in seen:
                seen.add(report.id)
                fresh.append((report, pair))
        fresh = fresh[: max(room, 0)]
        if fresh:
            self._absorb(group, fresh, cfg)
            group.updated_at = datetime.now(timezone.utc)
        return [r.id for r, _ in fresh]

    def _absorb(
        self,
        group: ReportGroup,
        members: list[tuple[Report, PairAnalysis]],
        cfg: GroupingConfig,
    ) -> None:
        text_scores = []
        for report, pair in members:
            group.report_ids.append(report.id)
            group.member_confidences[report.id] = pair.confidence
            if report.priority.rank > group.priority.rank:
                group.priority = report.priority
            if geo.is_valid_coordinate(report.location):
                group.member_locations[report.id] = report.location
            text_scores.append(pair.signals.text.weighted_score)

            reasons = []
            if pair.signals.text.weighted_score >= cfg.text_similarity_threshold:
                reasons.append(REASON_TEXT)
            if pair.signals.proximity is not None and pair.signals.proximity.is_within_radius:
                reasons.append(REASON_SPATIAL)
            if pair.signals.category_match:
                reasons.append(REASON_CATEGORY)
            for reason in reasons:
                if reason not in group.grouping_reasons:
                    group.grouping_reasons.append(reason)

        # Keep a stable order for the reasons list.
        order = [REASON_TEXT, REASON_SPATIAL, REASON_CATEGORY]
        group.grouping_reasons.sort(key=order.index)

        if len(group.member_confidences) == len(members):
            group.text_similarity_min = min(text_scores)
            group.text_similarity_max = max(text_scores)
        else:
            group.text_similarity_min = min([group.text_similarity_min, *text_scores])
            group.text_similarity_max = max([group.text_similarity_max, *text_scores])

        confidences = list(group.member_confidences.values())
        group.average_confidence = sum(confidences) / len(confidences)

        self._relocate(group)

    @staticmethod
    def _relocate(group: ReportGroup) -> None:
        points = list(group.member_locations.values())
        if not points:
            group.location = None
            group.spatial_radius_m = None
            return
        center = geo.centroid(points)
        group.location = center
        group.spatial_radius_m = max(geo.distance_m(center, p) for p in points)

    def find_groupings(
        self,
        batch_results: Mapping[str, GroupingAnalysis],
        reports: Iterable[Report],
    ) -> list[ReportGroup]:
        """Turn ``analyze_all`` output into disjoint groups.

        Reports with the strongest best match go first; each report lands in
        at most one group.
        """
        by_id = {r.id: r for r in reports}
        processed: set[str] = set()
        groups: list[ReportGroup] = []

        def best_score(item: tuple[str, GroupingAnalysis]) -> float:
            pairs = item[1].similar_reports
            return max((p.overall_score for p in pairs), default=0.0)

        for report_id, analysis in sorted(batch_results.items(), key=best_score, reverse=True):
            if report_id in processed or report_id not in by_id:
                continue
            matched = [
                by_id[p.report_id] for p in analysis.group_matches
                if p.report_id not in processed and p.report_id in by_id
            ]
            if not matched:
                continue
            group = self.build_group(by_id[report_id], matched, analysis)
            processed.update(group.report_ids)
            groups.append(group)
            log.info("group_proposed", group_id=group.id, reports=group.report_count,
                     primary=report_id)

        return groups

    def with_config(self, **overrides) -> GroupingAnalyzer:
        """A copy of this analyzer with some config values replaced."""
        return GroupingAnalyzer(replace(self._config, **overrides), self._text, self._tiers)
