"""Report grouping: core internal data models.

These are plain dataclasses with no framework dependencies.
JSON payloads are converted to/from these at the API boundary.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

import structlog

log = structlog.get_logger()


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)

    @classmethod
    def parse(cls, value: str | Priority) -> Priority:
        """Accept any casing ("High", "URGENT") as stored by the reporting app."""
        if isinstance(value, Priority):
            return value
        return cls(str(value).strip().lower())


_PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.URGENT]


class Recommendation(str, enum.Enum):
    GROUP = "group"
    REVIEW = "review"
    SEPARATE = "separate"


class AccuracyTier(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float
    # Reported GPS accuracy radius, when the device sent one.
    accuracy_m: float | None = None

    def to_dict(self) -> dict:
        data = {"latitude": self.latitude, "longitude": self.longitude}
        if self.accuracy_m is not None:
            data["accuracy_m"] = self.accuracy_m
        return data


@dataclass(frozen=True)
class ReportMetadata:
    """Recognized optional report metadata.

    Only these keys are read by the grouping core:

    - ``address``: free-form street address
    - ``city``: city name, used for display only
    - ``hazard_type``: sub-category chosen by the reporter
    - ``ai_category``: category assigned by the image classifier
    - ``ai_confidence``: classifier confidence in ``ai_category`` (0-1)
    - ``source``: submission channel ("app", "web", "import", ...)
    """

    address: str | None = None
    city: str | None = None
    hazard_type: str | None = None
    ai_category: str | None = None
    ai_confidence: float | None = None
    source: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> ReportMetadata:
        if not raw:
            return cls()
        known = {k: raw[k] for k in _METADATA_KEYS if raw.get(k) is not None}
        unknown = sorted(set(raw) - set(_METADATA_KEYS))
        if unknown:
            log.debug("metadata_keys_ignored", keys=unknown)
        if "ai_confidence" in known:
            known["ai_confidence"] = float(known["ai_confidence"])
        return cls(**known)

    def to_dict(self) -> dict:
        return {k: getattr(self, k) for k in _METADATA_KEYS if getattr(self, k) is not None}


_METADATA_KEYS = ("address", "city", "hazard_type", "ai_category", "ai_confidence", "source")


@dataclass(frozen=True)
class Report:
    """Immutable snapshot of a submitted report."""
    id: str
    title: str
    description: str
    category: str
    status: str
    priority: Priority
    created_at: datetime
    updated_at: datetime
    location: Coordinate | None = None
    user_id: str | None = None
    metadata: ReportMetadata = field(default_factory=ReportMetadata)

    @property
    def combined_text(self) -> str:
        return f"{self.title} {self.description}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "status": self.status,
            "priority": self.priority.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "location": self.location.to_dict() if self.location else None,
            "user_id": self.user_id,
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class DocumentVector:
    terms: dict[str, float] = field(default_factory=dict)
    magnitude: float = 0.0
    # Hazard vocabulary terms in first-seen order.
    hazard_terms: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TextSimilarityResult:
    similarity: float
    confidence: float
    matching_terms: tuple[str, ...] = ()
    weighted_score: float = 0.0

    def to_dict(self) -> dict:
        return {
            "similarity": round(self.similarity, 4),
            "confidence": round(self.confidence, 4),
            "matching_terms": list(self.matching_terms),
            "weighted_score": round(self.weighted_score, 4),
        }


@dataclass(frozen=True)
class ProximityResult:
    distance_m: float
    is_within_radius: bool
    accuracy: AccuracyTier
    bearing_deg: float = 0.0

    def to_dict(self) -> dict:
        return {
            "distance_m": round(self.distance_m, 2),
            "is_within_radius": self.is_within_radius,
            "accuracy": self.accuracy.value,
            "bearing_deg": round(self.bearing_deg, 1),
        }


@dataclass(frozen=True)
class PairSignals:
    text: TextSimilarityResult
    category_match: bool
    status_consistent: bool
    priority_aligned: bool
    temporal_gap_days: float
    proximity: ProximityResult | None = None

    def to_dict(self) -> dict:
        return {
            "text_similarity": self.text.to_dict(),
            "proximity": self.proximity.to_dict() if self.proximity else None,
            "category_match": self.category_match,
            "status_consistent": self.status_consistent,
            "priority_aligned": self.priority_aligned,
            "temporal_gap_days": round(self.temporal_gap_days, 4),
        }


@dataclass(frozen=True)
class PairAnalysis:
    report_id: str
    overall_score: float
    confidence: float
    signals: PairSignals
    recommendation: Recommendation

    def to_dict(self) -> dict:
        return {
            "report_id": self.report_id,
            "overall_score": round(self.overall_score, 4),
            "confidence": round(self.confidence, 4),
            "signals": self.signals.to_dict(),
            "recommendation": self.recommendation.value,
        }


@dataclass(frozen=True)
class AnalysisMetadata:
    timestamp: datetime
    algorithm_version: str
    processing_time_ms: float


@dataclass(frozen=True)
class GroupingAnalysis:
    report_id: str
    similar_reports: list[PairAnalysis]
    metadata: AnalysisMetadata
    suggested_group_id: str | None = None

    def pair_for(self, report_id: str) -> PairAnalysis | None:
        for pair in self.similar_reports:
            if pair.report_id == report_id:
                return pair
        return None

    @property
    def group_matches(self) -> list[PairAnalysis]:
        return [p for p in self.similar_reports if p.recommendation is Recommendation.GROUP]

    @property
    def review_matches(self) -> list[PairAnalysis]:
        return [p for p in self.similar_reports if p.recommendation is Recommendation.REVIEW]

    def to_dict(self) -> dict:
        return {
            "report_id": self.report_id,
            "similar_reports": [p.to_dict() for p in self.similar_reports],
            "suggested_group_id": self.suggested_group_id,
            "analysis_metadata": {
                "timestamp": self.metadata.timestamp.isoformat(),
                "algorithm_version": self.metadata.algorithm_version,
                "processing_time_ms": round(self.metadata.processing_time_ms, 3),
            },
        }


@dataclass
class ReportGroup:
    """A set of reports describing the same real-world hazard.

    Mutable: the registry grows it as new reports clear the threshold.
    """
    id: str
    title: str
    description: str
    category: str
    status: str
    priority: Priority
    primary_report_id: str
    created_at: datetime
    updated_at: datetime
    report_ids: list[str] = field(default_factory=list)
    location: Coordinate | None = None
    spatial_radius_m: float | None = None
    average_confidence: float = 0.0
    grouping_reasons: list[str] = field(default_factory=list)
    text_similarity_min: float = 0.0
    text_similarity_max: float = 0.0
    # Per-member coordinates, needed to recompute the centroid when the group grows.
    member_locations: dict[str, Coordinate] = field(default_factory=dict, repr=False)
    # Per-member pair confidence against the member that pulled it in.
    member_confidences: dict[str, float] = field(default_factory=dict, repr=False)

    @property
    def report_count(self) -> int:
        return len(self.report_ids)

    @property
    def confidence(self) -> float:
        return self.average_confidence

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "status": self.status,
            "priority": self.priority.value,
            "location": self.location.to_dict() if self.location else None,
            "report_count": self.report_count,
            "report_ids": list(self.report_ids),
            "confidence": round(self.average_confidence, 4),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": {
                "primary_report_id": self.primary_report_id,
                "grouping_reasons": list(self.grouping_reasons),
                "average_confidence": round(self.average_confidence, 4),
                "spatial_radius_m": (
                    round(self.spatial_radius_m, 2) if self.spatial_radius_m is not None else None
                ),
                "text_similarity_range": {
                    "min": round(self.text_similarity_min, 4),
                    "max": round(self.text_similarity_max, 4),
                },
            },
        }

    def to_geojson_feature(self) -> dict:
        coords = None
        if self.location is not None:
            coords = [round(self.location.longitude, 6), round(self.location.latitude, 6)]
        props = self.to_dict()
        props.pop("location")
        return {
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": coords} if coords else None,
            "properties": props,
        }


def groups_to_geojson(groups: list[ReportGroup]) -> dict:
    """Convert groups to a GeoJSON FeatureCollection."""
    return {
        "type": "FeatureCollection",
        "features": [g.to_geojson_feature() for g in groups],
    }
