"""Geospatial helpers: distance, radius checks, centroids and clustering.

Pure functions over ``Coordinate`` values. Distances use the haversine
formula on a spherical Earth, which is accurate to well under a metre at
the scales reports are grouped at (a few hundred metres).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal

from grouper.core.errors import ErrorContext, ValidationError
from grouper.core.models import AccuracyTier, Coordinate, ProximityResult

# Earth radius in meters (for Haversine).
_EARTH_R = 6_371_000.0

# Meters per degree of latitude, used to turn decimal precision into a ground span.
_M_PER_DEG = 111_320.0

DEFAULT_RADIUS_M = 100.0

_CTX = ErrorContext(operation="geo", component="geo")


@dataclass(frozen=True)
class AccuracyTiers:
    """Uncertainty thresholds (meters) for the proximity accuracy tier.

    An uncertainty strictly below ``high_below_m`` is ``high``, strictly below
    ``medium_below_m`` is ``medium``, anything else is ``low``.
    """
    high_below_m: float = 10.0
    medium_below_m: float = 100.0

    def tier_for(self, uncertainty_m: float) -> AccuracyTier:
        if uncertainty_m < self.high_below_m:
            return AccuracyTier.HIGH
        if uncertainty_m < self.medium_below_m:
            return AccuracyTier.MEDIUM
        return AccuracyTier.LOW


DEFAULT_TIERS = AccuracyTiers()


def is_valid_coordinate(coord: Coordinate | None) -> bool:
    if coord is None:
        return False
    lat, lon = coord.latitude, coord.longitude
    if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return False
    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def _require_valid(*coords: Coordinate) -> None:
    for c in coords:
        if not is_valid_coordinate(c):
            raise ValidationError(f"invalid coordinate: {c!r}", _CTX)


def _haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return 2 * _EARTH_R * math.asin(math.sqrt(min(a, 1.0)))


def distance_m(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in meters. Symmetric, zero for identical points."""
    _require_valid(a, b)
    if a.latitude == b.latitude and a.longitude == b.longitude:
        return 0.0
    return _haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def bearing_deg(a: Coordinate, b: Coordinate) -> float:
    """Initial compass bearing from ``a`` to ``b`` in [0, 360)."""
    _require_valid(a, b)
    rlat1, rlat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlon = math.radians(b.longitude - a.longitude)
    y = math.sin(dlon) * math.cos(rlat2)
    x = math.cos(rlat1) * math.sin(rlat2) - math.sin(rlat1) * math.cos(rlat2) * math.cos(dlon)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def _decimal_places(value: float) -> int:
    exponent = Decimal(repr(float(value))).as_tuple().exponent
    return max(0, -exponent) if isinstance(exponent, int) else 0


def coordinate_uncertainty_m(coord: Coordinate) -> float:
    """Positional uncertainty of a coordinate in meters.

    Uses the reported GPS accuracy when present. Otherwise falls back to the
    ground span of the last decimal place written (4 decimals is ~11 m).
    """
    if coord.accuracy_m is not None:
        return float(coord.accuracy_m)
    places = min(_decimal_places(coord.latitude), _decimal_places(coord.longitude))
    return _M_PER_DEG / (10 ** places)


def assess_accuracy(a: Coordinate, b: Coordinate, tiers: AccuracyTiers = DEFAULT_TIERS) -> AccuracyTier:
    """Accuracy tier of a pair, driven by the less precise of the two."""
    worst = max(coordinate_uncertainty_m(a), coordinate_uncertainty_m(b))
    return tiers.tier_for(worst)


def within_radius(
    a: Coordinate,
    b: Coordinate,
    radius_m: float = DEFAULT_RADIUS_M,
    tiers: AccuracyTiers = DEFAULT_TIERS,
) -> ProximityResult:
    """Check whether two points are within ``radius_m`` (boundary inclusive)."""
    d = distance_m(a, b)
    return ProximityResult(
        distance_m=d,
        is_within_radius=d <= radius_m,
        accuracy=assess_accuracy(a, b, tiers),
        bearing_deg=bearing_deg(a, b) if d > 0 else 0.0,
    )


def centroid(points: list[Coordinate]) -> Coordinate:
    """Arithmetic mean of latitudes and longitudes.

    This is not a geodesic centroid. It is close enough for clusters under a
    couple of hundred kilometres that do not straddle the antimeridian.
    """
    if not points:
        raise ValidationError("centroid requires at least one coordinate", _CTX)
    _require_valid(*points)
    n = len(points)
    return Coordinate(
        latitude=sum(p.latitude for p in points) / n,
        longitude=sum(p.longitude for p in points) / n,
    )


def find_nearby(
    center: Coordinate,
    candidates: list[Coordinate | None],
    radius_m: float = DEFAULT_RADIUS_M,
    tiers: AccuracyTiers = DEFAULT_TIERS,
) -> list[tuple[int, ProximityResult]]:
    """Indexes of candidates within ``radius_m`` of ``center``, closest first.

    Invalid or missing candidates are skipped.
    """
    _require_valid(center)
    nearby: list[tuple[int, ProximityResult]] = []
    for i, coord in enumerate(candidates):
        if not is_valid_coordinate(coord):
            continue
        result = within_radius(center, coord, radius_m, tiers)
        if result.is_within_radius:
            nearby.append((i, result))
    nearby.sort(key=lambda item: item[1].distance_m)
    return nearby


@dataclass(frozen=True)
class BoundingBox:
    north: float
    south: float
    east: float
    west: float

    @property
    def center(self) -> Coordinate:
        return Coordinate((self.north + self.south) / 2, (self.east + self.west) / 2)

    def contains(self, coord: Coordinate) -> bool:
        return (self.south <= coord.latitude <= self.north
                and self.west <= coord.longitude <= self.east)


def bounding_box(points: list[Coordinate]) -> BoundingBox:
    valid = [p for p in points if is_valid_coordinate(p)]
    if not valid:
        raise ValidationError("bounding_box requires at least one valid coordinate", _CTX)
    lats = [p.latitude for p in valid]
    lons = [p.longitude for p in valid]
    return BoundingBox(north=max(lats), south=min(lats), east=max(lons), west=min(lons))


def bounding_box_from_radius(center: Coordinate, radius_m: float) -> BoundingBox:
    """Approximate box around ``center``. Fine for small radii away from the poles."""
    _require_valid(center)
    lat_delta = math.degrees(radius_m / _EARTH_R)
    lon_delta = lat_delta / max(math.cos(math.radians(center.latitude)), 1e-12)
    return BoundingBox(
        north=center.latitude + lat_delta,
        south=center.latitude - lat_delta,
        east=center.longitude + lon_delta,
        west=center.longitude - lon_delta,
    )


@dataclass
class SpatialCluster:
    latitude: float = 0.0
    longitude: float = 0.0
    indexes: list[int] = field(default_factory=list)

    # Running sums for centroid update.
    _lat_sum: float = 0.0
    _lon_sum: float = 0.0

    def add(self, index: int, coord: Coordinate) -> None:
        self.indexes.append(index)
        self._lat_sum += coord.latitude
        self._lon_sum += coord.longitude
        self.latitude = self._lat_sum / len(self.indexes)
        self.longitude = self._lon_sum / len(self.indexes)

    @property
    def center(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


def cluster_coordinates(
    coords: list[Coordinate | None],
    radius_m: float = DEFAULT_RADIUS_M,
) -> list[SpatialCluster]:
    """Greedy spatial clustering.

    For each point, find the nearest existing cluster centre within
    ``radius_m``. If found, merge; otherwise start a new cluster. Largest
    clusters first.
    """
    clusters: list[SpatialCluster] = []

    for i, coord in enumerate(coords):
        if not is_valid_coordinate(coord):
            continue

        best_cluster = None
        best_dist = radius_m + 1
        for c in clusters:
            d = _haversine_m(coord.latitude, coord.longitude, c.latitude, c.longitude)
            if d < best_dist:
                best_dist = d
                best_cluster = c

        if best_cluster is not None and best_dist <= radius_m:
            best_cluster.add(i, coord)
        else:
            c = SpatialCluster()
            c.add(i, coord)
            clusters.append(c)

    clusters.sort(key=lambda c: len(c.indexes), reverse=True)
    return clusters
