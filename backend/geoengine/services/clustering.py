"""Grid clustering of point features for map rendering.

Points are bucketed into square cells of ``cell_size`` degrees keyed by
``(floor(lng / cell_size), floor(lat / cell_size))``. A cell with one
member becomes a singleton; a cell with more becomes a cluster located at
the mean of its members. Every input point lands in exactly one output
entry, and the output is ordered by cell key.

Only features of kind POINT take part; line and polygon features are
ignored. Multi-point features are represented by their centroid.

The cell size follows ``180 / 2**zoom * factor`` (factor 0.1 by default)
unless the caller supplies one.

Example:
    >>> from geoengine.services import clustering
    >>> clusters = clustering.cluster_features(features, zoom=10)
    >>> sum(c.point_count for c in clusters) == len(features)
    True
"""

from __future__ import annotations

import collections
import dataclasses
import math
from typing import TYPE_CHECKING, Any, NamedTuple

from geoengine.db import models as db_models
from geoengine.services import geometry

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from geoengine.core import config
    from geoengine.db import spatial_store

DEFAULT_RADIUS_FACTOR = 0.1
DEFAULT_ZOOM = 12
MAX_MEMBER_IDS = 100

_EARTH_RADIUS_M = 6_371_000.0


class InvalidClusterRequestError(ValueError):
    """Raised for malformed clustering requests."""


class PointMember(NamedTuple):
    feature_id: str
    lng: float
    lat: float


@dataclasses.dataclass
class ClusterPoint:
    """A cluster centroid or a singleton point.

    Attributes:
        longitude: Centroid longitude (the point itself for singletons).
        latitude: Centroid latitude.
        point_count: Number of member features.
        is_cluster: False for singletons.
        bounds: Envelope of the members.
        feature_ids: Member ids, or None when the cluster is too large.
    """

    longitude: float
    latitude: float
    point_count: int
    is_cluster: bool
    bounds: db_models.BBox
    feature_ids: list[str] | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "longitude": self.longitude,
            "latitude": self.latitude,
            "pointCount": self.point_count,
            "isCluster": self.is_cluster,
            "featureIds": self.feature_ids,
            "bounds": {
                "minLng": self.bounds[0],
                "minLat": self.bounds[1],
                "maxLng": self.bounds[2],
                "maxLat": self.bounds[3],
            },
        }


@dataclasses.dataclass
class ClusterRequest:
    layer_id: str | None
    zoom: int | None = None
    bbox: db_models.BBox | None = None
    cell_size: float | None = None

    @classmethod
    def from_params(
        cls,
        layer_id: str | None,
        zoom: int | None = None,
        min_lng: float | None = None,
        min_lat: float | None = None,
        max_lng: float | None = None,
        max_lat: float | None = None,
        cell_size: float | None = None,
    ) -> ClusterRequest:
        """Build a request from flat query parameters.

        Raises:
            InvalidClusterRequestError: If the bbox is partial.
        """
        try:
            bbox = geometry.bbox_from_bounds(
                min_lng, min_lat, max_lng, max_lat
            )
        except geometry.InvalidBBoxError as exc:
            raise InvalidClusterRequestError(str(exc)) from exc
        return cls(
            layer_id=layer_id,
            zoom=zoom,
            bbox=bbox,
            cell_size=cell_size,
        )


def cell_size_for_zoom(
    zoom: int,
    factor: float = DEFAULT_RADIUS_FACTOR,
) -> float:
    """Return the cell edge in degrees for a web-map zoom level."""
    return 180.0 / 2**zoom * factor


def cluster_features(
    features: Iterable[db_models.Feature],
    zoom: int | None = None,
    cell_size: float | None = None,
    radius_factor: float = DEFAULT_RADIUS_FACTOR,
    max_member_ids: int = MAX_MEMBER_IDS,
) -> list[ClusterPoint]:
    """Partition point features into grid clusters.

    Args:
        features: Candidate features; non-point and deleted ones are
            skipped.
        zoom: Zoom level used to derive the cell size.
        cell_size: Explicit cell edge in degrees, overriding ``zoom``.
        radius_factor: Multiplier applied to the zoom-derived size.
        max_member_ids: Largest cluster that still lists its member ids.

    Returns:
        Clusters and singletons ordered by cell key. Empty input gives an
        empty list.

    Raises:
        InvalidClusterRequestError: If the cell size is not positive.
    """
    size = cell_size
    if size is None:
        size = cell_size_for_zoom(
            zoom if zoom is not None else DEFAULT_ZOOM,
            radius_factor,
        )
    if not size > 0 or not math.isfinite(size):
        raise InvalidClusterRequestError("Cell size must be positive")

    cells: dict[tuple[int, int], list[PointMember]] = collections.defaultdict(
        list
    )
    for member in point_members(features):
        key = (math.floor(member.lng / size), math.floor(member.lat / size))
        cells[key].append(member)

    return [
        _summarise(members, max_member_ids)
        for _, members in sorted(cells.items())
    ]


def cluster_layer(
    request: ClusterRequest,
    store: spatial_store.FeatureStoreProtocol,
    settings: config.Settings,
) -> list[ClusterPoint]:
    """Fetch a layer's features and cluster them.

    With a bbox the store's bounding-box query is used; otherwise the first
    ``settings.cluster_feature_limit`` features of the layer.

    Raises:
        InvalidClusterRequestError: If the layer id is missing.
    """
    if not request.layer_id:
        raise InvalidClusterRequestError("Layer ID is required")
    if request.bbox is not None:
        features = store.in_bbox(request.layer_id, request.bbox)
    else:
        features = store.for_layer(
            request.layer_id,
            limit=settings.cluster_feature_limit,
        )
    zoom = request.zoom
    if zoom is None:
        zoom = settings.cluster_default_zoom
    return cluster_features(
        features,
        zoom=zoom,
        cell_size=request.cell_size,
        radius_factor=settings.cluster_radius_factor,
        max_member_ids=settings.cluster_max_member_ids,
    )


def haversine_m(lng1: float, lat1: float, lng2: float, lat2: float) -> float:
    """Great-circle distance in meters between two points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlng / 2) ** 2
    )
    return 2 * _EARTH_RADIUS_M * math.asin(math.sqrt(a))


def cluster_by_distance(
    features: Iterable[db_models.Feature],
    max_distance_m: float,
    max_member_ids: int = MAX_MEMBER_IDS,
) -> list[ClusterPoint]:
    """Greedy distance clustering around seed points.

    Each unassigned point, in input order, seeds a cluster that absorbs
    every other unassigned point within ``max_distance_m`` of the seed.
    Quadratic in the number of points; meant for small sets.
    """
    members = list(point_members(features))
    assigned = [False] * len(members)
    clusters = []
    for i, seed in enumerate(members):
        if assigned[i]:
            continue
        assigned[i] = True
        group = [seed]
        for j in range(i + 1, len(members)):
            if assigned[j]:
                continue
            other = members[j]
            distance = haversine_m(seed.lng, seed.lat, other.lng, other.lat)
            if distance <= max_distance_m:
                assigned[j] = True
                group.append(other)
        clusters.append(_summarise(group, max_member_ids))
    return clusters


def point_members(
    features: Iterable[db_models.Feature],
) -> Iterable[PointMember]:
    """Yield (id, lng, lat) for live point features, skipping other kinds."""
    for feature in features:
        if feature.kind is not db_models.GeometryKind.POINT:
            continue
        if feature.is_deleted or feature.geometry.is_empty:
            continue
        point = feature.geometry
        if point.geom_type != "Point":
            point = point.centroid
        yield PointMember(feature.id, point.x, point.y)


def _summarise(
    members: Sequence[PointMember],
    max_member_ids: int,
) -> ClusterPoint:
    lngs = [m.lng for m in members]
    lats = [m.lat for m in members]
    count = len(members)
    ids = [m.feature_id for m in members] if count <= max_member_ids else None
    return ClusterPoint(
        longitude=sum(lngs) / count,
        latitude=sum(lats) / count,
        point_count=count,
        is_cluster=count > 1,
        bounds=(min(lngs), min(lats), max(lngs), max(lats)),
        feature_ids=ids,
    )
