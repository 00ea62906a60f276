"""Tests for grid and distance clustering.

See Also:
    - backend/geoengine/services/clustering.py for the implementation.
"""

from __future__ import annotations

import random

import pytest
from shapely import geometry as shapely_geometry

from geoengine.core import config
from geoengine.db import models as db_models
from geoengine.db import spatial_store
from geoengine.services import clustering


def _point(
    lng: float,
    lat: float,
    layer_id: str = "layer-1",
) -> db_models.Feature:
    return db_models.Feature.create(
        layer_id=layer_id,
        geometry=shapely_geometry.Point(lng, lat),
    )


def test_every_point_lands_in_exactly_one_entry() -> None:
    """Clusters partition the input: counts add up, ids never repeat."""
    rng = random.Random(7)
    features = [
        _point(rng.uniform(105, 107), rng.uniform(10, 12))
        for _ in range(500)
    ]
    clusters = clustering.cluster_features(
        features, cell_size=0.25, max_member_ids=1000
    )
    assert sum(c.point_count for c in clusters) == 500
    ids = [i for c in clusters for i in c.feature_ids or []]
    assert sorted(ids) == sorted(f.id for f in features)


def test_singleton_and_cluster() -> None:
    near = [_point(106.01, 10.01), _point(106.02, 10.03)]
    far = _point(107.5, 11.5)
    clusters = clustering.cluster_features([*near, far], cell_size=0.1)

    assert [c.point_count for c in clusters] == [2, 1]
    cluster, singleton = clusters
    assert cluster.is_cluster
    assert cluster.longitude == pytest.approx(106.015)
    assert cluster.latitude == pytest.approx(10.02)
    assert cluster.bounds == pytest.approx((106.01, 10.01, 106.02, 10.03))
    assert not singleton.is_cluster
    assert (singleton.longitude, singleton.latitude) == (107.5, 11.5)
    assert singleton.feature_ids == [far.id]


def test_member_ids_dropped_for_large_clusters() -> None:
    features = [_point(106.0 + i * 1e-5, 10.0) for i in range(5)]
    [small] = clustering.cluster_features(
        features, cell_size=1.0, max_member_ids=5
    )
    [large] = clustering.cluster_features(
        features, cell_size=1.0, max_member_ids=4
    )
    assert small.feature_ids is not None
    assert len(small.feature_ids) == 5
    assert large.feature_ids is None
    assert large.point_count == 5


def test_negative_coordinates_use_floor() -> None:
    """Points either side of zero never share a cell."""
    clusters = clustering.cluster_features(
        [_point(-0.01, -0.01), _point(0.01, 0.01)], cell_size=1.0
    )
    assert [c.point_count for c in clusters] == [1, 1]


def test_non_point_and_deleted_features_ignored() -> None:
    line = db_models.Feature.create(
        layer_id="layer-1",
        geometry=shapely_geometry.LineString([(0, 0), (1, 1)]),
    )
    deleted = _point(0.5, 0.5)
    deleted.deleted_at = db_models.utcnow()
    multi = db_models.Feature.create(
        layer_id="layer-1",
        geometry=shapely_geometry.MultiPoint([(0, 0), (2, 2)]),
    )
    [only] = clustering.cluster_features(
        [line, deleted, multi], cell_size=10.0
    )
    assert only.feature_ids == [multi.id]
    assert (only.longitude, only.latitude) == (1.0, 1.0)


def test_empty_input_gives_empty_list() -> None:
    assert clustering.cluster_features([], zoom=5) == []


@pytest.mark.parametrize("size", [0.0, -1.0, float("nan")])
def test_cell_size_must_be_positive(size: float) -> None:
    with pytest.raises(clustering.InvalidClusterRequestError):
        clustering.cluster_features([_point(0, 0)], cell_size=size)


@pytest.mark.parametrize(
    ("zoom", "expected"),
    [(0, 18.0), (1, 9.0), (10, 180.0 / 1024 * 0.1)],
)
def test_cell_size_for_zoom(zoom: int, expected: float) -> None:
    assert clustering.cell_size_for_zoom(zoom) == pytest.approx(expected)


def test_higher_zoom_splits_clusters() -> None:
    features = [_point(106.0, 10.0), _point(106.05, 10.0)]
    assert len(clustering.cluster_features(features, zoom=5)) == 1
    assert len(clustering.cluster_features(features, zoom=12)) == 2


def test_cluster_request_partial_bbox() -> None:
    with pytest.raises(clustering.InvalidClusterRequestError):
        clustering.ClusterRequest.from_params("layer-1", min_lng=1.0)


def test_cluster_layer_requires_layer_id() -> None:
    request = clustering.ClusterRequest(layer_id=None)
    with pytest.raises(clustering.InvalidClusterRequestError):
        clustering.cluster_layer(
            request, spatial_store.InMemoryFeatureStore(), config.Settings()
        )


def test_cluster_layer_uses_bbox() -> None:
    """Only features inside the requested bbox are clustered."""
    store = spatial_store.InMemoryFeatureStore()
    inside = _point(106.5, 10.5)
    store.add_batch([inside, _point(120.0, 10.5)])
    request = clustering.ClusterRequest.from_params(
        "layer-1", zoom=3, min_lng=106, min_lat=10, max_lng=107, max_lat=11
    )
    [entry] = clustering.cluster_layer(request, store, config.Settings())
    assert entry.feature_ids == [inside.id]


def test_cluster_layer_without_bbox_honours_limit() -> None:
    store = spatial_store.InMemoryFeatureStore()
    store.add_batch([_point(100 + i, 0) for i in range(5)])
    settings = config.Settings(cluster_feature_limit=3)
    clusters = clustering.cluster_layer(
        clustering.ClusterRequest(layer_id="layer-1", cell_size=0.5),
        store,
        settings,
    )
    assert sum(c.point_count for c in clusters) == 3


def test_cluster_payload_shape() -> None:
    [entry] = clustering.cluster_features([_point(1, 2)], cell_size=1.0)
    payload = entry.to_payload()
    assert payload["pointCount"] == 1
    assert payload["isCluster"] is False
    assert payload["bounds"] == {
        "minLng": 1,
        "minLat": 2,
        "maxLng": 1,
        "maxLat": 2,
    }


def test_haversine_one_degree_at_equator() -> None:
    assert clustering.haversine_m(0, 0, 1, 0) == pytest.approx(
        111_195, rel=1e-3
    )
    assert clustering.haversine_m(106, 10, 106, 10) == 0


def test_cluster_by_distance() -> None:
    seed = _point(106.0, 10.0)
    close = _point(106.001, 10.0)
    far = _point(106.1, 10.0)
    clusters = clustering.cluster_by_distance(
        [seed, close, far], max_distance_m=500
    )
    assert [c.feature_ids for c in clusters] == [
        [seed.id, close.id],
        [far.id],
    ]
