"""Tests for the vector ingestion pipeline.

Each test registers an upload in in-memory stores, runs the pipeline
synchronously and inspects the terminal upload, its stats and the
persisted features.

See Also:
    - backend/geoengine/services/ingest_vector.py for the implementation.
"""

from __future__ import annotations

import json
import threading
from typing import TYPE_CHECKING, Any

import pytest
from shapely import geometry as shapely_geometry

from geoengine.core import config
from geoengine.db import database, spatial_store
from geoengine.db import models as db_models
from geoengine.services import crs, ingest_vector, object_store

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Sequence


class FlakyFeatureStore(spatial_store.InMemoryFeatureStore):
    """Fails the first ``failures`` batch writes with OSError."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    def add_batch(self, features: Sequence[db_models.Feature]) -> int:
        self.calls += 1
        if self.calls <= self.failures:
            raise OSError("connection reset")
        return super().add_batch(features)


def _settings(tmp_path: pathlib.Path, **overrides: Any) -> config.Settings:
    return config.Settings(
        storage_dir=tmp_path / "objects",
        scratch_dir=tmp_path / "scratch",
        **overrides,
    )


def _points(coordinates: list[tuple[float, float]], **extra: Any) -> bytes:
    document: dict[str, Any] = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": list(coords)},
                "properties": {"n": i},
            }
            for i, coords in enumerate(coordinates)
        ],
    }
    document.update(extra)
    return json.dumps(document).encode("utf-8")


def _pipeline(
    tmp_path: pathlib.Path,
    stores: database.Stores | None = None,
    **overrides: Any,
) -> ingest_vector.IngestionPipeline:
    return ingest_vector.IngestionPipeline(
        _settings(tmp_path, **overrides),
        stores or database.in_memory_stores(),
        object_store.InMemoryObjectStore(),
    )


def _register(
    pipeline: ingest_vector.IngestionPipeline,
    file_name: str,
    data: bytes,
    **fields: Any,
) -> db_models.Upload:
    upload = db_models.Upload(
        id=db_models.new_id(),
        file_key=f"uploads/{file_name}",
        file_name=file_name,
        file_size=len(data),
        **fields,
    )
    pipeline.object_store.put(upload.file_key, data)
    pipeline.stores.uploads.add(upload)
    return upload


def test_valid_and_out_of_range_points(tmp_path: pathlib.Path) -> None:
    """Ten valid points and two outside WGS84 give a PROCESSED upload."""
    pipeline = _pipeline(tmp_path)
    valid = [(106.0 + i * 0.1, 10.0 + i * 0.1) for i in range(10)]
    data = _points([*valid, (200.0, 10.0), (106.0, -95.0)])
    upload = _register(pipeline, "depots.geojson", data)

    result = pipeline.run(upload.id)

    assert result.status is db_models.UploadStatus.PROCESSED
    assert result.message == "Processed 10 features successfully, 2 failed"
    assert result.stats["totalFeatures"] == 12
    assert result.stats["successCount"] == 10
    assert result.stats["failedCount"] == 2
    assert result.stats["bbox"] == {
        "minLng": pytest.approx(106.0),
        "minLat": pytest.approx(10.0),
        "maxLng": pytest.approx(106.9),
        "maxLat": pytest.approx(10.9),
    }

    layer = pipeline.stores.layers.get(result.layer_id)
    assert layer is not None
    assert layer.code == "depots"
    assert layer.kind is db_models.GeometryKind.POINT
    assert layer.bbox == pytest.approx((106.0, 10.0, 106.9, 10.9))
    assert len(pipeline.stores.features.for_layer(layer.id)) == 10


def test_empty_file_fails(tmp_path: pathlib.Path) -> None:
    pipeline = _pipeline(tmp_path)
    upload = _register(pipeline, "empty.geojson", _points([]))
    result = pipeline.run(upload.id)
    assert result.status is db_models.UploadStatus.FAILED
    assert result.message == ingest_vector.EMPTY_MESSAGE


def test_parse_error_becomes_failed_message(tmp_path: pathlib.Path) -> None:
    """Systemic parser errors end the upload with their message."""
    pipeline = _pipeline(tmp_path)
    upload = _register(pipeline, "points.csv", b"name,value\nA,1\n")
    result = pipeline.run(upload.id)
    assert result.status is db_models.UploadStatus.FAILED
    assert "Could not detect a latitude column" in (result.message or "")


def test_csv_with_explicit_columns(tmp_path: pathlib.Path) -> None:
    pipeline = _pipeline(tmp_path)
    upload = _register(
        pipeline,
        "sites.csv",
        b"site,north,east\nA,10.5,106.5\n",
        lat_column="north",
        lng_column="east",
    )
    result = pipeline.run(upload.id)
    assert result.status is db_models.UploadStatus.PROCESSED
    [feature] = pipeline.stores.features.for_layer(result.layer_id or "")
    assert feature.geometry.equals(shapely_geometry.Point(106.5, 10.5))
    assert feature.properties == {"site": "A"}


def test_cancel_before_start(tmp_path: pathlib.Path) -> None:
    """A pre-set cancel event fails the upload without processing."""
    pipeline = _pipeline(tmp_path)
    upload = _register(pipeline, "depots.geojson", _points([(1, 1)]))
    event = threading.Event()
    event.set()
    result = pipeline.run(upload.id, event)
    assert result.status is db_models.UploadStatus.FAILED
    assert result.message == ingest_vector.CANCELLED_MESSAGE
    assert list(pipeline.stores.layers.all()) == []


def test_cancel_between_batches(tmp_path: pathlib.Path) -> None:
    """Batches already written stay committed after cancellation."""
    event = threading.Event()

    class CancellingStore(spatial_store.InMemoryFeatureStore):
        def add_batch(self, features: Sequence[db_models.Feature]) -> int:
            written = super().add_batch(features)
            event.set()
            return written

    stores = database.in_memory_stores()
    stores.features = CancellingStore()
    pipeline = _pipeline(tmp_path, stores, ingest_batch_size=5)
    data = _points([(100.0 + i * 0.01, 0.0) for i in range(12)])
    upload = _register(pipeline, "depots.geojson", data)

    result = pipeline.run(upload.id, event)

    assert result.status is db_models.UploadStatus.FAILED
    assert result.message == ingest_vector.CANCELLED_MESSAGE
    assert len(stores.features.for_layer(result.layer_id or "")) == 5


def test_layer_code_gets_suffix_when_taken(tmp_path: pathlib.Path) -> None:
    pipeline = _pipeline(tmp_path)
    pipeline.stores.layers.add(
        db_models.Layer(
            id="existing",
            code="depots",
            name="depots",
            kind=db_models.GeometryKind.POINT,
        )
    )
    upload = _register(pipeline, "Depots.geojson", _points([(1, 1)]))
    result = pipeline.run(upload.id)
    layer = pipeline.stores.layers.get(result.layer_id or "")
    assert layer is not None
    assert layer.code == "depots_2"
    assert layer.metadata["uploadId"] == upload.id


def test_kind_mismatch_counted_as_failed(tmp_path: pathlib.Path) -> None:
    """Records of another geometry kind than the layer are rejected."""
    pipeline = _pipeline(tmp_path)
    data = json.dumps(
        {
            "type": "FeatureCollection",
            "features": [
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": [1, 1]},
                    "properties": {},
                },
                {
                    "type": "Feature",
                    "geometry": {
                        "type": "LineString",
                        "coordinates": [[0, 0], [1, 1]],
                    },
                    "properties": {},
                },
            ],
        }
    ).encode()
    upload = _register(pipeline, "mixed.geojson", data)
    result = pipeline.run(upload.id)
    assert result.status is db_models.UploadStatus.PROCESSED
    assert result.stats["successCount"] == 1
    assert result.stats["failedCount"] == 1


def test_invalid_polygon_is_repaired(tmp_path: pathlib.Path) -> None:
    pipeline = _pipeline(tmp_path)
    bowtie = {
        "type": "Polygon",
        "coordinates": [[[0, 0], [1, 1], [1, 0], [0, 1], [0, 0]]],
    }
    upload = _register(pipeline, "zone.geojson", json.dumps(bowtie).encode())
    result = pipeline.run(upload.id)
    assert result.status is db_models.UploadStatus.PROCESSED
    [feature] = pipeline.stores.features.for_layer(result.layer_id or "")
    assert feature.geometry.is_valid
    assert feature.kind is db_models.GeometryKind.POLYGON


def test_projected_coordinates_are_reprojected(
    tmp_path: pathlib.Path,
) -> None:
    """Web Mercator input is stored in WGS84."""
    projected = crs.transform(
        shapely_geometry.Point(106.7, 10.77), 4326, 3857
    )
    data = _points(
        [(projected.x, projected.y)],
        crs={"type": "name", "properties": {"name": "EPSG:3857"}},
    )
    pipeline = _pipeline(tmp_path)
    upload = _register(pipeline, "mercator.geojson", data)

    result = pipeline.run(upload.id)

    [feature] = pipeline.stores.features.for_layer(result.layer_id or "")
    assert feature.geometry.x == pytest.approx(106.7, abs=1e-6)
    assert feature.geometry.y == pytest.approx(10.77, abs=1e-6)


def test_failed_batch_is_retried(tmp_path: pathlib.Path) -> None:
    stores = database.in_memory_stores()
    flaky = FlakyFeatureStore(failures=1)
    stores.features = flaky
    pipeline = _pipeline(tmp_path, stores, ingest_max_retries=2)
    upload = _register(pipeline, "depots.geojson", _points([(1, 1), (2, 2)]))

    result = pipeline.run(upload.id)

    assert result.status is db_models.UploadStatus.PROCESSED
    assert result.stats["successCount"] == 2
    assert flaky.calls == 2


def test_batch_failing_every_retry(tmp_path: pathlib.Path) -> None:
    """A batch that never lands is counted failed; the error is reported."""
    stores = database.in_memory_stores()
    stores.features = FlakyFeatureStore(failures=100)
    pipeline = _pipeline(tmp_path, stores, ingest_max_retries=1)
    upload = _register(pipeline, "depots.geojson", _points([(1, 1)]))

    result = pipeline.run(upload.id)

    assert result.status is db_models.UploadStatus.FAILED
    assert result.message == "connection reset"
    assert result.stats["failedCount"] == 1
    assert stores.features.calls == 2  # type: ignore[attr-defined]


def test_unknown_target_layer_fails(tmp_path: pathlib.Path) -> None:
    pipeline = _pipeline(tmp_path)
    upload = _register(
        pipeline, "depots.geojson", _points([(1, 1)]), layer_id="missing"
    )
    result = pipeline.run(upload.id)
    assert result.status is db_models.UploadStatus.FAILED
    assert result.message == "Layer not found: missing"


def test_missing_object_fails(tmp_path: pathlib.Path) -> None:
    pipeline = _pipeline(tmp_path)
    upload = db_models.Upload(
        id="u1", file_key="uploads/gone.csv", file_name="gone.csv", file_size=1
    )
    pipeline.stores.uploads.add(upload)
    assert pipeline.run("u1").status is db_models.UploadStatus.FAILED


def test_unknown_upload_raises(tmp_path: pathlib.Path) -> None:
    with pytest.raises(ingest_vector.UploadNotFoundError):
        _pipeline(tmp_path).run("nope")


def test_terminal_upload_returned_unchanged(tmp_path: pathlib.Path) -> None:
    pipeline = _pipeline(tmp_path)
    upload = _register(pipeline, "depots.geojson", _points([(1, 1)]))
    pipeline.run(upload.id)
    again = pipeline.run(upload.id)
    assert again.status is db_models.UploadStatus.PROCESSED
    assert len(list(pipeline.stores.layers.all())) == 1


@pytest.mark.parametrize(
    ("file_name", "code"),
    [
        ("My Depots.csv", "my_depots"),
        ("roads-2024.zip", "roads_2024"),
        ("___.geojson", "layer"),
    ],
)
def test_layer_code_for(file_name: str, code: str) -> None:
    assert ingest_vector.layer_code_for(file_name) == code


def test_summary_message() -> None:
    stats = db_models.UploadStats(success_count=3, failed_count=1)
    assert (
        ingest_vector.summary_message(stats)
        == "Processed 3 features successfully, 1 failed"
    )
