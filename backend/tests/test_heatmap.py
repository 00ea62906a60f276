"""Tests for heat grid accumulation and PNG rendering.

See Also:
    - backend/geoengine/services/heatmap.py for the implementation.
"""

from __future__ import annotations

import numpy as np
import pytest
from shapely import geometry as shapely_geometry

from geoengine.core import config
from geoengine.db import models as db_models
from geoengine.db import spatial_store
from geoengine.services import heatmap

UNIT_BBOX = (0.0, 0.0, 1.0, 1.0)


def test_values_normalised_to_unit_range() -> None:
    """The hottest cell is exactly 1 and nothing leaves [0, 1]."""
    grid = heatmap.compute_heat_grid(
        [(106.70, 10.77), (106.71, 10.78), (106.71, 10.78)],
        bbox=(106.6, 10.7, 106.8, 10.9),
        grid_size=64,
    )
    assert grid.values.max() == pytest.approx(1.0)
    assert grid.values.min() >= 0.0
    cells = grid.cells()
    assert cells
    assert max(c.intensity for c in cells) == pytest.approx(1.0)
    assert all(grid.threshold < c.intensity <= 1.0 for c in cells)


def test_hottest_cell_holds_the_point() -> None:
    grid = heatmap.compute_heat_grid(
        [(0.55, 0.55)], bbox=UNIT_BBOX, grid_size=10, radius=50
    )
    hottest = max(grid.cells(), key=lambda c: c.intensity)
    assert (hottest.grid_x, hottest.grid_y) == (5, 5)
    assert hottest.longitude == pytest.approx(0.55)
    assert hottest.latitude == pytest.approx(0.55)


def test_rows_run_south_to_north() -> None:
    """Row 0 is the southern edge of the bbox."""
    grid = heatmap.compute_heat_grid(
        [(0.5, 0.05)], bbox=UNIT_BBOX, grid_size=10, radius=30
    )
    row, _ = np.unravel_index(np.argmax(grid.values), grid.values.shape)
    assert row == 0


def test_empty_points_give_no_cells() -> None:
    grid = heatmap.compute_heat_grid([], bbox=UNIT_BBOX, grid_size=8)
    assert grid.is_empty
    assert grid.cells() == []
    assert grid.values.shape == (8, 8)


def test_points_outside_bbox_contribute_nothing() -> None:
    grid = heatmap.compute_heat_grid(
        [(50.0, 50.0)], bbox=UNIT_BBOX, grid_size=8
    )
    assert grid.is_empty
    assert grid.cells() == []


def test_single_point_without_bbox_is_padded() -> None:
    """A degenerate envelope is widened instead of dividing by zero."""
    grid = heatmap.compute_heat_grid([(106.0, 10.0)], grid_size=16)
    assert grid.bbox is not None
    minx, miny, maxx, maxy = grid.bbox
    assert minx < 106.0 < maxx
    assert miny < 10.0 < maxy
    assert grid.values.max() == pytest.approx(1.0)


@pytest.mark.parametrize("grid_size", [1, 2, 4])
@pytest.mark.parametrize("point", [(0.2, 0.2), (0.25, 0.25), (1.0, 1.0)])
def test_coarse_grid_still_reaches_a_cell(
    grid_size: int,
    point: tuple[float, float],
) -> None:
    """A small radius on large cells still lights the point's own cell."""
    grid = heatmap.compute_heat_grid(
        [point], bbox=UNIT_BBOX, grid_size=grid_size, radius=1
    )
    cells = grid.cells()
    assert cells
    assert max(c.intensity for c in cells) == pytest.approx(1.0)


def test_coarse_grid_hottest_cell_holds_the_point() -> None:
    grid = heatmap.compute_heat_grid(
        [(0.2, 0.2)], bbox=UNIT_BBOX, grid_size=4
    )
    hottest = max(grid.cells(), key=lambda c: c.intensity)
    assert (hottest.grid_x, hottest.grid_y) == (0, 0)


def test_threshold_hides_faint_cells() -> None:
    grid = heatmap.compute_heat_grid(
        [(0.5, 0.5)], bbox=UNIT_BBOX, grid_size=32, radius=100
    )
    strict = heatmap.HeatGrid(grid.values, grid.bbox, threshold=0.9)
    assert 0 < len(strict.cells()) < len(grid.cells())


def test_radius_in_degrees() -> None:
    bbox = (0.0, 0.0, 2.56, 5.12)
    assert heatmap.radius_in_degrees(20, bbox) == pytest.approx(0.3)


def test_cell_payload_shape() -> None:
    cell = heatmap.HeatCell(1.0, 2.0, 0.5, 3, 4)
    assert cell.to_payload() == {
        "longitude": 1.0,
        "latitude": 2.0,
        "intensity": 0.5,
        "gridX": 3,
        "gridY": 4,
    }


@pytest.mark.parametrize(
    "kwargs",
    [{"grid_size": 0}, {"radius": 0}, {"intensity": -1}],
)
def test_request_validation(kwargs: dict[str, float]) -> None:
    with pytest.raises(heatmap.InvalidHeatmapRequestError):
        heatmap.HeatmapRequest(
            layer_id="layer-1",
            **kwargs,  # type: ignore[arg-type]
        )


def test_request_partial_bbox() -> None:
    with pytest.raises(heatmap.InvalidHeatmapRequestError):
        heatmap.HeatmapRequest.from_params("layer-1", max_lat=3.0)


def test_heatmap_layer_requires_layer_id() -> None:
    with pytest.raises(heatmap.InvalidHeatmapRequestError):
        heatmap.heatmap_layer(
            heatmap.HeatmapRequest(layer_id=""),
            spatial_store.InMemoryFeatureStore(),
            config.Settings(),
        )


def test_heatmap_layer_reads_points() -> None:
    store = spatial_store.InMemoryFeatureStore()
    store.add_batch(
        [
            db_models.Feature.create(
                layer_id="layer-1",
                geometry=shapely_geometry.Point(0.5, 0.5),
            ),
            db_models.Feature.create(
                layer_id="layer-1",
                geometry=shapely_geometry.LineString([(0, 0), (1, 1)]),
            ),
        ]
    )
    request = heatmap.HeatmapRequest.from_params(
        "layer-1", 0.0, 0.0, 1.0, 1.0, grid_size=16
    )
    grid = heatmap.heatmap_layer(request, store, config.Settings())
    assert grid.bbox == UNIT_BBOX
    assert grid.values.max() == pytest.approx(1.0)


def test_render_heat_png() -> None:
    grid = heatmap.compute_heat_grid(
        [(0.5, 0.5)], bbox=UNIT_BBOX, grid_size=32
    )
    png = heatmap.render_heat_png(grid)
    assert png.startswith(b"\x89PNG\r\n\x1a\n")


def test_render_heat_png_unknown_colormap() -> None:
    grid = heatmap.compute_heat_grid(
        [(0.5, 0.5)], bbox=UNIT_BBOX, grid_size=8
    )
    with pytest.raises(heatmap.InvalidHeatmapRequestError, match="colormap"):
        heatmap.render_heat_png(grid, colormap="not-a-colormap")
