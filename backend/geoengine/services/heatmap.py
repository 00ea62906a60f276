"""Heat grid generation from point densities.

Every point adds ``exp(-d² / (2 · (r/2)²)) · intensity`` to each grid cell
whose center lies within ``r`` degrees of it, where ``r`` is the requested
pixel radius converted with the bbox's average degrees-per-pixel over a
256 pixel viewport. The grid is then divided by its own maximum, so values
are in [0, 1] and the hottest cell is exactly 1. Cells above the
significance threshold (0.01) are emitted row by row, south to north.

An empty point set, or one whose contributions are all zero, yields no
cells.

Example:
    >>> from geoengine.services import heatmap
    >>> grid = heatmap.compute_heat_grid(
    ...     [(106.70, 10.77), (106.71, 10.78)],
    ...     bbox=(106.6, 10.7, 106.8, 10.9),
    ...     grid_size=64,
    ... )
    >>> max(cell.intensity for cell in grid.cells())
    1.0
"""

from __future__ import annotations

import dataclasses
import math
from typing import TYPE_CHECKING, Any

import numpy as np
from rio_tiler import errors as rio_tiler_errors
from rio_tiler import models as rio_tiler_models
from rio_tiler.colormap import cmap

from geoengine.services import clustering, geometry

if TYPE_CHECKING:
    from collections.abc import Iterable

    from geoengine.core import config
    from geoengine.db import models as db_models
    from geoengine.db import spatial_store

DEFAULT_GRID_SIZE = 256
DEFAULT_RADIUS = 20.0
DEFAULT_INTENSITY = 1.0
DEFAULT_TILE_SIZE = 256.0
DEFAULT_THRESHOLD = 0.01

# Half-width used when all points share a coordinate.
_DEGENERATE_PAD = 1e-3


class InvalidHeatmapRequestError(ValueError):
    """Raised for malformed heat-grid requests."""


@dataclasses.dataclass(frozen=True)
class HeatCell:
    longitude: float
    latitude: float
    intensity: float
    grid_x: int
    grid_y: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "longitude": self.longitude,
            "latitude": self.latitude,
            "intensity": self.intensity,
            "gridX": self.grid_x,
            "gridY": self.grid_y,
        }


@dataclasses.dataclass
class HeatGrid:
    """Normalised N x N intensity grid over ``bbox``.

    Row 0 is the southern edge of the bbox and column 0 its western edge.
    ``values`` is all zeros when nothing contributed.
    """

    values: np.ndarray
    bbox: db_models.BBox | None
    threshold: float = DEFAULT_THRESHOLD

    @property
    def size(self) -> int:
        return int(self.values.shape[0])

    @property
    def is_empty(self) -> bool:
        return self.bbox is None or not bool(self.values.any())

    def cells(self) -> list[HeatCell]:
        """Return the cells above the threshold, row by row."""
        if self.is_empty:
            return []
        assert self.bbox is not None
        minx, miny, maxx, maxy = self.bbox
        cell_w = (maxx - minx) / self.size
        cell_h = (maxy - miny) / self.size
        rows, cols = np.nonzero(self.values > self.threshold)
        return [
            HeatCell(
                longitude=minx + (x + 0.5) * cell_w,
                latitude=miny + (y + 0.5) * cell_h,
                intensity=float(self.values[y, x]),
                grid_x=int(x),
                grid_y=int(y),
            )
            for y, x in zip(rows, cols, strict=True)
        ]


@dataclasses.dataclass
class HeatmapRequest:
    layer_id: str | None
    bbox: db_models.BBox | None = None
    grid_size: int = DEFAULT_GRID_SIZE
    radius: float = DEFAULT_RADIUS
    intensity: float = DEFAULT_INTENSITY

    def __post_init__(self) -> None:
        if self.grid_size < 1:
            raise InvalidHeatmapRequestError("Grid size must be at least 1")
        if not self.radius > 0:
            raise InvalidHeatmapRequestError("Radius must be positive")
        if not self.intensity > 0:
            raise InvalidHeatmapRequestError("Intensity must be positive")

    @classmethod
    def from_params(
        cls,
        layer_id: str | None,
        min_lng: float | None = None,
        min_lat: float | None = None,
        max_lng: float | None = None,
        max_lat: float | None = None,
        grid_size: int = DEFAULT_GRID_SIZE,
        radius: float = DEFAULT_RADIUS,
        intensity: float = DEFAULT_INTENSITY,
    ) -> HeatmapRequest:
        try:
            bbox = geometry.bbox_from_bounds(
                min_lng, min_lat, max_lng, max_lat
            )
        except geometry.InvalidBBoxError as exc:
            raise InvalidHeatmapRequestError(str(exc)) from exc
        return cls(
            layer_id=layer_id,
            bbox=bbox,
            grid_size=grid_size,
            radius=radius,
            intensity=intensity,
        )


def radius_in_degrees(
    radius_px: float,
    bbox: db_models.BBox,
    tile_size: float = DEFAULT_TILE_SIZE,
) -> float:
    """Convert a pixel radius using the bbox's mean degrees per pixel."""
    per_px_x = (bbox[2] - bbox[0]) / tile_size
    per_px_y = (bbox[3] - bbox[1]) / tile_size
    return radius_px * (per_px_x + per_px_y) / 2


def compute_heat_grid(
    points: Iterable[tuple[float, float]],
    bbox: db_models.BBox | None = None,
    grid_size: int = DEFAULT_GRID_SIZE,
    radius: float = DEFAULT_RADIUS,
    intensity: float = DEFAULT_INTENSITY,
    tile_size: float = DEFAULT_TILE_SIZE,
    threshold: float = DEFAULT_THRESHOLD,
) -> HeatGrid:
    """Accumulate and normalise a heat grid.

    Args:
        points: ``(lng, lat)`` pairs.
        bbox: Grid extent; the padded envelope of ``points`` when omitted.
        grid_size: Cells per side.
        radius: Influence radius in pixels.
        intensity: Weight applied to every contribution.
        tile_size: Viewport width in pixels used for the radius.
        threshold: Minimum normalised value emitted by ``cells()``.

    Returns:
        The normalised grid.
    """
    coords = np.asarray(list(points), dtype=float).reshape(-1, 2)
    values = np.zeros((grid_size, grid_size), dtype=float)
    if coords.shape[0] == 0:
        return HeatGrid(values, bbox, threshold)

    extent = _padded(bbox if bbox is not None else _envelope(coords))
    minx, miny, maxx, maxy = extent
    cell_w = (maxx - minx) / grid_size
    cell_h = (maxy - miny) / grid_size
    centers_x = minx + (np.arange(grid_size) + 0.5) * cell_w
    centers_y = miny + (np.arange(grid_size) + 0.5) * cell_h

    # Just over half a cell diagonal, so every point reaches its own cell
    # centre even from a corner.
    r = max(
        radius_in_degrees(radius, extent, tile_size),
        0.51 * math.hypot(cell_w, cell_h),
    )
    r2 = r * r
    sigma2 = 2 * (r / 2) ** 2
    reach = math.ceil(r / max(cell_w, cell_h))

    for lng, lat in coords:
        cx = math.floor((lng - minx) / cell_w)
        cy = math.floor((lat - miny) / cell_h)
        x0, x1 = max(cx - reach, 0), min(cx + reach, grid_size - 1)
        y0, y1 = max(cy - reach, 0), min(cy + reach, grid_size - 1)
        if x0 > x1 or y0 > y1:
            continue
        dx = centers_x[x0:x1 + 1] - lng
        dy = centers_y[y0:y1 + 1] - lat
        d2 = dy[:, np.newaxis] ** 2 + dx[np.newaxis, :] ** 2
        falloff = np.where(d2 <= r2, np.exp(-d2 / sigma2), 0.0)
        values[y0:y1 + 1, x0:x1 + 1] += falloff * intensity

    peak = values.max()
    if peak <= 0:
        return HeatGrid(np.zeros_like(values), extent, threshold)
    return HeatGrid(values / peak, extent, threshold)


def heatmap_layer(
    request: HeatmapRequest,
    store: spatial_store.FeatureStoreProtocol,
    settings: config.Settings,
) -> HeatGrid:
    """Fetch a layer's point features and build their heat grid.

    Raises:
        InvalidHeatmapRequestError: If the layer id is missing.
    """
    if not request.layer_id:
        raise InvalidHeatmapRequestError("Layer ID is required")
    if request.bbox is not None:
        features = store.in_bbox(request.layer_id, request.bbox)
    else:
        features = store.for_layer(
            request.layer_id,
            limit=settings.cluster_feature_limit,
        )
    points = [(m.lng, m.lat) for m in clustering.point_members(features)]
    return compute_heat_grid(
        points,
        bbox=request.bbox,
        grid_size=request.grid_size,
        radius=request.radius,
        intensity=request.intensity,
        tile_size=settings.heatmap_tile_size,
        threshold=settings.heatmap_threshold,
    )


def render_heat_png(grid: HeatGrid, colormap: str = "inferno") -> bytes:
    """Render the grid as a colour-mapped PNG, north up.

    Cells at or below the threshold are transparent.

    Raises:
        InvalidHeatmapRequestError: If ``colormap`` is not a rio-tiler
            colormap name.
    """
    try:
        colors = cmap.get(colormap)
    except rio_tiler_errors.InvalidColorMapName as exc:
        raise InvalidHeatmapRequestError(
            f"Unknown colormap: {colormap}"
        ) from exc
    values = np.flipud(grid.values)
    scaled = np.clip(np.round(values * 255), 0, 255).astype("uint8")
    hidden = values <= grid.threshold
    image = rio_tiler_models.ImageData(
        np.ma.MaskedArray(
            scaled[np.newaxis, ...],
            mask=hidden[np.newaxis, ...],
        )
    )
    return image.render(img_format="PNG", colormap=colors)


def _envelope(coords: np.ndarray) -> db_models.BBox:
    minx, miny = coords.min(axis=0)
    maxx, maxy = coords.max(axis=0)
    return float(minx), float(miny), float(maxx), float(maxy)


def _padded(bbox: db_models.BBox) -> db_models.BBox:
    minx, miny, maxx, maxy = bbox
    if maxx - minx <= 0:
        minx, maxx = minx - _DEGENERATE_PAD, maxx + _DEGENERATE_PAD
    if maxy - miny <= 0:
        miny, maxy = miny - _DEGENERATE_PAD, maxy + _DEGENERATE_PAD
    return minx, miny, maxx, maxy
