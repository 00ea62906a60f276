"""Clustering and heat-grid endpoints for point layers.

Both endpoints take a layer id and an optional viewport given as all four
of ``minLng``, ``minLat``, ``maxLng`` and ``maxLat``. The computation runs
in a worker thread because it reads from the feature store.

Example:
    >>> client.get(
    ...     "/api/clusters",
    ...     params={"layerId": layer_id, "zoom": 10},
    ... ).json()[0]["pointCount"]
    12
"""

import asyncio
from typing import Any

import fastapi
from fastapi import responses

from geoengine.api import deps
from geoengine.core import config
from geoengine.db import database
from geoengine.services import clustering, heatmap

router = fastapi.APIRouter(prefix="/api", tags=["analytics"])


def _require_layer(layer_id: str | None, stores: database.Stores) -> None:
    if layer_id and stores.layers.get(layer_id) is None:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Layer not found",
        )


@router.get("/clusters")
async def get_clusters(
    layer_id: str | None = fastapi.Query(None, alias="layerId"),
    zoom: int | None = fastapi.Query(None, ge=0, le=30),
    min_lng: float | None = fastapi.Query(None, alias="minLng"),
    min_lat: float | None = fastapi.Query(None, alias="minLat"),
    max_lng: float | None = fastapi.Query(None, alias="maxLng"),
    max_lat: float | None = fastapi.Query(None, alias="maxLat"),
    cell_size: float | None = fastapi.Query(None, alias="cellSize", gt=0),
    settings: config.Settings = fastapi.Depends(deps.get_settings),  # noqa: B008
    stores: database.Stores = fastapi.Depends(deps.get_stores),  # noqa: B008
) -> list[dict[str, Any]]:
    """Cluster a point layer's features for the given zoom and viewport.

    Args:
        layer_id: Layer to cluster (required).
        zoom: Map zoom level; the configured default when omitted.
        min_lng: Western bound of the viewport.
        min_lat: Southern bound of the viewport.
        max_lng: Eastern bound of the viewport.
        max_lat: Northern bound of the viewport.
        cell_size: Explicit cell edge in degrees, overriding ``zoom``.
        settings: Application settings (injected via FastAPI Depends).
        stores: Repository bundle (injected via FastAPI Depends).

    Returns:
        Clusters and singletons; an empty list for an empty viewport.

    Raises:
        HTTPException: 400 for a missing layer id or partial bbox, 404 for
            an unknown layer.
    """
    try:
        request = clustering.ClusterRequest.from_params(
            layer_id,
            zoom=zoom,
            min_lng=min_lng,
            min_lat=min_lat,
            max_lng=max_lng,
            max_lat=max_lat,
            cell_size=cell_size,
        )
        _require_layer(layer_id, stores)
        clusters = await asyncio.to_thread(
            clustering.cluster_layer, request, stores.features, settings
        )
    except clustering.InvalidClusterRequestError as exc:
        raise fastapi.HTTPException(status_code=400, detail=str(exc)) from exc
    return [cluster.to_payload() for cluster in clusters]


async def _heat_grid(
    layer_id: str | None,
    bounds: tuple[float | None, float | None, float | None, float | None],
    grid_size: int | None,
    radius: float | None,
    intensity: float | None,
    settings: config.Settings,
    stores: database.Stores,
) -> heatmap.HeatGrid:
    try:
        request = heatmap.HeatmapRequest.from_params(
            layer_id,
            *bounds,
            grid_size=grid_size or settings.heatmap_grid_size,
            radius=radius or settings.heatmap_radius,
            intensity=intensity or settings.heatmap_intensity,
        )
        _require_layer(layer_id, stores)
        return await asyncio.to_thread(
            heatmap.heatmap_layer, request, stores.features, settings
        )
    except heatmap.InvalidHeatmapRequestError as exc:
        raise fastapi.HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/heatmap")
async def get_heatmap(
    layer_id: str | None = fastapi.Query(None, alias="layerId"),
    min_lng: float | None = fastapi.Query(None, alias="minLng"),
    min_lat: float | None = fastapi.Query(None, alias="minLat"),
    max_lng: float | None = fastapi.Query(None, alias="maxLng"),
    max_lat: float | None = fastapi.Query(None, alias="maxLat"),
    grid_size: int | None = fastapi.Query(
        None, alias="gridSize", ge=1, le=2048
    ),
    radius: float | None = fastapi.Query(None, gt=0),
    intensity: float | None = fastapi.Query(None, gt=0),
    settings: config.Settings = fastapi.Depends(deps.get_settings),  # noqa: B008
    stores: database.Stores = fastapi.Depends(deps.get_stores),  # noqa: B008
) -> list[dict[str, Any]]:
    """Return the significant cells of a layer's heat grid.

    Defaults are grid 256, radius 20 pixels and intensity 1.0 unless
    configured otherwise.

    Raises:
        HTTPException: 400 for a missing layer id or partial bbox, 404 for
            an unknown layer.
    """
    grid = await _heat_grid(
        layer_id,
        (min_lng, min_lat, max_lng, max_lat),
        grid_size,
        radius,
        intensity,
        settings,
        stores,
    )
    return [cell.to_payload() for cell in grid.cells()]


@router.get("/heatmap.png")
async def get_heatmap_png(
    layer_id: str | None = fastapi.Query(None, alias="layerId"),
    min_lng: float | None = fastapi.Query(None, alias="minLng"),
    min_lat: float | None = fastapi.Query(None, alias="minLat"),
    max_lng: float | None = fastapi.Query(None, alias="maxLng"),
    max_lat: float | None = fastapi.Query(None, alias="maxLat"),
    grid_size: int | None = fastapi.Query(
        None, alias="gridSize", ge=1, le=2048
    ),
    radius: float | None = fastapi.Query(None, gt=0),
    intensity: float | None = fastapi.Query(None, gt=0),
    colormap: str = fastapi.Query("inferno"),
    settings: config.Settings = fastapi.Depends(deps.get_settings),  # noqa: B008
    stores: database.Stores = fastapi.Depends(deps.get_stores),  # noqa: B008
) -> responses.Response:
    """Render a layer's heat grid as a PNG overlay, north up."""
    grid = await _heat_grid(
        layer_id,
        (min_lng, min_lat, max_lng, max_lat),
        grid_size,
        radius,
        intensity,
        settings,
        stores,
    )
    try:
        content = heatmap.render_heat_png(grid, colormap=colormap)
    except heatmap.InvalidHeatmapRequestError as exc:
        raise fastapi.HTTPException(status_code=400, detail=str(exc)) from exc
    return responses.Response(content=content, media_type="image/png")
