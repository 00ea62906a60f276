"""Layer listing and extent endpoints.

All bounding boxes are WGS84 degrees as ``{minLng, minLat, maxLng,
maxLat}``.

Example:
    >>> client.get("/api/layers").json()[0]["kind"]
    'POINT'
    >>> client.get(f"/api/layers/{layer_id}/bbox").json()
    {'bbox': {'minLng': 106.6, 'minLat': 10.7, 'maxLng': 106.8, ...}}
"""

from typing import Any

import fastapi

from geoengine.api import deps
from geoengine.db import database
from geoengine.db import models as db_models

router = fastapi.APIRouter(prefix="/api/layers", tags=["layers"])


def bbox_payload(bbox: db_models.BBox | None) -> dict[str, float] | None:
    if bbox is None:
        return None
    return dict(
        zip(("minLng", "minLat", "maxLng", "maxLat"), bbox, strict=True)
    )


def layer_payload(layer: db_models.Layer) -> dict[str, Any]:
    """Convert a Layer to its JSON representation."""
    return {
        "id": layer.id,
        "code": layer.code,
        "name": layer.name,
        "kind": str(layer.kind),
        "srid": layer.srid,
        "style": layer.style,
        "metadata": layer.metadata,
        "bbox": bbox_payload(layer.bbox),
        "createdAt": layer.created_at.isoformat(),
    }


@router.get("")
async def list_layers(
    stores: database.Stores = fastapi.Depends(deps.get_stores),  # noqa: B008
) -> list[dict[str, Any]]:
    """List live layers, newest first."""
    return [layer_payload(layer) for layer in stores.layers.all()]


@router.get("/{layer_id}/bbox")
async def get_layer_bbox(
    layer_id: str,
    stores: database.Stores = fastapi.Depends(deps.get_stores),  # noqa: B008
) -> dict[str, Any]:
    """Get the envelope of a layer's features.

    Args:
        layer_id: Unique identifier for the layer.
        stores: Repository bundle (injected via FastAPI Depends).

    Returns:
        ``{"bbox": {...}}``, or ``{"bbox": None}`` for an empty layer.

    Raises:
        HTTPException: If the layer is not found (404 status code).
    """
    layer = stores.layers.get(layer_id)
    if layer is None:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Layer not found",
        )
    return {"bbox": bbox_payload(layer.bbox)}
