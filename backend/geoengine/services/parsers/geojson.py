"""GeoJSON decoding.

Accepts a FeatureCollection, a single Feature or a bare geometry object.
Members carrying neither a geometry nor properties are ignored. Members
whose geometry cannot be decoded are rejected (counted, not fatal).
Members with a null geometry but some properties are passed on so that
validation reports them.
"""

from __future__ import annotations

import json
from typing import Any

import shapely.errors
from loguru import logger
from shapely import geometry as shapely_geometry

from geoengine.services import crs
from geoengine.services.parsers import records

_GEOMETRY_TYPES = frozenset({
    "Point",
    "MultiPoint",
    "LineString",
    "MultiLineString",
    "Polygon",
    "MultiPolygon",
    "GeometryCollection",
})


def parse_geojson(
    data: bytes | str,
    source_crs: int | None = None,
) -> records.ParseResult:
    """Decode a GeoJSON document.

    Args:
        data: Raw document.
        source_crs: EPSG code overriding any ``crs`` member (used for
            shapefiles whose PRJ sidecar is authoritative).

    Returns:
        Parsed records in document order.

    Raises:
        ParseError: If the document is not JSON or not GeoJSON.
    """
    try:
        document = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise records.ParseError(f"Invalid GeoJSON: {exc}") from exc
    if not isinstance(document, dict):
        raise records.ParseError("Invalid GeoJSON: root must be an object")

    members = _members(document)
    srid = source_crs if source_crs is not None else _declared_crs(document)
    result = records.ParseResult(source_crs=srid)

    for index, member in enumerate(members, start=1):
        if not isinstance(member, dict):
            logger.warning("Feature {}: not a JSON object", index)
            result.rejected += 1
            continue
        raw_geometry = member.get("geometry")
        properties = member.get("properties") or {}
        if not raw_geometry and not properties:
            logger.debug("Feature {}: empty member ignored", index)
            continue
        if not isinstance(properties, dict):
            properties = {"value": properties}

        geom = None
        if raw_geometry:
            try:
                geom = shapely_geometry.shape(raw_geometry)
            except (
                shapely.errors.ShapelyError,
                AttributeError,
                IndexError,
                KeyError,
                TypeError,
                ValueError,
            ) as exc:
                logger.warning("Feature {}: bad geometry: {}", index, exc)
                result.rejected += 1
                continue

        result.features.append(
            records.ParsedFeature(
                geometry=geom,
                properties=properties,
                source_crs=srid,
                index=index,
            )
        )
    return result


def _members(document: dict[str, Any]) -> list[Any]:
    kind = document.get("type")
    if kind == "FeatureCollection":
        features = document.get("features")
        if features is None:
            return []
        if not isinstance(features, list):
            raise records.ParseError(
                "Invalid GeoJSON: 'features' must be an array"
            )
        return features
    if kind == "Feature":
        return [document]
    if kind in _GEOMETRY_TYPES:
        return [{"type": "Feature", "geometry": document, "properties": {}}]
    raise records.ParseError(f"Unsupported GeoJSON type: {kind}")


def _declared_crs(document: dict[str, Any]) -> int | None:
    """Read the legacy ``crs`` member, e.g. ``urn:ogc:def:crs:EPSG::3857``."""
    member = document.get("crs")
    if not isinstance(member, dict):
        return None
    properties = member.get("properties") or {}
    name = properties.get("name") if isinstance(properties, dict) else None
    if not isinstance(name, str):
        return None
    return crs.detect_source_crs(name)
