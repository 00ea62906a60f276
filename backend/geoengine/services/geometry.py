"""Geometry validation, repair and bounds checks.

``normalize`` is idempotent: repair (zero-width buffer, polygons only),
precision reduction to a fixed grid, removal of repeated vertices and
finally shapely's canonical ordering, so that a second pass finds nothing
left to change.

Example:
    Repairing a self-intersecting ring:
        >>> from shapely import geometry as shapely_geometry
        >>> from geoengine.services import geometry
        >>> bowtie = shapely_geometry.Polygon(
        ...     [(0, 0), (1, 1), (1, 0), (0, 1), (0, 0)]
        ... )
        >>> geometry.validate(bowtie).valid
        False
        >>> geometry.validate(geometry.normalize(bowtie)).valid
        True
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, NamedTuple

import shapely

from geoengine.db import models as db_models

if TYPE_CHECKING:
    from shapely.geometry import base as shapely_base

DEFAULT_GRID_SIZE = 1e-9

WGS84_BOUNDS: db_models.BBox = (-180.0, -90.0, 180.0, 90.0)

_VALID_REASON = "Valid Geometry"


class ValidationResult(NamedTuple):
    valid: bool
    reason: str


def validate(geom: shapely_base.BaseGeometry | None) -> ValidationResult:
    """Apply the OGC validity predicate without touching ``geom``.

    Args:
        geom: Geometry to check; ``None`` is reported as invalid.

    Returns:
        ``(valid, reason)`` where ``reason`` is GEOS's explanation.
    """
    if geom is None:
        return ValidationResult(False, "Geometry is null")
    if geom.is_empty:
        return ValidationResult(False, "Geometry is empty")
    reason = shapely.is_valid_reason(geom)
    if reason == _VALID_REASON:
        return ValidationResult(True, reason)
    return ValidationResult(False, str(reason))


def normalize(
    geom: shapely_base.BaseGeometry,
    grid_size: float = DEFAULT_GRID_SIZE,
) -> shapely_base.BaseGeometry:
    """Repair and canonicalise a geometry.

    The result may still be invalid (for example a line collapsing onto a
    single point); callers re-run ``validate`` and decide what to do.

    Args:
        geom: Geometry to normalise.
        grid_size: Precision grid in coordinate units.

    Returns:
        A new geometry; the input is never mutated.
    """
    if geom.is_empty:
        return geom
    repaired = geom
    if _is_polygonal(geom) and not shapely.is_valid(geom):
        repaired = geom.buffer(0)
    reduced = shapely.set_precision(repaired, grid_size)
    deduplicated = shapely.remove_repeated_points(reduced)
    return shapely.normalize(deduplicated)


def is_within_bounds(
    geom: shapely_base.BaseGeometry,
    bounds: db_models.BBox = WGS84_BOUNDS,
) -> bool:
    """Return whether the envelope of ``geom`` lies inside ``bounds``."""
    if geom.is_empty:
        return False
    minx, miny, maxx, maxy = geom.bounds
    if not all(math.isfinite(v) for v in (minx, miny, maxx, maxy)):
        return False
    return (
        minx >= bounds[0]
        and miny >= bounds[1]
        and maxx <= bounds[2]
        and maxy <= bounds[3]
    )


def _is_polygonal(geom: shapely_base.BaseGeometry) -> bool:
    try:
        kind = db_models.GeometryKind.from_geometry(geom)
    except db_models.InvalidGeometryError:
        return False
    return kind is db_models.GeometryKind.POLYGON


class InvalidBBoxError(ValueError):
    """Raised when request bounds are partial or inverted."""


def bbox_from_bounds(
    min_lng: float | None,
    min_lat: float | None,
    max_lng: float | None,
    max_lat: float | None,
) -> db_models.BBox | None:
    """Build a bbox from optional request bounds: all four or none.

    Raises:
        InvalidBBoxError: If only some bounds are given, or min > max.
    """
    values = (min_lng, min_lat, max_lng, max_lat)
    if all(v is None for v in values):
        return None
    if any(v is None for v in values):
        raise InvalidBBoxError(
            "Bounding box requires minLng, minLat, maxLng and maxLat together"
        )
    bbox = tuple(float(v) for v in values)  # type: ignore[arg-type]
    if bbox[0] > bbox[2] or bbox[1] > bbox[3]:
        raise InvalidBBoxError("Bounding box minimum exceeds maximum")
    return bbox  # type: ignore[return-value]
