"""Data models for layers, features, uploads, devices and geofences.

This module defines the core data structures shared by the ingestion
pipeline, the clustering and heat-grid engines and the device tracker.
Geometries are shapely geometries in WGS84 (EPSG:4326) with coordinates
in (longitude, latitude) order.

The geometry variant of a record is carried explicitly as a
``GeometryKind`` discriminant, computed once when the record is built,
so that consumers such as the clustering engine select point features by
kind instead of inspecting geometry classes.

Example:
    Creating a point feature for a layer:
        >>> from shapely import geometry
        >>> from geoengine.db import models
        >>> point = geometry.Point(106.0, 10.0)
        >>> feature = models.Feature.create(
        ...     layer_id="layer-1",
        ...     geometry=point,
        ...     properties={"name": "Depot"},
        ... )
        >>> feature.kind
        <GeometryKind.POINT: 'POINT'>
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import uuid
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from shapely import geometry as shapely_geometry
    from shapely.geometry import base as shapely_base

BBox = tuple[float, float, float, float]

WGS84_SRID = 4326


def utcnow() -> datetime.datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.datetime.now(datetime.UTC)


def new_id() -> str:
    """Return a fresh random identifier."""
    return str(uuid.uuid4())


class InvalidGeometryError(ValueError):
    """Raised when a geometry cannot be mapped to a supported kind."""


class GeometryKind(enum.StrEnum):
    """Discriminant for the three geometry variants a Layer may hold."""

    POINT = "POINT"
    LINE = "LINE"
    POLYGON = "POLYGON"

    @classmethod
    def from_geometry(
        cls,
        geom: shapely_base.BaseGeometry,
    ) -> GeometryKind:
        """Map a shapely geometry type to its kind.

        Args:
            geom: Any shapely geometry.

        Returns:
            The matching GeometryKind.

        Raises:
            InvalidGeometryError: For collections or unknown types.
        """
        try:
            return _KIND_BY_TYPE[geom.geom_type]
        except KeyError:
            raise InvalidGeometryError(
                f"Unsupported geometry type: {geom.geom_type}"
            ) from None


_KIND_BY_TYPE = {
    "Point": GeometryKind.POINT,
    "MultiPoint": GeometryKind.POINT,
    "LineString": GeometryKind.LINE,
    "LinearRing": GeometryKind.LINE,
    "MultiLineString": GeometryKind.LINE,
    "Polygon": GeometryKind.POLYGON,
    "MultiPolygon": GeometryKind.POLYGON,
}


class UploadStatus(enum.StrEnum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


_ALLOWED_TRANSITIONS: dict[UploadStatus, frozenset[UploadStatus]] = {
    UploadStatus.UPLOADED: frozenset(
        {UploadStatus.PROCESSING, UploadStatus.FAILED}
    ),
    UploadStatus.PROCESSING: frozenset(
        {UploadStatus.PROCESSED, UploadStatus.FAILED}
    ),
    UploadStatus.PROCESSED: frozenset(),
    UploadStatus.FAILED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when an upload is moved along an edge the state machine lacks."""


@dataclasses.dataclass
class Layer:
    """A named, typed collection of features stored in WGS84.

    Attributes:
        id: Unique identifier for the layer.
        code: Unique machine-friendly code (lower-case, underscores).
        name: Human-readable layer name.
        kind: Geometry kind every feature of the layer must share.
        srid: Always 4326 once the layer is populated by ingestion.
        style: Opaque style blob for map clients.
        metadata: Opaque metadata blob.
        bbox: Envelope of the layer's features as (minx, miny, maxx, maxy).
        created_at: Timestamp when the layer was registered.
        deleted_at: Tombstone timestamp, None while the layer is live.
    """

    id: str
    code: str
    name: str
    kind: GeometryKind
    srid: int = WGS84_SRID
    style: dict[str, Any] = dataclasses.field(default_factory=dict)
    metadata: dict[str, Any] = dataclasses.field(default_factory=dict)
    bbox: BBox | None = None
    created_at: datetime.datetime = dataclasses.field(default_factory=utcnow)
    deleted_at: datetime.datetime | None = None

    def extend_bbox(self, other: BBox | None) -> None:
        """Grow the layer envelope so that it also covers ``other``."""
        if other is None:
            return
        if self.bbox is None:
            self.bbox = other
            return
        self.bbox = merge_bboxes(self.bbox, other)


@dataclasses.dataclass
class Feature:
    """A single geometry plus attributes belonging to exactly one layer."""

    id: str
    layer_id: str
    geometry: shapely_base.BaseGeometry
    kind: GeometryKind
    properties: dict[str, Any] = dataclasses.field(default_factory=dict)
    created_at: datetime.datetime = dataclasses.field(default_factory=utcnow)
    deleted_at: datetime.datetime | None = None

    @classmethod
    def create(
        cls,
        layer_id: str,
        geometry: shapely_base.BaseGeometry,
        properties: dict[str, Any] | None = None,
    ) -> Feature:
        return cls(
            id=new_id(),
            layer_id=layer_id,
            geometry=geometry,
            kind=GeometryKind.from_geometry(geometry),
            properties=dict(properties or {}),
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclasses.dataclass
class UploadStats:
    """Outcome counters recorded on a processed upload."""

    total_features: int = 0
    success_count: int = 0
    failed_count: int = 0
    bbox: BBox | None = None

    def as_payload(self) -> dict[str, Any]:
        """Return the JSON shape stored on the upload record."""
        bbox = None
        if self.bbox is not None:
            bbox = dict(
                zip(("minLng", "minLat", "maxLng", "maxLat"), self.bbox,
                    strict=True)
            )
        return {
            "totalFeatures": self.total_features,
            "successCount": self.success_count,
            "failedCount": self.failed_count,
            "bbox": bbox,
        }


@dataclasses.dataclass
class Upload:
    """An uploaded file and the progress of its ingestion.

    The status moves ``UPLOADED -> PROCESSING -> {PROCESSED | FAILED}``;
    an upload cancelled before it starts may go straight to ``FAILED``.
    Terminal states never change again.
    """

    id: str
    file_key: str
    file_name: str
    file_size: int
    layer_id: str | None = None
    lat_column: str | None = None
    lng_column: str | None = None
    status: UploadStatus = UploadStatus.UPLOADED
    message: str | None = None
    stats: dict[str, Any] = dataclasses.field(default_factory=dict)
    created_at: datetime.datetime = dataclasses.field(default_factory=utcnow)
    updated_at: datetime.datetime = dataclasses.field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return not _ALLOWED_TRANSITIONS[self.status]

    def transition(
        self,
        status: UploadStatus,
        message: str | None = None,
    ) -> None:
        """Move the upload to ``status``.

        Args:
            status: Target state.
            message: Optional human-readable outcome message.

        Raises:
            InvalidTransitionError: If the state machine has no such edge.
        """
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Upload {self.id} cannot move from {self.status} to {status}"
            )
        self.status = status
        if message is not None:
            self.message = message
        self.updated_at = utcnow()

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "layerId": self.layer_id,
            "status": str(self.status),
            "message": self.message,
            "stats": self.stats,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclasses.dataclass
class Device:
    """A tracked entity and its single most recent position."""

    id: str
    code: str
    name: str
    last_position: shapely_geometry.Point | None = None
    updated_at: datetime.datetime | None = None
    created_at: datetime.datetime = dataclasses.field(default_factory=utcnow)
    deleted_at: datetime.datetime | None = None


@dataclasses.dataclass
class Geofence:
    """A named polygon used to detect device containment transitions."""

    id: str
    name: str
    geometry: shapely_base.BaseGeometry
    active: bool = True
    description: str | None = None
    created_at: datetime.datetime = dataclasses.field(default_factory=utcnow)
    deleted_at: datetime.datetime | None = None

    def __post_init__(self) -> None:
        kind = GeometryKind.from_geometry(self.geometry)
        if kind is not GeometryKind.POLYGON:
            raise InvalidGeometryError("Geofence geometry must be a polygon")

    @property
    def is_live(self) -> bool:
        return self.active and self.deleted_at is None


def merge_bboxes(first: BBox, second: BBox) -> BBox:
    """Return the envelope covering both boxes."""
    return (
        min(first[0], second[0]),
        min(first[1], second[1]),
        max(first[2], second[2]),
        max(first[3], second[3]),
    )
