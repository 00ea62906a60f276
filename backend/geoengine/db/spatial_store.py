"""Feature, device and geofence stores.

The PostGIS implementations push spatial predicates down to the database:
bbox reads use ``ST_MakeEnvelope`` with the ``&&`` operator, polygon reads
``ST_Intersects``/``ST_Within``, radius and k-nearest reads the geography
type. The in-memory implementations evaluate the same predicates with
shapely and ``pyproj.Geod`` so that tests and local development behave
like production.

Geometries travel to and from PostGIS as WKT through
``ST_GeomFromText(wkt, 4326)`` and ``ST_AsText``.
"""

from __future__ import annotations

import datetime
import threading
from typing import TYPE_CHECKING, Any, Protocol, cast

import psycopg2.extras
import pyproj
import shapely
from shapely import geometry as shapely_geometry
from shapely import ops as shapely_ops

from geoengine.db import base
from geoengine.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from shapely.geometry import base as shapely_base


class FeatureStoreProtocol(Protocol):
    """Protocol interface for the spatial feature store."""

    def add_batch(self, features: Sequence[db_models.Feature]) -> int: ...

    def in_bbox(
        self,
        layer_id: str,
        bbox: db_models.BBox,
    ) -> list[db_models.Feature]: ...

    def for_layer(
        self,
        layer_id: str,
        limit: int | None = None,
    ) -> list[db_models.Feature]: ...

    def intersecting(
        self,
        layer_id: str,
        geom: shapely_base.BaseGeometry,
    ) -> list[db_models.Feature]: ...

    def within(
        self,
        layer_id: str,
        geom: shapely_base.BaseGeometry,
    ) -> list[db_models.Feature]: ...

    def within_distance(
        self,
        layer_id: str,
        point: shapely_geometry.Point,
        meters: float,
    ) -> list[db_models.Feature]: ...

    def nearest(
        self,
        layer_id: str,
        point: shapely_geometry.Point,
        k: int,
    ) -> list[db_models.Feature]: ...

    def delete(self, feature_id: str) -> bool: ...


class DeviceRepositoryProtocol(Protocol):
    """Protocol interface for tracked devices."""

    def add(self, device: db_models.Device) -> db_models.Device: ...

    def get_by_code(self, code: str) -> db_models.Device | None: ...

    def save_position(self, device: db_models.Device) -> db_models.Device: ...


class GeofenceRepositoryProtocol(Protocol):
    """Protocol interface for geofences."""

    def add(self, geofence: db_models.Geofence) -> db_models.Geofence: ...

    def active(self) -> list[db_models.Geofence]: ...

    def delete(self, geofence_id: str) -> bool: ...


_GEOD = pyproj.Geod(ellps="WGS84")


def _bbox_polygon(bbox: db_models.BBox) -> shapely_geometry.Polygon:
    return shapely_geometry.box(*bbox)


def geodesic_distance_m(
    point: shapely_geometry.Point,
    geom: shapely_base.BaseGeometry,
) -> float:
    """Ellipsoidal distance in metres to the closest part of ``geom``.

    Zero when ``point`` touches or lies inside ``geom``.
    """
    if geom.intersects(point):
        return 0.0
    _, closest = shapely_ops.nearest_points(point, geom)
    _, _, distance = _GEOD.inv(point.x, point.y, closest.x, closest.y)
    return float(distance)


class InMemoryFeatureStore(FeatureStoreProtocol):
    """Feature store kept in a dictionary, insertion ordered."""

    def __init__(self) -> None:
        self._store: dict[str, db_models.Feature] = {}
        self._lock = threading.Lock()

    def add_batch(self, features: Sequence[db_models.Feature]) -> int:
        with self._lock:
            for feature in features:
                self._store[feature.id] = feature
        return len(features)

    def in_bbox(
        self,
        layer_id: str,
        bbox: db_models.BBox,
    ) -> list[db_models.Feature]:
        """Return live features of a layer whose geometry meets ``bbox``."""
        envelope = _bbox_polygon(bbox)
        return [
            feature for feature in self._live(layer_id)
            if feature.geometry.intersects(envelope)
        ]

    def for_layer(
        self,
        layer_id: str,
        limit: int | None = None,
    ) -> list[db_models.Feature]:
        features = list(self._live(layer_id))
        if limit is not None:
            return features[:limit]
        return features

    def intersecting(
        self,
        layer_id: str,
        geom: shapely_base.BaseGeometry,
    ) -> list[db_models.Feature]:
        return [
            feature for feature in self._live(layer_id)
            if feature.geometry.intersects(geom)
        ]

    def within(
        self,
        layer_id: str,
        geom: shapely_base.BaseGeometry,
    ) -> list[db_models.Feature]:
        """Return live features lying entirely inside ``geom``."""
        return [
            feature for feature in self._live(layer_id)
            if feature.geometry.within(geom)
        ]

    def within_distance(
        self,
        layer_id: str,
        point: shapely_geometry.Point,
        meters: float,
    ) -> list[db_models.Feature]:
        """Return live features within ``meters`` of ``point`` on WGS84.

        Distances are geodesic, measured to the closest point of each
        feature, so a long line passing near ``point`` is included.
        """
        return [
            feature for feature in self._live(layer_id)
            if geodesic_distance_m(point, feature.geometry) <= meters
        ]

    def nearest(
        self,
        layer_id: str,
        point: shapely_geometry.Point,
        k: int,
    ) -> list[db_models.Feature]:
        ranked = sorted(
            self._live(layer_id),
            key=lambda feature: geodesic_distance_m(point, feature.geometry),
        )
        return ranked[:k]

    def delete(self, feature_id: str) -> bool:
        with self._lock:
            feature = self._store.get(feature_id)
            if feature is None or feature.is_deleted:
                return False
            feature.deleted_at = db_models.utcnow()
        return True

    def _live(self, layer_id: str) -> Iterable[db_models.Feature]:
        with self._lock:
            snapshot = list(self._store.values())
        return (
            feature for feature in snapshot
            if feature.layer_id == layer_id and not feature.is_deleted
        )


class InMemoryDeviceRepository(DeviceRepositoryProtocol):
    def __init__(self) -> None:
        self._store: dict[str, db_models.Device] = {}
        self._lock = threading.Lock()

    def add(self, device: db_models.Device) -> db_models.Device:
        with self._lock:
            self._store[device.code] = device
        return device

    def get_by_code(self, code: str) -> db_models.Device | None:
        device = self._store.get(code)
        if device is None or device.deleted_at is not None:
            return None
        return device

    def save_position(self, device: db_models.Device) -> db_models.Device:
        return self.add(device)


class InMemoryGeofenceRepository(GeofenceRepositoryProtocol):
    def __init__(self) -> None:
        self._store: dict[str, db_models.Geofence] = {}
        self._lock = threading.Lock()

    def add(self, geofence: db_models.Geofence) -> db_models.Geofence:
        with self._lock:
            self._store[geofence.id] = geofence
        return geofence

    def active(self) -> list[db_models.Geofence]:
        """Return active, non-deleted geofences ordered by name."""
        with self._lock:
            live = [g for g in self._store.values() if g.is_live]
        return sorted(live, key=lambda geofence: geofence.name)

    def delete(self, geofence_id: str) -> bool:
        with self._lock:
            geofence = self._store.get(geofence_id)
            if geofence is None or geofence.deleted_at is not None:
                return False
            geofence.deleted_at = db_models.utcnow()
        return True


class PostgresFeatureStore(base.PostgresRepository, FeatureStoreProtocol):
    """PostGIS-backed feature store."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS features (
      id TEXT PRIMARY KEY,
      layer_id TEXT NOT NULL REFERENCES layers (id),
      geom_kind TEXT NOT NULL,
      geom geometry(Geometry, 4326) NOT NULL,
      properties JSONB NOT NULL DEFAULT '{}'::jsonb,
      created_at TIMESTAMPTZ DEFAULT now(),
      deleted_at TIMESTAMPTZ
    );
    CREATE INDEX IF NOT EXISTS features_geom_idx
      ON features USING GIST (geom);
    CREATE INDEX IF NOT EXISTS features_layer_idx ON features (layer_id);
    """

    _SELECT = (
        "SELECT id, layer_id, geom_kind, ST_AsText(geom) AS wkt, "
        "properties, created_at, deleted_at FROM features"
    )

    def add_batch(self, features: Sequence[db_models.Feature]) -> int:
        """Insert a batch of features in a single transaction.

        Args:
            features: Features to insert.

        Returns:
            Number of rows written.
        """
        rows = [
            (
                feature.id,
                feature.layer_id,
                str(feature.kind),
                feature.geometry.wkt,
                psycopg2.extras.Json(feature.properties),
                feature.created_at,
            )
            for feature in features
        ]
        with self._connection() as conn, conn.cursor() as cur:
            psycopg2.extras.execute_values(
                cur,
                """
                INSERT INTO features (
                    id, layer_id, geom_kind, geom, properties, created_at
                ) VALUES %s
                """,
                rows,
                template="(%s, %s, %s, ST_GeomFromText(%s, 4326), %s, %s)",
            )
            conn.commit()
        return len(rows)

    def in_bbox(
        self,
        layer_id: str,
        bbox: db_models.BBox,
    ) -> list[db_models.Feature]:
        return self._fetch(
            f"{self._SELECT} WHERE layer_id = %s AND deleted_at IS NULL "
            "AND geom && ST_MakeEnvelope(%s, %s, %s, %s, 4326) "
            "ORDER BY created_at, id",
            (layer_id, *bbox),
        )

    def for_layer(
        self,
        layer_id: str,
        limit: int | None = None,
    ) -> list[db_models.Feature]:
        return self._fetch(
            f"{self._SELECT} WHERE layer_id = %s AND deleted_at IS NULL "
            "ORDER BY created_at, id LIMIT %s",
            (layer_id, limit),
        )

    def intersecting(
        self,
        layer_id: str,
        geom: shapely_base.BaseGeometry,
    ) -> list[db_models.Feature]:
        return self._fetch(
            f"{self._SELECT} WHERE layer_id = %s AND deleted_at IS NULL "
            "AND ST_Intersects(geom, ST_GeomFromText(%s, 4326)) "
            "ORDER BY created_at, id",
            (layer_id, geom.wkt),
        )

    def within(
        self,
        layer_id: str,
        geom: shapely_base.BaseGeometry,
    ) -> list[db_models.Feature]:
        return self._fetch(
            f"{self._SELECT} WHERE layer_id = %s AND deleted_at IS NULL "
            "AND ST_Within(geom, ST_GeomFromText(%s, 4326)) "
            "ORDER BY created_at, id",
            (layer_id, geom.wkt),
        )

    def within_distance(
        self,
        layer_id: str,
        point: shapely_geometry.Point,
        meters: float,
    ) -> list[db_models.Feature]:
        """Radius filter on the geography type, so ``meters`` is metres."""
        return self._fetch(
            f"{self._SELECT} WHERE layer_id = %s AND deleted_at IS NULL "
            "AND ST_DWithin(geom::geography, "
            "ST_GeomFromText(%s, 4326)::geography, %s) "
            "ORDER BY created_at, id",
            (layer_id, point.wkt, meters),
        )

    def nearest(
        self,
        layer_id: str,
        point: shapely_geometry.Point,
        k: int,
    ) -> list[db_models.Feature]:
        """K-nearest features by the indexed ``<->`` distance operator."""
        return self._fetch(
            f"{self._SELECT} WHERE layer_id = %s AND deleted_at IS NULL "
            "ORDER BY geom::geography <-> "
            "ST_GeomFromText(%s, 4326)::geography LIMIT %s",
            (layer_id, point.wkt, k),
        )

    def delete(self, feature_id: str) -> bool:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE features SET deleted_at = now() "
                "WHERE id = %s AND deleted_at IS NULL",
                (feature_id,),
            )
            conn.commit()
            return bool(cur.rowcount)

    def _fetch(
        self,
        sql: str,
        params: tuple[object, ...],
    ) -> list[db_models.Feature]:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute(sql, params)
            return [
                self._from_row(cast(dict[str, object], row))
                for row in cur.fetchall()
            ]

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.Feature:
        return db_models.Feature(
            id=str(row["id"]),
            layer_id=str(row["layer_id"]),
            geometry=shapely.from_wkt(str(row["wkt"])),
            kind=db_models.GeometryKind(str(row["geom_kind"])),
            properties=cast(dict[str, Any], row.get("properties") or {}),
            created_at=cast(datetime.datetime, row["created_at"]),
            deleted_at=base.cast_optional(
                row.get("deleted_at"), datetime.datetime
            ),
        )


class PostgresDeviceRepository(
    base.PostgresRepository,
    DeviceRepositoryProtocol,
):
    """PostGIS-backed devices with their last known position."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS devices (
      id TEXT PRIMARY KEY,
      code TEXT UNIQUE NOT NULL,
      name TEXT NOT NULL,
      last_position geometry(Point, 4326),
      updated_at TIMESTAMPTZ,
      created_at TIMESTAMPTZ DEFAULT now(),
      deleted_at TIMESTAMPTZ
    );
    """

    def add(self, device: db_models.Device) -> db_models.Device:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO devices (
                    id, code, name, last_position, updated_at, created_at
                ) VALUES (%s, %s, %s, ST_GeomFromText(%s, 4326), %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    code = EXCLUDED.code,
                    name = EXCLUDED.name;
                """,
                (
                    device.id,
                    device.code,
                    device.name,
                    _wkt_or_none(device.last_position),
                    device.updated_at,
                    device.created_at,
                ),
            )
            conn.commit()
        return device

    def get_by_code(self, code: str) -> db_models.Device | None:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute(
                "SELECT id, code, name, ST_AsText(last_position) AS wkt, "
                "updated_at, created_at, deleted_at FROM devices "
                "WHERE code = %s AND deleted_at IS NULL",
                (code,),
            )
            row = cur.fetchone()
            if row is None:
                return None
            return self._from_row(cast(dict[str, object], row))

    def save_position(self, device: db_models.Device) -> db_models.Device:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE devices SET "
                "last_position = ST_GeomFromText(%s, 4326), updated_at = %s "
                "WHERE id = %s",
                (
                    _wkt_or_none(device.last_position),
                    device.updated_at,
                    device.id,
                ),
            )
            conn.commit()
        return device

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.Device:
        wkt = base.cast_optional(row.get("wkt"), str)
        return db_models.Device(
            id=str(row["id"]),
            code=str(row["code"]),
            name=str(row["name"]),
            last_position=(
                cast(shapely_geometry.Point, shapely.from_wkt(wkt))
                if wkt else None
            ),
            updated_at=base.cast_optional(
                row.get("updated_at"), datetime.datetime
            ),
            created_at=cast(datetime.datetime, row["created_at"]),
            deleted_at=base.cast_optional(
                row.get("deleted_at"), datetime.datetime
            ),
        )


class PostgresGeofenceRepository(
    base.PostgresRepository,
    GeofenceRepositoryProtocol,
):
    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS geofences (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      description TEXT,
      geom geometry(Geometry, 4326) NOT NULL,
      active BOOLEAN NOT NULL DEFAULT TRUE,
      created_at TIMESTAMPTZ DEFAULT now(),
      deleted_at TIMESTAMPTZ
    );
    """

    def add(self, geofence: db_models.Geofence) -> db_models.Geofence:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO geofences (
                    id, name, description, geom, active, created_at
                ) VALUES (%s, %s, %s, ST_GeomFromText(%s, 4326), %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    geom = EXCLUDED.geom,
                    active = EXCLUDED.active;
                """,
                (
                    geofence.id,
                    geofence.name,
                    geofence.description,
                    geofence.geometry.wkt,
                    geofence.active,
                    geofence.created_at,
                ),
            )
            conn.commit()
        return geofence

    def active(self) -> list[db_models.Geofence]:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute(
                "SELECT id, name, description, ST_AsText(geom) AS wkt, "
                "active, created_at FROM geofences "
                "WHERE active AND deleted_at IS NULL ORDER BY name"
            )
            return [
                db_models.Geofence(
                    id=str(row["id"]),
                    name=str(row["name"]),
                    description=row.get("description"),
                    geometry=shapely.from_wkt(str(row["wkt"])),
                    active=bool(row["active"]),
                    created_at=row["created_at"],
                )
                for row in cur.fetchall()
            ]

    def delete(self, geofence_id: str) -> bool:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE geofences SET deleted_at = now() "
                "WHERE id = %s AND deleted_at IS NULL",
                (geofence_id,),
            )
            conn.commit()
            return bool(cur.rowcount)


def _wkt_or_none(geom: shapely_geometry.Point | None) -> str | None:
    if geom is None:
        return None
    return geom.wkt
