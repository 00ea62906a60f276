"""Database helpers and repositories for layers and uploads.

Each repository is described by a Protocol with two implementations: an
in-memory one for tests and local development, and a PostgreSQL/PostGIS
one for production. Connections are opened per operation; schema
creation is explicit (``ensure_schema``) so that building a repository
never touches the network.

The ``Stores`` bundle groups every repository the engine needs, including
the spatial ones from ``geoengine.db.spatial_store``.
"""

from __future__ import annotations

import dataclasses
import datetime
import threading
from typing import TYPE_CHECKING, Any, Protocol, cast

import psycopg2.extras

from geoengine.db import base
from geoengine.db import models as db_models
from geoengine.db import spatial_store

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from geoengine.core import config


class LayerRepositoryProtocol(Protocol):
    """Protocol interface for storing and retrieving layers."""

    def add(self, layer: db_models.Layer) -> db_models.Layer: ...

    def get(self, layer_id: str) -> db_models.Layer | None: ...

    def get_by_code(self, code: str) -> db_models.Layer | None: ...

    def all(self) -> Iterable[db_models.Layer]: ...


class UploadRepositoryProtocol(Protocol):
    """Protocol interface for upload records and their state machine."""

    def add(self, upload: db_models.Upload) -> db_models.Upload: ...

    def get(self, upload_id: str) -> db_models.Upload | None: ...

    def save(self, upload: db_models.Upload) -> db_models.Upload: ...


class InMemoryLayerRepository(LayerRepositoryProtocol):
    """Simple in-memory store for tests and local development.

    Stores layers in a dictionary. Data is lost when the process exits.
    """

    def __init__(self) -> None:
        self._store: dict[str, db_models.Layer] = {}
        self._lock = threading.Lock()

    def add(self, layer: db_models.Layer) -> db_models.Layer:
        """Add or update a layer in the repository.

        Args:
            layer: Layer to store.

        Returns:
            The stored layer.
        """
        with self._lock:
            self._store[layer.id] = layer
        return layer

    def get(self, layer_id: str) -> db_models.Layer | None:
        layer = self._store.get(layer_id)
        if layer is None or layer.deleted_at is not None:
            return None
        return layer

    def get_by_code(self, code: str) -> db_models.Layer | None:
        for layer in self.all():
            if layer.code == code:
                return layer
        return None

    def all(self) -> Iterable[db_models.Layer]:
        """Get all live layers, newest first."""
        layers = [
            layer for layer in self._store.values()
            if layer.deleted_at is None
        ]
        return sorted(layers, key=lambda layer: layer.created_at, reverse=True)


class InMemoryUploadRepository(UploadRepositoryProtocol):
    """Dictionary-backed upload records."""

    def __init__(self) -> None:
        self._store: dict[str, db_models.Upload] = {}
        self._lock = threading.Lock()

    def add(self, upload: db_models.Upload) -> db_models.Upload:
        with self._lock:
            self._store[upload.id] = upload
        return upload

    def get(self, upload_id: str) -> db_models.Upload | None:
        return self._store.get(upload_id)

    def save(self, upload: db_models.Upload) -> db_models.Upload:
        return self.add(upload)


class PostgresLayerRepository(
    base.PostgresRepository,
    LayerRepositoryProtocol,
):
    """PostgreSQL-backed repository for layers."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS layers (
      id TEXT PRIMARY KEY,
      code TEXT UNIQUE NOT NULL,
      name TEXT NOT NULL,
      geom_type TEXT NOT NULL,
      srid INTEGER NOT NULL DEFAULT 4326,
      style JSONB NOT NULL DEFAULT '{}'::jsonb,
      metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
      bbox_minx DOUBLE PRECISION,
      bbox_miny DOUBLE PRECISION,
      bbox_maxx DOUBLE PRECISION,
      bbox_maxy DOUBLE PRECISION,
      created_at TIMESTAMPTZ DEFAULT now(),
      deleted_at TIMESTAMPTZ
    );
    """

    def add(self, layer: db_models.Layer) -> db_models.Layer:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO layers (
                    id, code, name, geom_type, srid, style, metadata,
                    bbox_minx, bbox_miny, bbox_maxx, bbox_maxy,
                    created_at, deleted_at
                ) VALUES (%(id)s, %(code)s, %(name)s, %(geom_type)s,
                    %(srid)s, %(style)s, %(metadata)s, %(bbox_minx)s,
                    %(bbox_miny)s, %(bbox_maxx)s, %(bbox_maxy)s,
                    %(created_at)s, %(deleted_at)s)
                ON CONFLICT (id) DO UPDATE SET
                    code = EXCLUDED.code,
                    name = EXCLUDED.name,
                    geom_type = EXCLUDED.geom_type,
                    srid = EXCLUDED.srid,
                    style = EXCLUDED.style,
                    metadata = EXCLUDED.metadata,
                    bbox_minx = EXCLUDED.bbox_minx,
                    bbox_miny = EXCLUDED.bbox_miny,
                    bbox_maxx = EXCLUDED.bbox_maxx,
                    bbox_maxy = EXCLUDED.bbox_maxy,
                    deleted_at = EXCLUDED.deleted_at;
                """,
                self._to_row(layer),
            )
            conn.commit()
        return layer

    def get(self, layer_id: str) -> db_models.Layer | None:
        return self._fetch_one(
            "SELECT * FROM layers WHERE id = %s AND deleted_at IS NULL",
            layer_id,
        )

    def get_by_code(self, code: str) -> db_models.Layer | None:
        return self._fetch_one(
            "SELECT * FROM layers WHERE code = %s AND deleted_at IS NULL",
            code,
        )

    def all(self) -> Iterator[db_models.Layer]:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute(
                "SELECT * FROM layers WHERE deleted_at IS NULL "
                "ORDER BY created_at DESC"
            )
            for row in cur.fetchall():
                yield self._from_row(cast(dict[str, object], row))

    def _fetch_one(self, sql: str, value: str) -> db_models.Layer | None:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute(sql, (value,))
            row = cur.fetchone()
            if row is None:
                return None
            return self._from_row(cast(dict[str, object], row))

    @staticmethod
    def _to_row(layer: db_models.Layer) -> dict[str, object]:
        """Convert a Layer to a database row dictionary.

        Args:
            layer: Layer to convert.

        Returns:
            Dictionary suitable for parameterized SQL insertion.
        """
        bbox = layer.bbox or (None, None, None, None)
        return {
            "id": layer.id,
            "code": layer.code,
            "name": layer.name,
            "geom_type": str(layer.kind),
            "srid": layer.srid,
            "style": psycopg2.extras.Json(layer.style),
            "metadata": psycopg2.extras.Json(layer.metadata),
            "bbox_minx": bbox[0],
            "bbox_miny": bbox[1],
            "bbox_maxx": bbox[2],
            "bbox_maxy": bbox[3],
            "created_at": layer.created_at,
            "deleted_at": layer.deleted_at,
        }

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.Layer:
        """Convert a database row dictionary to a Layer.

        Args:
            row: Dictionary from database query result.

        Returns:
            Layer with all fields populated.
        """
        bbox = (
            row.get("bbox_minx"),
            row.get("bbox_miny"),
            row.get("bbox_maxx"),
            row.get("bbox_maxy"),
        )
        if any(v is None for v in bbox):
            bbox_tuple = None
        else:
            bbox_tuple = tuple(float(cast(float, v)) for v in bbox)
        created_at = base.cast_optional(
            row.get("created_at"), datetime.datetime
        ) or db_models.utcnow()

        return db_models.Layer(
            id=str(row["id"]),
            code=str(row["code"]),
            name=str(row["name"]),
            kind=db_models.GeometryKind(str(row["geom_type"])),
            srid=int(cast(int, row.get("srid") or db_models.WGS84_SRID)),
            style=cast(dict[str, Any], row.get("style") or {}),
            metadata=cast(dict[str, Any], row.get("metadata") or {}),
            bbox=bbox_tuple,  # type: ignore[arg-type]
            created_at=created_at,
            deleted_at=base.cast_optional(
                row.get("deleted_at"), datetime.datetime
            ),
        )


class PostgresUploadRepository(
    base.PostgresRepository,
    UploadRepositoryProtocol,
):
    """PostgreSQL-backed upload records."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS uploads (
      id TEXT PRIMARY KEY,
      layer_id TEXT REFERENCES layers (id),
      file_key TEXT NOT NULL,
      file_name TEXT NOT NULL,
      file_size BIGINT,
      lat_column TEXT,
      lng_column TEXT,
      status TEXT NOT NULL,
      message TEXT,
      stats JSONB NOT NULL DEFAULT '{}'::jsonb,
      created_at TIMESTAMPTZ DEFAULT now(),
      updated_at TIMESTAMPTZ DEFAULT now()
    );
    """

    def add(self, upload: db_models.Upload) -> db_models.Upload:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO uploads (
                    id, layer_id, file_key, file_name, file_size,
                    lat_column, lng_column, status, message, stats,
                    created_at, updated_at
                ) VALUES (%(id)s, %(layer_id)s, %(file_key)s, %(file_name)s,
                    %(file_size)s, %(lat_column)s, %(lng_column)s,
                    %(status)s, %(message)s, %(stats)s, %(created_at)s,
                    %(updated_at)s)
                ON CONFLICT (id) DO UPDATE SET
                    layer_id = EXCLUDED.layer_id,
                    status = EXCLUDED.status,
                    message = EXCLUDED.message,
                    stats = EXCLUDED.stats,
                    updated_at = EXCLUDED.updated_at;
                """,
                {
                    **dataclasses.asdict(upload),
                    "status": str(upload.status),
                    "stats": psycopg2.extras.Json(upload.stats),
                },
            )
            conn.commit()
        return upload

    def get(self, upload_id: str) -> db_models.Upload | None:
        with self._connection() as conn, self._cursor(conn) as cur:
            cur.execute("SELECT * FROM uploads WHERE id = %s", (upload_id,))
            row = cur.fetchone()
            if row is None:
                return None
            return self._from_row(cast(dict[str, object], row))

    def save(self, upload: db_models.Upload) -> db_models.Upload:
        return self.add(upload)

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.Upload:
        return db_models.Upload(
            id=str(row["id"]),
            layer_id=base.cast_optional(row.get("layer_id"), str),
            file_key=str(row["file_key"]),
            file_name=str(row["file_name"]),
            file_size=int(cast(int, row.get("file_size") or 0)),
            lat_column=base.cast_optional(row.get("lat_column"), str),
            lng_column=base.cast_optional(row.get("lng_column"), str),
            status=db_models.UploadStatus(str(row["status"])),
            message=base.cast_optional(row.get("message"), str),
            stats=cast(dict[str, Any], row.get("stats") or {}),
            created_at=cast(datetime.datetime, row["created_at"]),
            updated_at=cast(datetime.datetime, row["updated_at"]),
        )


@dataclasses.dataclass
class Stores:
    """Every repository the engine talks to, bundled for injection."""

    layers: LayerRepositoryProtocol
    uploads: UploadRepositoryProtocol
    features: spatial_store.FeatureStoreProtocol
    devices: spatial_store.DeviceRepositoryProtocol
    geofences: spatial_store.GeofenceRepositoryProtocol

    def ensure_schema(self) -> None:
        """Create tables for repositories that own a schema, in FK order."""
        for repo in (
            self.layers,
            self.uploads,
            self.features,
            self.devices,
            self.geofences,
        ):
            ensure = getattr(repo, "ensure_schema", None)
            if ensure is not None:
                ensure()


def in_memory_stores() -> Stores:
    """Build a Stores bundle backed entirely by process memory."""
    return Stores(
        layers=InMemoryLayerRepository(),
        uploads=InMemoryUploadRepository(),
        features=spatial_store.InMemoryFeatureStore(),
        devices=spatial_store.InMemoryDeviceRepository(),
        geofences=spatial_store.InMemoryGeofenceRepository(),
    )


def get_stores(settings: config.Settings) -> Stores:
    """Factory function for the production PostgreSQL repositories.

    Args:
        settings: Application settings for database connection.

    Returns:
        Stores bundle of PostgreSQL repositories.
    """
    return Stores(
        layers=PostgresLayerRepository(settings),
        uploads=PostgresUploadRepository(settings),
        features=spatial_store.PostgresFeatureStore(settings),
        devices=spatial_store.PostgresDeviceRepository(settings),
        geofences=spatial_store.PostgresGeofenceRepository(settings),
    )
