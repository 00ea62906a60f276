"""Vector ingestion pipeline for one upload.

The pipeline reads the raw upload from the object store, decodes it with
the matching parser and pushes every record through the same steps:

    validate -> normalize if invalid -> re-validate -> reproject to WGS84
    -> bounds check -> final normalize -> persist in batches

Records failing any step are counted and logged, never fatal. Systemic
errors (unsupported format, ambiguous columns, missing archive member,
unknown target layer, object store failures) move the upload to FAILED
with the error as its message.

Batches are written through the feature store in fixed-size chunks; a
failing batch is retried and, if it keeps failing, its records are
counted as failed while earlier batches stay committed.

Example:
    Process an upload already registered in the stores:
        >>> from geoengine.core import config
        >>> from geoengine.db import database
        >>> from geoengine.services import ingest_vector, object_store
        >>> settings = config.get_settings()
        >>> stores = database.in_memory_stores()
        >>> blobs = object_store.InMemoryObjectStore()
        >>> pipeline = ingest_vector.IngestionPipeline(
        ...     settings, stores, blobs
        ... )
        >>> upload = pipeline.run(upload_id)
        >>> upload.status, upload.message
        (<UploadStatus.PROCESSED: 'PROCESSED'>,
         'Processed 12 features successfully, 0 failed')
"""

from __future__ import annotations

import itertools
import pathlib
import re
from typing import TYPE_CHECKING

import psycopg2
import shapely.errors
from loguru import logger

from geoengine.db import models as db_models
from geoengine.services import crs, geometry, parsers
from geoengine.services import object_store as blob_store
from geoengine.utils import gdal_helpers

if TYPE_CHECKING:
    import threading
    from collections.abc import Iterator, Sequence

    from shapely.geometry import base as shapely_base

    from geoengine.core import config
    from geoengine.db import database

CANCELLED_MESSAGE = "Processing cancelled"
EMPTY_MESSAGE = "No features found in file"

STORE_ERRORS = (psycopg2.Error, OSError, RuntimeError)


class UploadNotFoundError(LookupError):
    """Raised when the pipeline is asked to run an unknown upload."""


class LayerNotFoundError(LookupError):
    """Raised when an upload targets a layer that does not exist."""


class IngestionCancelledError(Exception):
    """Raised inside the pipeline once cancellation has been requested."""


class RecordRejectedError(ValueError):
    """A single record cannot be ingested; counted as failed."""


def layer_code_for(file_name: str) -> str:
    """Derive a layer code from a file name, e.g. ``My Depots.csv``."""
    stem = pathlib.PurePath(file_name).stem.lower()
    return re.sub(r"[^a-z0-9]+", "_", stem).strip("_") or "layer"


def summary_message(stats: db_models.UploadStats) -> str:
    return (
        f"Processed {stats.success_count} features successfully, "
        f"{stats.failed_count} failed"
    )


class IngestionPipeline:
    """Runs uploads through parse, validation, reprojection and storage.

    A pipeline holds no per-upload state, so one instance can serve many
    uploads concurrently from different threads.
    """

    def __init__(
        self,
        settings: config.Settings,
        stores: database.Stores,
        object_store: blob_store.ObjectStoreProtocol,
    ) -> None:
        self.settings = settings
        self.stores = stores
        self.object_store = object_store

    def run(
        self,
        upload_id: str,
        cancel_event: threading.Event | None = None,
    ) -> db_models.Upload:
        """Process one upload to a terminal state.

        Args:
            upload_id: Identifier of an upload in the UPLOADED state.
            cancel_event: Set by the caller to stop processing early.

        Returns:
            The upload in its terminal state. Uploads already terminal are
            returned unchanged.

        Raises:
            UploadNotFoundError: If no such upload exists.
        """
        upload = self.stores.uploads.get(upload_id)
        if upload is None:
            raise UploadNotFoundError(upload_id)
        if upload.is_terminal:
            return upload
        if cancel_event is not None and cancel_event.is_set():
            return self._finish(
                upload, db_models.UploadStatus.FAILED, CANCELLED_MESSAGE
            )

        upload.transition(db_models.UploadStatus.PROCESSING)
        self.stores.uploads.save(upload)
        logger.info("Processing upload {} ({})", upload.id, upload.file_name)

        try:
            return self._process(upload, cancel_event)
        except IngestionCancelledError:
            logger.warning("Upload {} cancelled", upload.id)
            return self._finish(
                upload, db_models.UploadStatus.FAILED, CANCELLED_MESSAGE
            )
        except (
            parsers.ParseError,
            gdal_helpers.CommandError,
            blob_store.ObjectNotFoundError,
            LayerNotFoundError,
            *STORE_ERRORS,
        ) as exc:
            logger.error("Upload {} failed: {}", upload.id, exc)
            return self._finish(
                upload, db_models.UploadStatus.FAILED, str(exc)
            )

    def _process(
        self,
        upload: db_models.Upload,
        cancel_event: threading.Event | None,
    ) -> db_models.Upload:
        layer = self._target_layer(upload)
        data = self.object_store.get(upload.file_key)
        parsed = parsers.parse_upload(
            upload.file_name,
            data,
            lat_column=upload.lat_column,
            lng_column=upload.lng_column,
            scratch_dir=self.settings.scratch_dir,
        )
        stats = db_models.UploadStats(
            total_features=parsed.total,
            failed_count=parsed.rejected,
        )
        if not parsed.features:
            upload.stats = stats.as_payload()
            return self._finish(
                upload, db_models.UploadStatus.FAILED, EMPTY_MESSAGE
            )

        state = _RunState(layer=layer)
        store_error: Exception | None = None
        prepared = self._prepared(upload, parsed.features, stats, state)
        batch_size = self.settings.ingest_batch_size
        for batch in itertools.batched(prepared, batch_size):
            _check_cancelled(cancel_event)
            error = self._persist(batch)
            if error is None:
                stats.success_count += len(batch)
                for feature in batch:
                    _extend(stats, feature.geometry.bounds)
            else:
                stats.failed_count += len(batch)
                store_error = error

        if state.layer is not None and stats.bbox is not None:
            state.layer.extend_bbox(stats.bbox)
            self.stores.layers.add(state.layer)

        upload.stats = stats.as_payload()
        message = summary_message(stats)
        logger.info("Upload {}: {}", upload.id, message)
        if stats.success_count:
            return self._finish(
                upload, db_models.UploadStatus.PROCESSED, message
            )
        if store_error is not None:
            message = str(store_error)
        return self._finish(upload, db_models.UploadStatus.FAILED, message)

    def _prepared(
        self,
        upload: db_models.Upload,
        records: Sequence[parsers.ParsedFeature],
        stats: db_models.UploadStats,
        state: _RunState,
    ) -> Iterator[db_models.Feature]:
        """Yield storable features, counting rejected records in ``stats``."""
        for record in records:
            try:
                geom = self._prepare_geometry(record)
                kind = db_models.GeometryKind.from_geometry(geom)
                if state.layer is None:
                    state.layer = self._create_layer(upload, kind)
                if kind is not state.layer.kind:
                    raise RecordRejectedError(
                        f"{kind} geometry does not match layer kind "
                        f"{state.layer.kind}"
                    )
            except (
                RecordRejectedError,
                db_models.InvalidGeometryError,
                shapely.errors.ShapelyError,
            ) as exc:
                stats.failed_count += 1
                logger.warning(
                    "Upload {} record {} rejected: {}",
                    upload.id,
                    record.index,
                    exc,
                )
                continue
            yield db_models.Feature.create(
                layer_id=state.layer.id,
                geometry=geom,
                properties=record.properties,
            )

    def _prepare_geometry(
        self,
        record: parsers.ParsedFeature,
    ) -> shapely_base.BaseGeometry:
        grid = self.settings.coordinate_precision
        geom = record.geometry
        check = geometry.validate(geom)
        if not check.valid:
            if geom is None or geom.is_empty:
                raise RecordRejectedError(check.reason)
            geom = geometry.normalize(geom, grid)
            check = geometry.validate(geom)
            if not check.valid:
                raise RecordRejectedError(
                    f"Invalid geometry after repair: {check.reason}"
                )

        try:
            geom = crs.transform(geom, record.source_crs)
        except crs.CRSTransformError as exc:
            raise RecordRejectedError(str(exc)) from exc

        if not geometry.is_within_bounds(geom):
            raise RecordRejectedError("Geometry outside WGS84 bounds")

        geom = geometry.normalize(geom, grid)
        check = geometry.validate(geom)
        if not check.valid:
            raise RecordRejectedError(check.reason)
        return geom

    def _persist(self, batch: Sequence[db_models.Feature]) -> Exception | None:
        """Write a batch, retrying; return the last error if it never lands."""
        attempts = self.settings.ingest_max_retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                self.stores.features.add_batch(batch)
            except STORE_ERRORS as exc:
                last_error = exc
                logger.warning(
                    "Batch of {} features failed (attempt {}/{}): {}",
                    len(batch),
                    attempt,
                    attempts,
                    exc,
                )
                continue
            return None
        return last_error

    def _target_layer(
        self,
        upload: db_models.Upload,
    ) -> db_models.Layer | None:
        if upload.layer_id is None:
            return None
        layer = self.stores.layers.get(upload.layer_id)
        if layer is None:
            raise LayerNotFoundError(f"Layer not found: {upload.layer_id}")
        return layer

    def _create_layer(
        self,
        upload: db_models.Upload,
        kind: db_models.GeometryKind,
    ) -> db_models.Layer:
        base_code = layer_code_for(upload.file_name)
        code = base_code
        suffix = 2
        while self.stores.layers.get_by_code(code) is not None:
            code = f"{base_code}_{suffix}"
            suffix += 1
        layer = db_models.Layer(
            id=db_models.new_id(),
            code=code,
            name=pathlib.PurePath(upload.file_name).stem,
            kind=kind,
            metadata={"source": upload.file_name, "uploadId": upload.id},
        )
        self.stores.layers.add(layer)
        upload.layer_id = layer.id
        logger.info("Created {} layer {} for upload {}", kind, code, upload.id)
        return layer

    def _finish(
        self,
        upload: db_models.Upload,
        status: db_models.UploadStatus,
        message: str,
    ) -> db_models.Upload:
        upload.transition(status, message)
        return self.stores.uploads.save(upload)


class _RunState:
    """Mutable per-run state shared with the record generator."""

    def __init__(self, layer: db_models.Layer | None) -> None:
        self.layer = layer


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise IngestionCancelledError


def _extend(stats: db_models.UploadStats, bounds: db_models.BBox) -> None:
    if stats.bbox is None:
        stats.bbox = tuple(bounds)  # type: ignore[assignment]
    else:
        stats.bbox = db_models.merge_bboxes(stats.bbox, bounds)
