"""File upload endpoints feeding the background ingestion pipeline.

Uploading stores the raw bytes in the object store, registers an upload
record in the UPLOADED state and queues it on the worker pool; the
response returns immediately. Clients poll ``GET /api/uploads/{id}`` or
subscribe to ``/topic/uploads.{id}`` for the terminal state.

Example:
    Upload a CSV with explicit coordinate columns:
        >>> response = client.post(
        ...     "/api/uploads",
        ...     files={"file": ("depots.csv", open("depots.csv", "rb"))},
        ...     data={"lat_column": "Lat", "lng_column": "Lon"},
        ... )
        >>> upload_id = response.json()["id"]
        >>> client.get(f"/api/uploads/{upload_id}").json()["status"]
        'PROCESSED'
"""

import pathlib
from typing import Any, BinaryIO

import fastapi

from geoengine.api import deps
from geoengine.core import config
from geoengine.db import database
from geoengine.db import models as db_models
from geoengine.services import object_store, parsers, workers
from geoengine.services.parsers import delimited

router = fastapi.APIRouter(prefix="/api/uploads", tags=["uploads"])

_CHUNK_SIZE = 1024 * 1024


def _read_upload(file: BinaryIO, max_size: int) -> bytes:
    """Read an uploaded file into memory, enforcing the size limit.

    Args:
        file: File object of the multipart upload.
        max_size: Maximum allowed file size in bytes.

    Returns:
        The file contents.

    Raises:
        HTTPException: If the file exceeds the maximum size limit.
    """
    buffer = bytearray()
    for chunk in iter(lambda: file.read(_CHUNK_SIZE), b""):
        if len(buffer) + len(chunk) > max_size:
            raise fastapi.HTTPException(
                status_code=413,
                detail="Upload too large",
            )
        buffer.extend(chunk)
    return bytes(buffer)


def _file_name(file: fastapi.UploadFile) -> str:
    name = pathlib.PurePath(file.filename or "").name
    if not name:
        raise fastapi.HTTPException(
            status_code=400,
            detail="File name is required",
        )
    if not parsers.is_supported(name):
        raise fastapi.HTTPException(
            status_code=400,
            detail=f"Unsupported file format: {name}",
        )
    return name


def _get_upload(
    upload_id: str,
    stores: database.Stores,
) -> db_models.Upload:
    upload = stores.uploads.get(upload_id)
    if upload is None:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Upload not found",
        )
    return upload


@router.post("", status_code=202)
async def create_upload(
    file: fastapi.UploadFile,
    layer_id: str | None = fastapi.Form(None),  # noqa: B008
    lat_column: str | None = fastapi.Form(None),  # noqa: B008
    lng_column: str | None = fastapi.Form(None),  # noqa: B008
    settings: config.Settings = fastapi.Depends(deps.get_settings),  # noqa: B008
    stores: database.Stores = fastapi.Depends(deps.get_stores),  # noqa: B008
    blobs: object_store.ObjectStoreProtocol = fastapi.Depends(  # noqa: B008
        deps.get_object_store
    ),
    pool: workers.IngestionWorkerPool = fastapi.Depends(  # noqa: B008
        deps.get_ingest_pool
    ),
) -> dict[str, Any]:
    """Store an uploaded file and queue it for ingestion.

    Args:
        file: GeoJSON, delimited text or zipped shapefile.
        layer_id: Existing layer to append to; a new layer named after
            the file is created when omitted.
        lat_column: Latitude column for delimited files.
        lng_column: Longitude column for delimited files.
        settings: Application settings (injected via FastAPI Depends).
        stores: Repository bundle (injected via FastAPI Depends).
        blobs: Object store for the raw bytes (injected).
        pool: Ingestion worker pool (injected).

    Returns:
        The upload record in the UPLOADED state.

    Raises:
        HTTPException: 400 for a missing name, unsupported format or empty
            file, 404 for an unknown layer, 413 above the size limit and
            503 when the worker pool is not running.
    """
    file_name = _file_name(file)
    if layer_id and stores.layers.get(layer_id) is None:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Layer not found",
        )
    data = _read_upload(file.file, settings.max_upload_size_bytes)
    if not data:
        raise fastapi.HTTPException(status_code=400, detail="File is empty")

    upload_id = db_models.new_id()
    file_key = f"uploads/{upload_id}/{file_name}"
    blobs.put(file_key, data)
    upload = db_models.Upload(
        id=upload_id,
        file_key=file_key,
        file_name=file_name,
        file_size=len(data),
        layer_id=layer_id or None,
        lat_column=lat_column or None,
        lng_column=lng_column or None,
    )
    stores.uploads.add(upload)

    try:
        await pool.submit(upload.id)
    except RuntimeError as exc:
        raise fastapi.HTTPException(status_code=503, detail=str(exc)) from exc
    return upload.as_payload()


@router.post("/columns")
async def detect_columns(
    file: fastapi.UploadFile,
    settings: config.Settings = fastapi.Depends(deps.get_settings),  # noqa: B008
) -> dict[str, Any]:
    """Preview latitude/longitude detection on a delimited file's header.

    Returns:
        ``{"headers": [...], "latColumn": ..., "lngColumn": ...}``; the
        detected columns are None when detection fails, with the reason
        in ``error``.
    """
    data = _read_upload(file.file, settings.max_upload_size_bytes)
    try:
        headers = delimited.read_header(data)
    except parsers.ParseError as exc:
        raise fastapi.HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        detection = delimited.detect_lat_lng_columns(headers)
    except parsers.ParseError as exc:
        return {
            "headers": headers,
            "latColumn": None,
            "lngColumn": None,
            "error": str(exc),
        }
    return {
        "headers": detection.headers,
        "latColumn": detection.lat_column,
        "lngColumn": detection.lng_column,
        "error": None,
    }


@router.get("/{upload_id}")
async def get_upload(
    upload_id: str,
    stores: database.Stores = fastapi.Depends(deps.get_stores),  # noqa: B008
) -> dict[str, Any]:
    """Return an upload record with its status, message and stats."""
    return _get_upload(upload_id, stores).as_payload()


@router.post("/{upload_id}/cancel")
async def cancel_upload(
    upload_id: str,
    stores: database.Stores = fastapi.Depends(deps.get_stores),  # noqa: B008
    pool: workers.IngestionWorkerPool = fastapi.Depends(  # noqa: B008
        deps.get_ingest_pool
    ),
) -> dict[str, Any]:
    """Request cancellation of a queued or running upload.

    Raises:
        HTTPException: 404 for an unknown upload, 409 if it already
            finished.
    """
    upload = _get_upload(upload_id, stores)
    if upload.is_terminal or not pool.cancel(upload_id):
        raise fastapi.HTTPException(
            status_code=409,
            detail="Upload is not pending",
        )
    return {"id": upload_id, "cancelRequested": True}
