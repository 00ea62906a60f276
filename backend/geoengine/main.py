"""FastAPI application entrypoint and configuration.

This module provides the application factory that wires the stores, the
object store, the ingestion worker pool, the WebSocket hub and the device
tracker onto ``app.state``, sets up CORS, includes the API routers and
exposes a health check endpoint.

Example:
    The application can be run with uvicorn:
        $ uvicorn geoengine.main:app --reload

    Tests build an isolated app on in-memory stores:
        >>> from geoengine.db import database
        >>> from geoengine.services import object_store
        >>> app = create_app(
        ...     stores=database.in_memory_stores(),
        ...     object_store=object_store.InMemoryObjectStore(),
        ... )
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

import fastapi
from fastapi.middleware import cors
from loguru import logger

from geoengine.api import analytics, ingest, layers, tracking
from geoengine.core import config
from geoengine.core import logging as app_logging
from geoengine.db import database
from geoengine.services import (
    ingest_vector,
    messaging,
    tracker,
    workers,
)
from geoengine.services import object_store as blob_store

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from geoengine.db import models as db_models


def create_app(
    settings: config.Settings | None = None,
    stores: database.Stores | None = None,
    object_store: blob_store.ObjectStoreProtocol | None = None,
    publisher: messaging.PublisherProtocol | None = None,
) -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Building the app never touches the database. When ``stores`` is not
    given, PostgreSQL repositories are created and their schema is ensured
    on startup; injected stores are used as they are.

    Args:
        settings: Settings to use; the cached environment settings when
            omitted.
        stores: Repository bundle; PostgreSQL repositories when omitted.
        object_store: Raw upload storage; the filesystem store under
            ``settings.storage_dir`` when omitted.
        publisher: Transport for tracker broadcasts; the app's WebSocket
            hub when omitted.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = settings or config.get_settings()
    managed_stores = stores is None
    if stores is None:
        stores = database.get_stores(settings)
    blobs = object_store or blob_store.LocalObjectStore(settings)

    hub = messaging.WebSocketHub()

    async def publish_upload(upload: db_models.Upload) -> None:
        payload = upload.as_payload()
        await hub.publish(messaging.UPLOADS_TOPIC, payload)
        await hub.publish(f"{messaging.UPLOADS_TOPIC}.{upload.id}", payload)

    pipeline = ingest_vector.IngestionPipeline(settings, stores, blobs)
    pool = workers.IngestionWorkerPool(
        pipeline,
        workers=settings.ingest_workers,
        on_status=publish_upload,
    )
    device_tracker = tracker.DeviceTracker(
        stores.devices,
        stores.geofences,
        publisher or hub,
    )

    @contextlib.asynccontextmanager
    async def lifespan(_app: fastapi.FastAPI) -> AsyncIterator[None]:
        app_logging.configure_logging(settings)
        if managed_stores:
            await asyncio.to_thread(stores.ensure_schema)
        await pool.start()
        logger.info("Geo engine started")
        try:
            yield
        finally:
            await pool.stop()

    app = fastapi.FastAPI(
        title="Geo Engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.stores = stores
    app.state.object_store = blobs
    app.state.ingest_pool = pool
    app.state.hub = hub
    app.state.tracker = device_tracker

    app.include_router(ingest.router)
    app.include_router(layers.router)
    app.include_router(analytics.router)
    app.include_router(tracking.router)
    app.include_router(tracking.ws_router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
