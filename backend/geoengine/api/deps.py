"""FastAPI dependencies resolving the services held on application state.

``main.create_app`` builds the stores, object store, worker pool, hub and
tracker once and stores them on ``app.state``. Routers depend on the
functions below, which tests can replace through
``app.dependency_overrides``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import requests

if TYPE_CHECKING:
    from geoengine.core import config
    from geoengine.db import database
    from geoengine.services import messaging, object_store, tracker, workers


def get_settings(connection: requests.HTTPConnection) -> config.Settings:
    return connection.app.state.settings


def get_stores(connection: requests.HTTPConnection) -> database.Stores:
    """Resolve the repository bundle.

    Returns:
        In-memory stores in tests, PostgreSQL repositories in production.
    """
    return connection.app.state.stores


def get_object_store(
    connection: requests.HTTPConnection,
) -> object_store.ObjectStoreProtocol:
    return connection.app.state.object_store


def get_ingest_pool(
    connection: requests.HTTPConnection,
) -> workers.IngestionWorkerPool:
    return connection.app.state.ingest_pool


def get_tracker(connection: requests.HTTPConnection) -> tracker.DeviceTracker:
    return connection.app.state.tracker


def get_hub(connection: requests.HTTPConnection) -> messaging.WebSocketHub:
    return connection.app.state.hub
