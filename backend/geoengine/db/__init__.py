"""Data model and repository abstractions.

``models`` holds the dataclasses shared across the engine, ``database``
the layer/upload repositories and the ``Stores`` bundle, and
``spatial_store`` the feature, device and geofence stores.

Example:
    Build an in-memory bundle for tests:
        >>> from geoengine.db import database
        >>> stores = database.in_memory_stores()
"""
