"""API router subpackage.

Each module exposes an ``APIRouter`` composed by ``geoengine.main``:

    - ingest: file uploads and their processing status.
    - layers: layer listing and extents.
    - analytics: grid clusters and heat grids over point layers.
    - tracking: device positions and the WebSocket topic endpoint.

Routers reach services through ``deps`` so that tests can swap them with
``app.dependency_overrides``.
"""
