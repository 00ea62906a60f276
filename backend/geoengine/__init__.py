"""Geospatial engine backend.

Ingests uploaded vector data (GeoJSON, delimited text, zipped shapefiles)
into validated WGS84 features, aggregates point layers into grid clusters
and heat grids for map clients, and tracks device positions against
geofences, broadcasting positions and crossing events to subscribers.

- ``services.ingest_vector`` runs the parse/validate/reproject/persist
  pipeline for one upload; ``services.workers`` schedules those runs
- ``services.clustering`` and ``services.heatmap`` are pure functions over
  a snapshot of point features
- ``services.tracker`` serialises updates per device and detects
  geofence ENTER/EXIT transitions
- ``api`` exposes thin FastAPI routers over the services
"""
