"""Domain services: ingestion, clustering, heat grids and tracking."""
