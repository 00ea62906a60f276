"""Subprocess wrapper for the GDAL/OGR command-line utilities.

Shapefile bundles are not decoded in-process; ``ogr2ogr`` converts them to
GeoJSON in the archive's scratch area and the GeoJSON parser takes over
from there. Non-zero exit codes surface as ``CommandError`` carrying the
tool's stderr.

Example:
    Convert a shapefile to GeoJSON:
        >>> import pathlib
        >>> from geoengine.utils import gdal_helpers
        >>> gdal_helpers.ogr_to_geojson(
        ...     pathlib.Path("roads.shp"),
        ...     pathlib.Path("roads.geojson"),
        ... )
"""

from __future__ import annotations

import subprocess
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable


class CommandError(RuntimeError):
    """Raised when a GDAL/OGR subprocess exits with a non-zero status.

    The message is the stderr output of the failed command.
    """


def run_command(
    command: Iterable[str | pathlib.Path],
    workdir: pathlib.Path | None = None,
) -> None:
    """Execute a command and raise on non-zero exit.

    Args:
        command: Arguments to execute (e.g., ["ogr2ogr", "-f", ...]).
        workdir: Optional working directory for the command execution.

    Raises:
        CommandError: if the command exits with a non-zero status code.
    """
    args = [str(arg) for arg in command]
    logger.debug("Running {}", " ".join(args))
    result = subprocess.run(
        args,
        cwd=workdir,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        raise CommandError(result.stderr.strip() or "Unknown command failure")


def ogr_to_geojson(
    source: pathlib.Path,
    destination: pathlib.Path,
) -> pathlib.Path:
    """Convert any OGR-readable dataset to a GeoJSON file.

    Coordinates are written as stored; reprojection happens later in the
    ingestion pipeline so that the PRJ-detected CRS stays authoritative.

    Args:
        source: Input dataset, typically a ``.shp`` file.
        destination: GeoJSON file to create.

    Returns:
        ``destination``, once written.

    Raises:
        CommandError: If ogr2ogr fails.
    """
    run_command(
        ("ogr2ogr", "-f", "GeoJSON", destination, source),
        workdir=source.parent,
    )
    return destination
