"""Zipped shapefile bundle decoding.

Recognised sidecars (``.shp .shx .dbf .prj .cpg``) are extracted by base
name into a private temporary directory under the scratch area; anything
else, including ``__MACOSX`` metadata and entries trying to climb out of
the archive, is ignored. ``ogr2ogr`` converts the shapefile to GeoJSON,
which the GeoJSON parser then decodes. The PRJ sidecar, when present, sets
the source CRS.

The temporary directory is removed on every exit path.
"""

from __future__ import annotations

import io
import pathlib
import tempfile
import zipfile

from loguru import logger

from geoengine.services import crs
from geoengine.services.parsers import geojson, records
from geoengine.utils import gdal_helpers

SIDECAR_EXTENSIONS = frozenset({".shp", ".shx", ".dbf", ".prj", ".cpg"})


def parse_archive(
    data: bytes,
    scratch_dir: pathlib.Path,
) -> records.ParseResult:
    """Decode a ZIP archive containing a shapefile.

    Args:
        data: Raw archive bytes.
        scratch_dir: Parent directory for the extraction area.

    Returns:
        Parsed records of the first shapefile in the archive.

    Raises:
        ParseError: If the archive is corrupt or has no ``.shp`` member.
        CommandError: If ogr2ogr cannot read the shapefile.
    """
    scratch_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="shp-", dir=scratch_dir) as tmp:
        workdir = pathlib.Path(tmp)
        extracted = _extract(data, workdir)
        shapefiles = sorted(p for p in extracted if p.suffix == ".shp")
        if not shapefiles:
            raise records.ParseError("Archive contains no .shp file")
        shapefile = shapefiles[0]

        source_crs = None
        prj = shapefile.with_suffix(".prj")
        if prj in extracted:
            source_crs = crs.detect_source_crs(
                prj.read_text(encoding="utf-8", errors="replace")
            )
            logger.info("{} declares EPSG:{}", prj.name, source_crs)

        converted = gdal_helpers.ogr_to_geojson(
            shapefile,
            workdir / f"{shapefile.stem}.geojson",
        )
        return geojson.parse_geojson(
            converted.read_bytes(),
            source_crs=source_crs,
        )


def _extract(data: bytes, workdir: pathlib.Path) -> set[pathlib.Path]:
    """Write recognised members into ``workdir`` and return their paths."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise records.ParseError(f"Invalid ZIP archive: {exc}") from exc

    extracted: set[pathlib.Path] = set()
    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            member = pathlib.PurePosixPath(info.filename.replace("\\", "/"))
            if "__MACOSX" in member.parts or ".." in member.parts:
                logger.debug("Ignoring archive member {}", info.filename)
                continue
            name = member.name
            suffix = member.suffix.lower()
            if name.startswith(".") or suffix not in SIDECAR_EXTENSIONS:
                continue
            target = workdir / (member.stem + suffix)
            if target in extracted:
                continue
            target.write_bytes(archive.read(info))
            extracted.add(target)
    return extracted
