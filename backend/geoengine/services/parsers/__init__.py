"""Format parsers turning uploaded bytes into parsed feature records.

Example:
    >>> from geoengine.services import parsers
    >>> result = parsers.parse_upload(
    ...     "depots.csv",
    ...     b"name,Latitude,Longitude\\nDepot,10.0,106.0\\n",
    ... )
    >>> result.features[0].properties
    {'name': 'Depot'}
"""

from __future__ import annotations

import pathlib
import tempfile

from geoengine.services.parsers import archive, delimited, geojson
from geoengine.services.parsers.records import (
    ParsedFeature,
    ParseError,
    ParseResult,
)

__all__ = [
    "ParseError",
    "ParseResult",
    "ParsedFeature",
    "is_supported",
    "parse_upload",
]

GEOJSON_EXTENSIONS = frozenset({".geojson", ".json"})
DELIMITED_EXTENSIONS = frozenset({".csv", ".txt", ".tsv"})
ARCHIVE_EXTENSIONS = frozenset({".zip"})


def is_supported(file_name: str) -> bool:
    extension = pathlib.PurePath(file_name).suffix.lower()
    return extension in (
        GEOJSON_EXTENSIONS | DELIMITED_EXTENSIONS | ARCHIVE_EXTENSIONS
    )


def parse_upload(
    file_name: str,
    data: bytes,
    lat_column: str | None = None,
    lng_column: str | None = None,
    scratch_dir: pathlib.Path | None = None,
) -> ParseResult:
    """Decode an uploaded file according to its extension.

    Args:
        file_name: Original file name; only its extension is used.
        data: Raw file contents.
        lat_column: Latitude column for delimited files.
        lng_column: Longitude column for delimited files.
        scratch_dir: Extraction area for archives; the system temporary
            directory when omitted.

    Returns:
        The parsed records.

    Raises:
        ParseError: For unsupported formats and systemic input errors.
    """
    extension = pathlib.PurePath(file_name).suffix.lower()
    if extension in GEOJSON_EXTENSIONS:
        return geojson.parse_geojson(data)
    if extension in DELIMITED_EXTENSIONS:
        return delimited.parse_delimited(
            data,
            lat_column=lat_column,
            lng_column=lng_column,
            delimiter="\t" if extension == ".tsv" else None,
        )
    if extension in ARCHIVE_EXTENSIONS:
        return archive.parse_archive(
            data,
            scratch_dir or pathlib.Path(tempfile.gettempdir()),
        )
    raise ParseError(f"Unsupported file format: {extension or file_name}")
