"""Delimited text (CSV, TSV, semicolon/pipe separated) decoding.

Latitude/longitude columns are taken from the caller or detected from the
header: first by case-insensitive exact match against known synonyms,
then by partial match: a synonym opening or closing one of the header's
words, so ``gps_latitude`` and ``lat_deg`` match but ``population`` does
not. Detection that finds nothing or more than one candidate aborts the
parse with the list of available columns.

Rows with a missing or non-numeric coordinate are rejected one by one. A
numeric coordinate outside the WGS84 range aborts the whole file, since it
points at a wrong column mapping rather than a bad row.

Example:
    >>> from geoengine.services.parsers import delimited
    >>> result = delimited.parse_delimited(
    ...     b"name,Latitude,Longitude\\nDepot,10.0,106.0\\n"
    ... )
    >>> result.features[0].geometry.coords[0]
    (106.0, 10.0)
"""

from __future__ import annotations

import csv
import dataclasses
import io
import math
import re
from typing import TYPE_CHECKING, Any

from loguru import logger
from shapely import geometry as shapely_geometry

from geoengine.services.parsers import records

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

LAT_SYNONYMS = ("lat", "latitude", "y", "ycoord", "y_coord", "緯度")
LNG_SYNONYMS = (
    "lng",
    "lon",
    "long",
    "longitude",
    "x",
    "xcoord",
    "x_coord",
    "経度",
)

DELIMITERS = ",;\t|"

# Single-letter synonyms would match almost any header as substrings.
_MIN_SUBSTRING_LENGTH = 3
_TOKEN_SEPARATORS = re.compile(r"[\s_\-./()\[\]]+")


@dataclasses.dataclass(frozen=True)
class ColumnDetection:
    lat_column: str
    lng_column: str
    headers: list[str]


def detect_lat_lng_columns(
    headers: Sequence[str],
    lat_column: str | None = None,
    lng_column: str | None = None,
) -> ColumnDetection:
    """Resolve which header columns hold latitude and longitude.

    Args:
        headers: Header row of the file.
        lat_column: Caller-supplied latitude column, if any.
        lng_column: Caller-supplied longitude column, if any.

    Returns:
        The chosen columns and the cleaned header list.

    Raises:
        ParseError: If a supplied column is missing, or detection finds no
            candidate or several.
    """
    cleaned = [_clean_header(h) for h in headers]
    lat = (
        _require(cleaned, lat_column)
        if lat_column
        else _detect(cleaned, LAT_SYNONYMS, "latitude")
    )
    lng = (
        _require(cleaned, lng_column)
        if lng_column
        else _detect(cleaned, LNG_SYNONYMS, "longitude")
    )
    if lat == lng:
        raise records.ParseError(
            f"Latitude and longitude both resolve to column '{lat}'. "
            f"Available columns: {_available(cleaned)}"
        )
    return ColumnDetection(lat_column=lat, lng_column=lng, headers=cleaned)


def parse_delimited(
    data: bytes,
    lat_column: str | None = None,
    lng_column: str | None = None,
    delimiter: str | None = None,
) -> records.ParseResult:
    """Decode delimited text into point records.

    Args:
        data: Raw file contents, UTF-8 with or without BOM.
        lat_column: Latitude column name; detected when omitted.
        lng_column: Longitude column name; detected when omitted.
        delimiter: Field separator; sniffed among ``,;\\t|`` when omitted.

    Returns:
        One point record per usable row.

    Raises:
        ParseError: On undecodable text, an empty file, failed column
            detection or an out-of-range coordinate.
    """
    reader = _reader(data, delimiter)
    header = next(reader, None)
    if not header:
        raise records.ParseError("File is empty")

    detection = detect_lat_lng_columns(header, lat_column, lng_column)
    columns = detection.headers
    lat_index = columns.index(detection.lat_column)
    lng_index = columns.index(detection.lng_column)

    result = records.ParseResult()
    for row_number, row in enumerate(reader, start=1):
        if not any(cell.strip() for cell in row):
            continue
        lat = _coordinate(row, lat_index)
        lng = _coordinate(row, lng_index)
        if lat is None or lng is None:
            logger.warning(
                "Row {}: missing or non-numeric coordinate, skipped",
                row_number,
            )
            result.rejected += 1
            continue
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            raise records.ParseError(
                f"Row {row_number}: coordinate out of range "
                f"(lat={lat}, lng={lng}); check the "
                f"'{detection.lat_column}'/'{detection.lng_column}' mapping"
            )
        properties = {
            name: _typed(row[i]) if i < len(row) else None
            for i, name in enumerate(columns)
            if i not in (lat_index, lng_index)
        }
        result.features.append(
            records.ParsedFeature(
                geometry=shapely_geometry.Point(lng, lat),
                properties=properties,
                index=row_number,
            )
        )
    return result


def read_header(data: bytes, delimiter: str | None = None) -> list[str]:
    """Return the cleaned header row without reading the data rows.

    Raises:
        ParseError: If the text is not UTF-8 or has no header.
    """
    header = next(_reader(data, delimiter), None)
    if not header:
        raise records.ParseError("File is empty")
    return [_clean_header(h) for h in header]


def _reader(data: bytes, delimiter: str | None) -> Iterator[list[str]]:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise records.ParseError(f"File is not valid UTF-8: {exc}") from exc
    return csv.reader(
        io.StringIO(text),
        delimiter=delimiter or _sniff_delimiter(text),
    )


def _sniff_delimiter(text: str) -> str:
    sample = "\n".join(text.splitlines()[:20])
    try:
        return csv.Sniffer().sniff(sample, delimiters=DELIMITERS).delimiter
    except csv.Error:
        return ","


def _clean_header(header: str) -> str:
    return header.strip().lstrip("\ufeff").strip()


def _available(headers: Sequence[str]) -> str:
    return ", ".join(headers)


def _require(headers: list[str], column: str) -> str:
    wanted = column.strip()
    if wanted in headers:
        return wanted
    for header in headers:
        if header.lower() == wanted.lower():
            return header
    raise records.ParseError(
        f"Column '{column}' not found. "
        f"Available columns: {_available(headers)}"
    )


def _detect(
    headers: list[str],
    synonyms: Sequence[str],
    label: str,
) -> str:
    exact = [h for h in headers if h.lower() in synonyms]
    partial = [s for s in synonyms if len(s) >= _MIN_SUBSTRING_LENGTH]
    substring = [
        h for h in headers
        if any(_token_match(token, partial) for token in _tokens(h))
    ]
    for candidates in (exact, substring):
        unique = list(dict.fromkeys(candidates))
        if len(unique) == 1:
            return unique[0]
        if len(unique) > 1:
            raise records.ParseError(
                f"Ambiguous {label} column: {_available(unique)}. "
                f"Available columns: {_available(headers)}"
            )
    raise records.ParseError(
        f"Could not detect a {label} column. "
        f"Available columns: {_available(headers)}"
    )


def _tokens(header: str) -> list[str]:
    return [t for t in _TOKEN_SEPARATORS.split(header.lower()) if t]


def _token_match(token: str, synonyms: Sequence[str]) -> bool:
    """A synonym must open or close a header word, not sit inside it."""
    return any(token.startswith(s) or token.endswith(s) for s in synonyms)


def _coordinate(row: Sequence[str], index: int) -> float | None:
    if index >= len(row):
        return None
    try:
        value = float(row[index].strip())
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def _typed(raw: str) -> Any:
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        pass
    try:
        number = float(value)
    except ValueError:
        return value
    if math.isfinite(number):
        return number
    return value
