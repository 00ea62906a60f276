"""Coordinate reference system detection and reprojection.

Reprojection tries an ordered list of strategies and returns the first
success:

1. ``pyproj``: a cached ``Transformer`` (``always_xy=True``) applied with
   ``shapely.ops.transform``.
2. ``analytic``: closed-form spherical Web Mercator and Transverse
   Mercator (WGS84 UTM zones) formulas evaluated with numpy, for when the
   PROJ database is unavailable or refuses a pair. VN-2000 (EPSG:4756,
   3405 and 3406) sits on a shifted datum these formulas do not model,
   so those codes reproject through pyproj only.

Each strategy returns a ``StrategyResult`` instead of raising, so the
chain can be reordered or extended by editing ``STRATEGIES``. When every
strategy fails, ``transform`` raises ``CRSTransformError``.

CRS identifiers are EPSG integers. ``None`` means "unknown" and makes
``transform`` a no-op, matching the ingestion default of WGS84.

Example:
    Projecting a point to Web Mercator and back:
        >>> from shapely import geometry as shapely_geometry
        >>> from geoengine.services import crs
        >>> point = shapely_geometry.Point(106.0, 10.0)
        >>> projected = crs.transform(point, 4326, 3857)
        >>> round(crs.transform(projected, 3857, 4326).x, 6)
        106.0

    Detecting a CRS from a PRJ sidecar:
        >>> crs.detect_source_crs('PROJCS["WGS_1984_UTM_Zone_48N", ...]')
        32648
"""

from __future__ import annotations

import functools
import math
import re
from collections.abc import Callable
from typing import TYPE_CHECKING, NamedTuple

import numpy as np
import pyproj
import pyproj.exceptions
import shapely
import shapely.ops
from loguru import logger

from geoengine.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shapely.geometry import base as shapely_base

WEB_MERCATOR_SRID = 3857

_EARTH_RADIUS_M = 6378137.0
_WGS84_A = 6378137.0
_WGS84_F = 1 / 298.257223563
_UTM_K0 = 0.9996
_UTM_FALSE_EASTING = 500_000.0
_UTM_FALSE_NORTHING_SOUTH = 10_000_000.0


class CRSTransformError(Exception):
    """Raised when no strategy can reproject a geometry.

    Attributes:
        source_crs: EPSG code of the input geometry.
        target_crs: EPSG code that was requested.
    """

    def __init__(
        self,
        source_crs: int,
        target_crs: int,
        detail: str = "",
    ) -> None:
        self.source_crs = source_crs
        self.target_crs = target_crs
        message = f"Cannot transform EPSG:{source_crs} to EPSG:{target_crs}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StrategyResult(NamedTuple):
    geometry: shapely_base.BaseGeometry | None
    error: str | None = None


TransformStrategy = Callable[
    ["shapely_base.BaseGeometry", int, int], StrategyResult
]


@functools.lru_cache(maxsize=64)
def _transformer(source: int, target: int) -> pyproj.Transformer:
    return pyproj.Transformer.from_crs(
        f"EPSG:{source}",
        f"EPSG:{target}",
        always_xy=True,
    )


def pyproj_strategy(
    geom: shapely_base.BaseGeometry,
    source: int,
    target: int,
) -> StrategyResult:
    """Reproject with PROJ through pyproj."""
    try:
        transformer = _transformer(source, target)
        result = shapely.ops.transform(transformer.transform, geom)
    except (pyproj.exceptions.CRSError, pyproj.exceptions.ProjError) as exc:
        return StrategyResult(None, str(exc))
    if not _all_finite(result):
        return StrategyResult(None, "transform produced non-finite values")
    return StrategyResult(result)


def analytic_strategy(
    geom: shapely_base.BaseGeometry,
    source: int,
    target: int,
) -> StrategyResult:
    """Reproject with closed-form formulas via WGS84 as the pivot."""
    to_wgs84 = _inverse_for(source)
    from_wgs84 = _forward_for(target)
    if to_wgs84 is None or from_wgs84 is None:
        return StrategyResult(
            None,
            f"no closed-form path for EPSG:{source} -> EPSG:{target}",
        )

    def apply(coords: np.ndarray) -> np.ndarray:
        return from_wgs84(to_wgs84(coords))

    result = shapely.transform(geom, apply)
    if not _all_finite(result):
        return StrategyResult(None, "transform produced non-finite values")
    return StrategyResult(result)


STRATEGIES: list[tuple[str, TransformStrategy]] = [
    ("pyproj", pyproj_strategy),
    ("analytic", analytic_strategy),
]


def transform(
    geom: shapely_base.BaseGeometry,
    source_crs: int | None,
    target_crs: int = db_models.WGS84_SRID,
    strategies: Sequence[tuple[str, TransformStrategy]] | None = None,
) -> shapely_base.BaseGeometry:
    """Reproject ``geom`` from ``source_crs`` to ``target_crs``.

    Args:
        geom: Geometry in ``source_crs`` coordinates.
        source_crs: EPSG code, or None when unknown.
        target_crs: EPSG code to produce; WGS84 by default.
        strategies: Override of the strategy chain.

    Returns:
        The reprojected geometry, or ``geom`` itself for a no-op.

    Raises:
        CRSTransformError: If every strategy fails.
    """
    if source_crs is None or source_crs == target_crs:
        return geom

    errors = []
    for name, strategy in strategies or STRATEGIES:
        result = strategy(geom, source_crs, target_crs)
        if result.geometry is not None:
            return result.geometry
        logger.debug(
            "CRS strategy {} failed for EPSG:{} -> EPSG:{}: {}",
            name,
            source_crs,
            target_crs,
            result.error,
        )
        errors.append(f"{name}: {result.error}")
    raise CRSTransformError(source_crs, target_crs, "; ".join(errors))


def _all_finite(geom: shapely_base.BaseGeometry) -> bool:
    return bool(np.isfinite(shapely.get_coordinates(geom)).all())


def _web_mercator_forward(coords: np.ndarray) -> np.ndarray:
    lng = np.radians(coords[:, 0])
    lat = np.radians(coords[:, 1])
    x = _EARTH_RADIUS_M * lng
    y = _EARTH_RADIUS_M * np.log(np.tan(np.pi / 4 + lat / 2))
    return np.column_stack([x, y])


def _web_mercator_inverse(coords: np.ndarray) -> np.ndarray:
    lng = np.degrees(coords[:, 0] / _EARTH_RADIUS_M)
    lat = np.degrees(2 * np.arctan(np.exp(coords[:, 1] / _EARTH_RADIUS_M))
                     - np.pi / 2)
    return np.column_stack([lng, lat])


def _utm_zone(srid: int) -> tuple[int, bool] | None:
    """Return ``(zone, south)`` for a WGS84 UTM EPSG code."""
    if 32601 <= srid <= 32660:
        return srid - 32600, False
    if 32701 <= srid <= 32760:
        return srid - 32700, True
    return None


def _central_meridian(zone: int) -> float:
    return math.radians((zone - 1) * 6 - 180 + 3)


_E2 = _WGS84_F * (2 - _WGS84_F)
_EP2 = _E2 / (1 - _E2)
_M1 = 1 - _E2 / 4 - 3 * _E2**2 / 64 - 5 * _E2**3 / 256
_M2 = 3 * _E2 / 8 + 3 * _E2**2 / 32 + 45 * _E2**3 / 1024
_M3 = 15 * _E2**2 / 256 + 45 * _E2**3 / 1024
_M4 = 35 * _E2**3 / 3072


def _meridian_arc(phi: np.ndarray) -> np.ndarray:
    return _WGS84_A * (
        _M1 * phi
        - _M2 * np.sin(2 * phi)
        + _M3 * np.sin(4 * phi)
        - _M4 * np.sin(6 * phi)
    )


def _utm_forward(zone: int, south: bool) -> Callable[[np.ndarray], np.ndarray]:
    lam0 = _central_meridian(zone)
    false_northing = _UTM_FALSE_NORTHING_SOUTH if south else 0.0

    def forward(coords: np.ndarray) -> np.ndarray:
        phi = np.radians(coords[:, 1])
        lam = np.radians(coords[:, 0])
        sin_phi = np.sin(phi)
        cos_phi = np.cos(phi)
        n = _WGS84_A / np.sqrt(1 - _E2 * sin_phi**2)
        t = np.tan(phi) ** 2
        c = _EP2 * cos_phi**2
        a = cos_phi * (lam - lam0)
        x = _UTM_K0 * n * (
            a
            + (1 - t + c) * a**3 / 6
            + (5 - 18 * t + t**2 + 72 * c - 58 * _EP2) * a**5 / 120
        ) + _UTM_FALSE_EASTING
        y = _UTM_K0 * (
            _meridian_arc(phi)
            + n * np.tan(phi) * (
                a**2 / 2
                + (5 - t + 9 * c + 4 * c**2) * a**4 / 24
                + (61 - 58 * t + t**2 + 600 * c - 330 * _EP2) * a**6 / 720
            )
        ) + false_northing
        return np.column_stack([x, y])

    return forward


def _utm_inverse(zone: int, south: bool) -> Callable[[np.ndarray], np.ndarray]:
    lam0 = _central_meridian(zone)
    false_northing = _UTM_FALSE_NORTHING_SOUTH if south else 0.0
    e1 = (1 - math.sqrt(1 - _E2)) / (1 + math.sqrt(1 - _E2))

    def inverse(coords: np.ndarray) -> np.ndarray:
        x = coords[:, 0] - _UTM_FALSE_EASTING
        mu = (coords[:, 1] - false_northing) / _UTM_K0 / (_WGS84_A * _M1)
        phi1 = (
            mu
            + (3 * e1 / 2 - 27 * e1**3 / 32) * np.sin(2 * mu)
            + (21 * e1**2 / 16 - 55 * e1**4 / 32) * np.sin(4 * mu)
            + (151 * e1**3 / 96) * np.sin(6 * mu)
            + (1097 * e1**4 / 512) * np.sin(8 * mu)
        )
        sin1 = np.sin(phi1)
        cos1 = np.cos(phi1)
        tan1 = np.tan(phi1)
        c1 = _EP2 * cos1**2
        t1 = tan1**2
        n1 = _WGS84_A / np.sqrt(1 - _E2 * sin1**2)
        r1 = _WGS84_A * (1 - _E2) / (1 - _E2 * sin1**2) ** 1.5
        d = x / (n1 * _UTM_K0)
        phi = phi1 - (n1 * tan1 / r1) * (
            d**2 / 2
            - (5 + 3 * t1 + 10 * c1 - 4 * c1**2 - 9 * _EP2) * d**4 / 24
            + (61 + 90 * t1 + 298 * c1 + 45 * t1**2 - 252 * _EP2
               - 3 * c1**2) * d**6 / 720
        )
        lam = lam0 + (
            d
            - (1 + 2 * t1 + c1) * d**3 / 6
            + (5 - 2 * c1 + 28 * t1 - 3 * c1**2 + 8 * _EP2
               + 24 * t1**2) * d**5 / 120
        ) / cos1
        return np.column_stack([np.degrees(lam), np.degrees(phi)])

    return inverse


def _identity(coords: np.ndarray) -> np.ndarray:
    return coords


def _forward_for(srid: int) -> Callable[[np.ndarray], np.ndarray] | None:
    """Return a WGS84 -> ``srid`` function, if one is known."""
    if srid == db_models.WGS84_SRID:
        return _identity
    if srid == WEB_MERCATOR_SRID:
        return _web_mercator_forward
    utm = _utm_zone(srid)
    if utm is not None:
        return _utm_forward(*utm)
    return None


def _inverse_for(srid: int) -> Callable[[np.ndarray], np.ndarray] | None:
    """Return a ``srid`` -> WGS84 function, if one is known."""
    if srid == db_models.WGS84_SRID:
        return _identity
    if srid == WEB_MERCATOR_SRID:
        return _web_mercator_inverse
    utm = _utm_zone(srid)
    if utm is not None:
        return _utm_inverse(*utm)
    return None


_AUTHORITY_PATTERNS = (
    re.compile(r'AUTHORITY\[\s*"EPSG"\s*,\s*"?(\d+)"?\s*\]', re.IGNORECASE),
    re.compile(r'ID\[\s*"EPSG"\s*,\s*(\d+)\s*\]', re.IGNORECASE),
)
_GENERIC_CODE_PATTERN = re.compile(r'EPSG[:"\s]*(\d+)', re.IGNORECASE)
_UTM_ZONE_PATTERN = re.compile(
    r"ZONE[_\s]*(\d{1,2})\s*([NS])?(?![A-Z0-9])", re.IGNORECASE
)
_VN2000_UTM_ZONES = {48: 3405, 49: 3406}


def detect_srid_from_wkt(text: str | None) -> int | None:
    """Extract an EPSG code from WKT using authority and code patterns only.

    The last authority clause wins: in a PROJCS the outermost CRS closes
    the text, after the nested datum and spheroid authorities.

    Args:
        text: WKT1 or WKT2 projection text.

    Returns:
        The EPSG code, or None.
    """
    if not text:
        return None
    for pattern in _AUTHORITY_PATTERNS:
        matches = pattern.findall(text)
        if matches:
            return int(matches[-1])
    match = _GENERIC_CODE_PATTERN.search(text)
    if match:
        return int(match.group(1))
    return None


def _vn2000(upper: str) -> int | None:
    zone = _UTM_ZONE_PATTERN.search(upper)
    if zone and "UTM" in upper:
        return _VN2000_UTM_ZONES.get(int(zone.group(1)), 4756)
    return 4756


def _utm(upper: str) -> int | None:
    match = _UTM_ZONE_PATTERN.search(upper)
    if match is None:
        return None
    zone = int(match.group(1))
    if not 1 <= zone <= 60:
        return None
    south = match.group(2) == "S" or "SOUTH" in upper
    return (32700 if south else 32600) + zone


_Heuristic = tuple[Callable[[str], bool], Callable[[str], int | None]]

_NAME_HEURISTICS: list[_Heuristic] = [
    (lambda u: "VN-2000" in u or "VN_2000" in u or "VIETNAM 2000" in u,
     _vn2000),
    (lambda u: "UTM" in u, _utm),
    (lambda u: any(name in u for name in (
        "WEB MERCATOR", "WEB_MERCATOR", "PSEUDO-MERCATOR",
        "PSEUDO_MERCATOR", "GOOGLE")),
     lambda u: WEB_MERCATOR_SRID),
    (lambda u: any(name in u for name in (
        "WGS 84", "WGS84", "WGS_1984", "WORLD GEODETIC SYSTEM 1984", "CRS84")),
     lambda u: db_models.WGS84_SRID),
]


def detect_source_crs(text: str | None) -> int | None:
    """Detect the EPSG code described by a PRJ sidecar.

    Tries explicit authority codes, then a generic ``EPSG:n`` pattern, then
    name heuristics (VN-2000, WGS84 UTM zones, Web Mercator, WGS84).

    Args:
        text: Contents of the ``.prj`` file.

    Returns:
        The EPSG code, or None when nothing matches.
    """
    srid = detect_srid_from_wkt(text)
    if srid is not None or not text:
        return srid
    upper = text.upper()
    for matches, resolve in _NAME_HEURISTICS:
        if matches(upper):
            srid = resolve(upper)
            if srid is not None:
                return srid
    return None
