"""Records shared by the format parsers."""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from shapely.geometry import base as shapely_base


class ParseError(ValueError):
    """Raised for input errors that abort the whole file.

    Ambiguous column detection, a missing archive member or an out-of-range
    coordinate column all end up as the upload's FAILED message.
    """


@dataclasses.dataclass
class ParsedFeature:
    """One decoded record, before validation and reprojection.

    Attributes:
        geometry: Decoded geometry, or None when the record had none.
        properties: Attribute map of the record.
        source_crs: EPSG code the coordinates are expressed in, if declared.
        index: Position of the record in the source file (1-based).
    """

    geometry: shapely_base.BaseGeometry | None
    properties: dict[str, Any] = dataclasses.field(default_factory=dict)
    source_crs: int | None = None
    index: int = 0


@dataclasses.dataclass
class ParseResult:
    """Decoded records plus the count of malformed ones left out."""

    features: list[ParsedFeature] = dataclasses.field(default_factory=list)
    rejected: int = 0
    source_crs: int | None = None

    @property
    def total(self) -> int:
        return len(self.features) + self.rejected
