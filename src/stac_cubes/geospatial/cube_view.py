"""Cube views: target grid specifications in space and time."""

import bisect
import math
import re
from functools import cached_property
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from affine import Affine
from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from rasterio.crs import CRS
from rasterio.errors import CRSError

from stac_cubes.config.constants import AGGREGATION_METHODS, RESAMPLING_METHODS
from stac_cubes.errors import ConfigurationError
from stac_cubes.models.models import to_utc

_DURATION_RE = re.compile(
    r"^P(?!$)(?:(?P<years>\d+)Y)?(?:(?P<months>\d+)M)?(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?=\d)(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)

# Absolute tolerance, in pixels, absorbing float error when an extent is a whole number of pixels
_GRID_TOLERANCE = 1e-9


def parse_duration(value: str) -> relativedelta:
    """Parse an ISO 8601 duration such as ``P1D``, ``P16D``, ``P1M`` or ``PT6H``.

    :param value: Duration string
    :returns: relativedelta
    :raises ValueError: If the duration is malformed or not strictly positive
    """
    match = _DURATION_RE.match(value.strip().upper()) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f"Invalid ISO 8601 duration: {value!r}")
    parts = {key: int(number) for key, number in match.groupdict().items() if number is not None}
    delta = relativedelta(**parts).normalized()
    if not any(parts.values()):
        raise ValueError(f"Temporal step must be strictly positive, got {value!r}")
    return delta


class CubeView(BaseModel):
    """Target grid of a raster cube.

    The requested extent is kept as given; ``extent`` returns the effective
    extent enlarged symmetrically to whole pixels.
    """

    model_config = ConfigDict(frozen=True)

    srs: str
    left: float
    right: float
    top: float
    bottom: float
    dx: float
    dy: float
    t0: datetime
    t1: datetime
    dt: str
    aggregation: str = "first"
    resampling: str = "nearest"

    @field_validator("t0", "t1", mode="before")
    @classmethod
    def _to_utc(cls, value: Any) -> datetime:
        return to_utc(value)

    @field_validator("srs")
    @classmethod
    def _valid_srs(cls, value: str) -> str:
        try:
            CRS.from_user_input(value)
        except CRSError as e:
            raise ValueError(f"Unknown spatial reference system {value!r}: {e}") from e
        return value

    @field_validator("dx", "dy")
    @classmethod
    def _positive_pixel_size(cls, value: float) -> float:
        if not value > 0:
            raise ValueError(f"Pixel size must be strictly positive, got {value}")
        return value

    @field_validator("dt")
    @classmethod
    def _valid_step(cls, value: str) -> str:
        parse_duration(value)
        return value.strip().upper()

    @field_validator("aggregation")
    @classmethod
    def _valid_aggregation(cls, value: str) -> str:
        if value not in AGGREGATION_METHODS:
            raise ValueError(f"Unknown aggregation {value!r}; expected one of {sorted(AGGREGATION_METHODS)}")
        return value

    @field_validator("resampling")
    @classmethod
    def _valid_resampling(cls, value: str) -> str:
        if value not in RESAMPLING_METHODS:
            raise ValueError(f"Unknown resampling {value!r}; expected one of {sorted(RESAMPLING_METHODS)}")
        return value

    @model_validator(mode="after")
    def _valid_extent(self) -> "CubeView":
        if not self.left < self.right:
            raise ValueError(f"Extent must satisfy left < right, got {self.left} >= {self.right}")
        if not self.bottom < self.top:
            raise ValueError(f"Extent must satisfy bottom < top, got {self.bottom} >= {self.top}")
        if not self.t0 <= self.t1:
            raise ValueError(f"Extent must satisfy t0 <= t1, got {self.t0} > {self.t1}")
        return self

    @cached_property
    def step(self) -> relativedelta:
        return parse_duration(self.dt)

    @property
    def nx(self) -> int:
        return max(1, math.ceil((self.right - self.left) / self.dx - _GRID_TOLERANCE))

    @property
    def ny(self) -> int:
        return max(1, math.ceil((self.top - self.bottom) / self.dy - _GRID_TOLERANCE))

    @property
    def nt(self) -> int:
        return len(self.slice_edges) - 1

    @property
    def extent(self) -> tuple[float, float, float, float]:
        """Effective (left, right, top, bottom), centred on the requested extent."""
        pad_x = (self.nx * self.dx - (self.right - self.left)) / 2
        pad_y = (self.ny * self.dy - (self.top - self.bottom)) / 2
        return self.left - pad_x, self.right + pad_x, self.top + pad_y, self.bottom - pad_y

    @property
    def t_end(self) -> datetime:
        """Exclusive end of the last time slice."""
        return self.slice_edges[-1]

    @property
    def transform(self) -> Affine:
        left, _, top, _ = self.extent
        return Affine(self.dx, 0.0, left, 0.0, -self.dy, top)

    @property
    def crs(self) -> CRS:
        return CRS.from_user_input(self.srs)

    @cached_property
    def slice_edges(self) -> tuple[datetime, ...]:
        """Slice boundaries; slice k covers [edges[k], edges[k + 1]) with edges[k] = t0 + k*dt.

        Computed once per view, the last edge is the exclusive end of the last slice.
        """
        step = self.step
        edges = [self.t0]
        k = 1
        while edges[-1] <= self.t1:
            edges.append(self.t0 + step * k)
            k += 1
        return tuple(edges)

    def slice_starts(self) -> list[datetime]:
        """Start of every time slice."""
        return list(self.slice_edges[:-1])

    def time_labels(self) -> list[datetime]:
        return self.slice_starts()

    def slice_bounds(self, index: int) -> tuple[datetime, datetime]:
        if not 0 <= index < self.nt:
            raise IndexError(f"Time slice {index} out of range [0, {self.nt})")
        return self.slice_edges[index], self.slice_edges[index + 1]

    def time_index(self, moment: datetime) -> int | None:
        """Index of the slice containing ``moment``, or None when outside the view."""
        moment = to_utc(moment)
        if moment < self.t0 or moment >= self.t_end:
            return None
        return bisect.bisect_right(self.slice_edges, moment) - 1

    def __str__(self) -> str:
        left, right, top, bottom = self.extent
        return (
            f"CubeView(srs={self.srs}, x=[{left}, {right}] nx={self.nx}, y=[{bottom}, {top}] ny={self.ny}, "
            f"t=[{self.t0.isoformat()}, {self.t_end.isoformat()}) dt={self.dt} nt={self.nt}, "
            f"aggregation={self.aggregation}, resampling={self.resampling})"
        )


_EXTENT_KEYS = ("left", "right", "top", "bottom", "t0", "t1")


def _create(fields: dict[str, Any]) -> CubeView:
    try:
        return CubeView(**fields)
    except ValidationError as e:
        details = "; ".join(f"{'.'.join(map(str, err['loc'])) or 'view'}: {err['msg']}" for err in e.errors())
        raise ConfigurationError(f"Invalid cube view: {details}") from e


def make_view(
    srs: str,
    extent: Mapping[str, Any],
    dx: float,
    dy: float | None = None,
    dt: str = "P1D",
    aggregation: str = "first",
    resampling: str = "nearest",
) -> CubeView:
    """Create a cube view.

    :param srs: Spatial reference system, e.g. "EPSG:32632"
    :param extent: Mapping with left, right, top, bottom, t0, t1
    :param dx: Pixel width in srs units
    :param dy: Pixel height, defaults to dx
    :param dt: Temporal step as ISO 8601 duration
    :param aggregation: How observations within one slice are combined
    :param resampling: Resampling method for reprojection
    :returns: CubeView
    :raises ConfigurationError: On any invalid parameter
    """
    missing = [key for key in _EXTENT_KEYS if key not in extent]
    if missing:
        raise ConfigurationError(f"Extent is missing {missing}")
    return _create(
        {
            "srs": srs,
            **{key: extent[key] for key in _EXTENT_KEYS},
            "dx": dx,
            "dy": dx if dy is None else dy,
            "dt": dt,
            "aggregation": aggregation,
            "resampling": resampling,
        }
    )


def derive_view(base: CubeView, **overrides: Any) -> CubeView:
    """Copy a view, replacing some of its fields.

    ``extent`` may be given as a partial mapping of left, right, top, bottom, t0, t1.

    :param base: View to copy
    :param overrides: Fields to replace
    :returns: New validated CubeView
    """
    fields = base.model_dump()
    extent = overrides.pop("extent", None) or {}
    unknown = sorted((set(overrides) | set(extent)) - set(fields))
    if unknown:
        raise ConfigurationError(f"Unknown cube view field(s) {unknown}")
    fields.update(extent)
    fields.update(overrides)
    return _create(fields)
