"""
Point generator: digit-stream offsets to land-validated coordinates.

``point_from_offset`` is a pure function of (offset, digit stream). The
first digit chunk maps to longitude linearly; the second maps to latitude
through ``asin(2f - 1)`` so points are uniform in area on the sphere, not
uniform on a flat lat/lng grid.

Region-constrained generation repeatedly advances the offset by a fixed
step until the candidate is on land (and inside the region), capped at
``max_placement_attempts``. On exhaustion the region centroid is returned
as a possibly-ocean fallback; spawning never fails on unlucky draws.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Generic, TypeVar

from shapely.geometry import Point
from shapely.prepared import prep

from nodeforge.core.config import SpawnConfig
from nodeforge.core.digits import DigitCursor, DigitStream
from nodeforge.core.grid import WORLD_BOUNDS, Bounds
from nodeforge.core.hex_index import HexIndex
from nodeforge.core.land_mask import LandMask

if TYPE_CHECKING:
    from nodeforge.metrics.collector import PlacementTelemetry

logger = logging.getLogger(__name__)

# Knuth's multiplicative hash constant; spreads sequential offsets apart.
KNUTH_MULTIPLIER = 2654435761

T = TypeVar("T")

_DEFAULT_CONFIG = SpawnConfig()


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    value: T
    attempts: int
    fallback: bool


@dataclass(frozen=True)
class Placement:
    """Outcome of one region-constrained point search.

    Attributes:
        point: The accepted coordinate, or the region centroid on fallback.
        attempts: Candidates evaluated (1..max_attempts).
        fallback: True when retries were exhausted and the centroid was used.
        offset: Offset of the last candidate evaluated.
        next_offset: First offset not consumed by this search.
    """

    point: GeoPoint
    attempts: int
    fallback: bool
    offset: int
    next_offset: int


# ---------------------------------------------------------------------------
# Pure offset -> coordinate mapping
# ---------------------------------------------------------------------------

def _fractions(offset: int, stream: DigitStream, config: SpawnConfig) -> tuple[float, float]:
    """Two digit-chunk fractions at ``offset`` and ``offset + stride``."""
    chunk = config.chunk_size
    stride = config.chunk_stride
    if config.hash_offsets:
        pos = (abs(offset) * KNUTH_MULTIPLIER) % stream.usable_length
    else:
        pos = stream.wrap(offset)
    window = stream.digits_at(pos, stride + chunk)
    scale = 10 ** chunk
    return int(window[:chunk]) / scale, int(window[stride:stride + chunk]) / scale


def point_in_bounds_from_offset(
    offset: int,
    stream: DigitStream,
    bounds: Bounds,
    config: SpawnConfig | None = None,
) -> GeoPoint:
    """Map an offset to an area-uniform point inside a lat/lng rectangle."""
    config = config or _DEFAULT_CONFIG
    f_lng, f_lat = _fractions(offset, stream, config)
    lng = bounds.lon_min + f_lng * (bounds.lon_max - bounds.lon_min)
    s0 = math.sin(math.radians(bounds.lat_min))
    s1 = math.sin(math.radians(bounds.lat_max))
    s = max(-1.0, min(1.0, s0 + f_lat * (s1 - s0)))
    return GeoPoint(lat=math.degrees(math.asin(s)), lng=lng)


def point_from_offset(
    offset: int,
    stream: DigitStream,
    config: SpawnConfig | None = None,
) -> GeoPoint:
    """Map an offset to a point uniformly distributed over the whole sphere.

    ``lng = f1 * 360 - 180`` and ``lat = degrees(asin(f2 * 2 - 1))``.
    """
    return point_in_bounds_from_offset(offset, stream, WORLD_BOUNDS, config)


# ---------------------------------------------------------------------------
# Bounded retry
# ---------------------------------------------------------------------------

def generate_with_retry(
    max_attempts: int,
    candidate: Callable[[int], T],
    predicate: Callable[[T], bool],
    fallback: Callable[[], T],
    label: str = "",
) -> RetryResult[T]:
    """Evaluate ``candidate(0..max_attempts-1)`` until ``predicate`` accepts one.

    Returns the fallback value, flagged, when every attempt is rejected.
    """
    for attempt in range(max_attempts):
        value = candidate(attempt)
        if predicate(value):
            return RetryResult(value=value, attempts=attempt + 1, fallback=False)
    logger.warning(
        "Could not find land point in %s after %d attempts, using centroid",
        label or "region", max_attempts,
    )
    return RetryResult(value=fallback(), attempts=max_attempts, fallback=True)


def _search(
    start: int,
    stream: DigitStream,
    bounds: Bounds,
    accept: Callable[[GeoPoint], bool],
    centroid: GeoPoint,
    config: SpawnConfig,
    label: str,
    telemetry: PlacementTelemetry | None,
) -> Placement:
    step = config.offset_step

    result = generate_with_retry(
        max_attempts=config.max_placement_attempts,
        candidate=lambda i: point_in_bounds_from_offset(start + i * step, stream, bounds, config),
        predicate=accept,
        fallback=lambda: centroid,
        label=label,
    )
    placement = Placement(
        point=result.value,
        attempts=result.attempts,
        fallback=result.fallback,
        offset=start + (result.attempts - 1) * step,
        next_offset=start + result.attempts * step,
    )
    if telemetry is not None:
        telemetry.record(placement, label)
    return placement


def generate_point_in_cell(
    bounds: Bounds,
    cursor: DigitCursor,
    stream: DigitStream,
    land_mask: LandMask,
    config: SpawnConfig | None = None,
    region_id: str = "",
    telemetry: PlacementTelemetry | None = None,
) -> Placement:
    """Find a land point inside a rectangular cell, or fall back to its centroid."""
    config = config or _DEFAULT_CONFIG
    lat_c, lng_c = bounds.centroid

    def accept(p: GeoPoint) -> bool:
        return bounds.contains(p.lat, p.lng) and land_mask.is_on_land(p.lng, p.lat)

    return _search(
        cursor.offset, stream, bounds, accept, GeoPoint(lat_c, lng_c),
        config, f"cell {region_id}" if region_id else "cell", telemetry,
    )


def generate_point_in_hex(
    hex_id: str,
    cursor: DigitCursor,
    stream: DigitStream,
    land_mask: LandMask,
    hex_index: HexIndex,
    config: SpawnConfig | None = None,
    telemetry: PlacementTelemetry | None = None,
) -> Placement:
    """Find a land point inside a hexagon, or fall back to the hex centroid."""
    config = config or _DEFAULT_CONFIG
    polygon = prep(hex_index.hex_polygon(hex_id))
    bounds = hex_index.hex_bounds(hex_id)
    lat_c, lng_c = hex_index.hex_to_latlng(hex_id)

    def accept(p: GeoPoint) -> bool:
        return polygon.covers(Point(p.lng, p.lat)) and land_mask.is_on_land(p.lng, p.lat)

    return _search(
        cursor.offset, stream, bounds, accept, GeoPoint(lat_c, lng_c),
        config, f"hex {hex_id}", telemetry,
    )
