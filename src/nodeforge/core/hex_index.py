"""
Global hexagonal index for the surge pipeline.

Tessellates the lat/lng plane (lng as x, lat as y) with flat-top hexagons
in axial coordinates (q, r). Hex size halves at each resolution level, so
resolution 7 hexes are roughly 8-9 km across at the equator.

Coordinate system: axial (q, r) with flat-top hexagons.
Cube coordinates derived as (q, -q-r, r).
Hex ids are ``"{resolution}:{q}:{r}"``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from shapely.geometry import Polygon

from nodeforge.core.grid import Bounds

# Hex circumradius in degrees at resolution 0.
BASE_HEX_SIZE = 10.0

_SQRT3 = math.sqrt(3.0)


@dataclass(frozen=True)
class HexCell:
    """A single hexagon of the global index.

    Attributes:
        q: Column coordinate (axial).
        r: Row coordinate (axial).
        resolution: Index resolution; size is ``BASE_HEX_SIZE / 2**resolution``.
    """

    q: int
    r: int
    resolution: int

    @property
    def hex_id(self) -> str:
        return f"{self.resolution}:{self.q}:{self.r}"

    @property
    def coords(self) -> tuple[int, int]:
        """Axial coordinates as a tuple."""
        return (self.q, self.r)

    @property
    def cube_coords(self) -> tuple[int, int, int]:
        """Cube coordinates derived from axial. Satisfies x + y + z = 0."""
        return (self.q, -self.q - self.r, self.r)


def parse_hex_id(hex_id: str) -> HexCell:
    """Parse ``"res:q:r"`` into a :class:`HexCell`. Raises ValueError."""
    try:
        res, q, r = (int(part) for part in hex_id.split(":"))
    except ValueError:
        raise ValueError(f"Malformed hex id: {hex_id!r}") from None
    return HexCell(q=q, r=r, resolution=res)


def hex_size(resolution: int) -> float:
    """Circumradius in degrees at a resolution."""
    return BASE_HEX_SIZE / (2 ** resolution)


def _normalize_lng(lng: float) -> float:
    return ((lng + 180.0) % 360.0) - 180.0


def _cube_round(qf: float, rf: float) -> tuple[int, int]:
    """Round fractional axial coordinates to the containing hex."""
    xf, zf = qf, rf
    yf = -xf - zf
    rx, ry, rz = round(xf), round(yf), round(zf)
    dx, dy, dz = abs(rx - xf), abs(ry - yf), abs(rz - zf)
    if dx > dy and dx > dz:
        rx = -ry - rz
    elif dy > dz:
        ry = -rx - rz
    else:
        rz = -rx - ry
    return int(rx), int(rz)


class HexIndex:
    """Flat-top hexagon tessellation at a fixed resolution.

    Supports point lookup, centroids, boundaries, neighbor queries and hex
    distance. Uses the standard 6 axial directions.
    """

    # Flat-top axial hex directions (6 neighbors).
    DIRECTIONS: list[tuple[int, int]] = [
        (1, 0),
        (1, -1),
        (0, -1),
        (-1, 0),
        (-1, 1),
        (0, 1),
    ]

    def __init__(self, resolution: int = 7) -> None:
        if resolution < 0:
            raise ValueError("resolution must be non-negative")
        self.resolution = resolution
        self.size = hex_size(resolution)

    def _cell(self, hex_id: str) -> HexCell:
        cell = parse_hex_id(hex_id)
        if cell.resolution != self.resolution:
            raise ValueError(
                f"Hex {hex_id} has resolution {cell.resolution}, index uses {self.resolution}"
            )
        return cell

    # ---- Point lookup ----

    def latlng_to_hex(self, lat: float, lng: float) -> str:
        """Id of the hexagon containing a coordinate."""
        x = _normalize_lng(lng)
        y = lat
        qf = (2.0 / 3.0 * x) / self.size
        rf = (-1.0 / 3.0 * x + _SQRT3 / 3.0 * y) / self.size
        q, r = _cube_round(qf, rf)
        return HexCell(q, r, self.resolution).hex_id

    def hex_to_latlng(self, hex_id: str) -> tuple[float, float]:
        """Centroid of a hexagon as (lat, lng)."""
        cell = self._cell(hex_id)
        x = self.size * 1.5 * cell.q
        y = self.size * _SQRT3 * (cell.r + cell.q / 2.0)
        return (max(-90.0, min(90.0, y)), x)

    # ---- Geometry ----

    def hex_boundary(self, hex_id: str) -> list[tuple[float, float]]:
        """Six corners as ``(lng, lat)`` pairs, latitude clipped to the poles."""
        cell = self._cell(hex_id)
        lng_c = self.size * 1.5 * cell.q
        y_c = self.size * _SQRT3 * (cell.r + cell.q / 2.0)
        corners: list[tuple[float, float]] = []
        for i in range(6):
            angle = math.radians(60.0 * i)
            lng = lng_c + self.size * math.cos(angle)
            lat = max(-90.0, min(90.0, y_c + self.size * math.sin(angle)))
            corners.append((lng, lat))
        return corners

    def hex_polygon(self, hex_id: str) -> Polygon:
        return Polygon(self.hex_boundary(hex_id))

    def hex_bounds(self, hex_id: str) -> Bounds:
        """Bounding rectangle of a hexagon, clipped to the world."""
        corners = self.hex_boundary(hex_id)
        lngs = [c[0] for c in corners]
        lats = [c[1] for c in corners]
        return Bounds(
            lat_min=max(-90.0, min(lats)),
            lat_max=min(90.0, max(lats)),
            lon_min=max(-180.0, min(lngs)),
            lon_max=min(180.0, max(lngs)),
        )

    # ---- Neighbor queries ----

    def neighbors(self, hex_id: str) -> list[str]:
        """Ids of the six adjacent hexagons."""
        cell = self._cell(hex_id)
        return [
            HexCell(cell.q + dq, cell.r + dr, self.resolution).hex_id
            for dq, dr in self.DIRECTIONS
        ]

    # ---- Distance ----

    @staticmethod
    def hex_distance(a: tuple[int, int], b: tuple[int, int]) -> int:
        """Calculate the hex distance between two axial coordinates.

        Converts to cube coordinates and takes the maximum absolute
        difference across the three axes.
        """
        ax, az = a
        ay = -ax - az
        bx, bz = b
        by = -bx - bz
        return max(abs(ax - bx), abs(ay - by), abs(az - bz))

    def distance(self, hex_a: str, hex_b: str) -> int:
        return self.hex_distance(self._cell(hex_a).coords, self._cell(hex_b).coords)
