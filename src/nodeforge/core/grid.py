"""
Fixed equirectangular world grid for the main spawn pipeline.

Cells are addressed by ``"{lat_index}_{lon_index}"`` with index 0 at the
south-west corner (lat -90, lng -180). Each cell carries a deterministic
noise value derived from its id and a salt; no randomness is stored.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Bounds:
    """A lat/lng rectangle in degrees."""

    lat_min: float
    lat_max: float
    lon_min: float
    lon_max: float

    @property
    def centroid(self) -> tuple[float, float]:
        """Midpoint as (lat, lng)."""
        return ((self.lat_min + self.lat_max) / 2.0, (self.lon_min + self.lon_max) / 2.0)

    def contains(self, lat: float, lng: float) -> bool:
        return self.lat_min <= lat <= self.lat_max and self.lon_min <= lng <= self.lon_max

    def intersect(self, other: Bounds) -> Bounds | None:
        """Overlap of two rectangles, or None when they do not overlap."""
        lat_min = max(self.lat_min, other.lat_min)
        lat_max = min(self.lat_max, other.lat_max)
        lon_min = max(self.lon_min, other.lon_min)
        lon_max = min(self.lon_max, other.lon_max)
        if lat_min >= lat_max or lon_min >= lon_max:
            return None
        return Bounds(lat_min, lat_max, lon_min, lon_max)

    def area_km2(self) -> float:
        """Spherical area of the rectangle."""
        earth_radius = 6371.0
        band = math.sin(math.radians(self.lat_max)) - math.sin(math.radians(self.lat_min))
        return earth_radius ** 2 * math.radians(self.lon_max - self.lon_min) * band

    def to_dict(self) -> dict[str, float]:
        return {
            "lat_min": self.lat_min,
            "lat_max": self.lat_max,
            "lon_min": self.lon_min,
            "lon_max": self.lon_max,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Bounds:
        return cls(d["lat_min"], d["lat_max"], d["lon_min"], d["lon_max"])


WORLD_BOUNDS = Bounds(-90.0, 90.0, -180.0, 180.0)


@dataclass(frozen=True)
class Cell:
    """One rectangular grid cell."""

    cell_id: str
    lat_index: int
    lon_index: int
    bounds: Bounds


def cell_noise(cell_id: str, salt: str) -> float:
    """Deterministic pseudo-random value in [0, 1) for a cell id."""
    digest = hashlib.sha256(f"{salt}:{cell_id}".encode("utf-8")).hexdigest()
    return int(digest[:13], 16) / float(16 ** 13)


class WorldGrid:
    """Equirectangular partition of the globe into ``lat_step x lon_step`` cells.

    Cells are enumerated row-major from the south-west corner; this order
    is the tie-break order for every rounding pass.
    """

    def __init__(self, lat_step: float = 10.0, lon_step: float = 10.0) -> None:
        self.lat_step = lat_step
        self.lon_step = lon_step
        self.n_lat = max(1, math.ceil(180.0 / lat_step - 1e-9))
        self.n_lon = max(1, math.ceil(360.0 / lon_step - 1e-9))
        self._cells: list[Cell] = []
        self._by_id: dict[str, Cell] = {}
        for i in range(self.n_lat):
            for j in range(self.n_lon):
                cell = Cell(
                    cell_id=f"{i}_{j}",
                    lat_index=i,
                    lon_index=j,
                    bounds=Bounds(
                        lat_min=-90.0 + i * lat_step,
                        lat_max=min(90.0, -90.0 + (i + 1) * lat_step),
                        lon_min=-180.0 + j * lon_step,
                        lon_max=min(180.0, -180.0 + (j + 1) * lon_step),
                    ),
                )
                self._cells.append(cell)
                self._by_id[cell.cell_id] = cell

    def __len__(self) -> int:
        return len(self._cells)

    @property
    def cells(self) -> list[Cell]:
        return list(self._cells)

    def get(self, cell_id: str) -> Cell:
        try:
            return self._by_id[cell_id]
        except KeyError:
            raise KeyError(f"Unknown cell '{cell_id}'") from None

    def index_of(self, cell_id: str) -> int:
        cell = self.get(cell_id)
        return cell.lat_index * self.n_lon + cell.lon_index

    def cell_for(self, lat: float, lng: float) -> Cell:
        """The cell containing a coordinate (edges belong to the northern/eastern cell)."""
        i = min(self.n_lat - 1, max(0, int(math.floor((lat + 90.0) / self.lat_step))))
        j = min(self.n_lon - 1, max(0, int(math.floor((lng + 180.0) / self.lon_step))))
        return self._cells[i * self.n_lon + j]

    def neighbors(self, cell_id: str) -> list[str]:
        """Ids of the up-to-8 surrounding cells. Longitude wraps, latitude does not."""
        cell = self.get(cell_id)
        result: list[str] = []
        for di in (-1, 0, 1):
            i = cell.lat_index + di
            if i < 0 or i >= self.n_lat:
                continue
            for dj in (-1, 0, 1):
                if di == 0 and dj == 0:
                    continue
                j = (cell.lon_index + dj) % self.n_lon
                neighbor_id = f"{i}_{j}"
                if neighbor_id != cell_id and neighbor_id not in result:
                    result.append(neighbor_id)
        return result
