"""
Land mask: an in-memory landmass polygon collection.

Answers ``is_on_land(lng, lat)`` against GeoJSON Polygon / MultiPolygon
features. Polygons are indexed with an STRtree and prepared once, so the
query is cheap enough for the bounded retry loop in point generation.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Iterable

from shapely.errors import GEOSException
from shapely.geometry import MultiPolygon, Point, Polygon, box, shape
from shapely.prepared import prep
from shapely.strtree import STRtree

from nodeforge.core.cache import DurableCache
from nodeforge.core.errors import SourceLoadError

logger = logging.getLogger(__name__)


def _iter_geometries(geojson: dict[str, Any]) -> Iterable[dict[str, Any]]:
    """Yield raw geometry dicts from a FeatureCollection, Feature or geometry."""
    kind = geojson.get("type")
    if kind == "FeatureCollection":
        for feature in geojson.get("features", []):
            geometry = feature.get("geometry")
            if geometry is not None:
                yield geometry
    elif kind == "Feature":
        if geojson.get("geometry") is not None:
            yield geojson["geometry"]
    else:
        yield geojson


class LandMask:
    """Point-in-polygon oracle over landmass polygons."""

    def __init__(self, polygons: list[Polygon]) -> None:
        self.polygons = [p for p in polygons if not p.is_empty]
        self._prepared = [prep(p) for p in self.polygons]
        self._tree = STRtree(self.polygons) if self.polygons else None

    def __len__(self) -> int:
        return len(self.polygons)

    # ---- Construction ----

    @classmethod
    def from_geojson(cls, geojson: dict[str, Any]) -> LandMask:
        """Build from a GeoJSON mapping. Raises SourceLoadError on bad geometry."""
        polygons: list[Polygon] = []
        try:
            for raw in _iter_geometries(geojson):
                geom = shape(raw)
                if isinstance(geom, Polygon):
                    polygons.append(geom)
                elif isinstance(geom, MultiPolygon):
                    polygons.extend(geom.geoms)
                else:
                    raise SourceLoadError(f"Unsupported land geometry type: {geom.geom_type}")
        except (GEOSException, KeyError, TypeError, ValueError, AttributeError) as exc:
            raise SourceLoadError(f"Invalid land geometry: {exc}") from exc
        return cls(polygons)

    @classmethod
    def from_polygons(cls, rings: list[list[tuple[float, float]]]) -> LandMask:
        """Build from plain ``[(lng, lat), ...]`` exterior rings."""
        return cls([Polygon(ring) for ring in rings])

    @classmethod
    def unit_square(cls) -> LandMask:
        """A single 1x1 degree landmass at lng 0..1, lat 0..1 (test fixture)."""
        return cls([box(0.0, 0.0, 1.0, 1.0)])

    # ---- Queries ----

    def is_on_land(self, lng: float, lat: float) -> bool:
        """True if the point lies inside or on the boundary of any polygon."""
        if self._tree is None:
            return False
        point = Point(lng, lat)
        for idx in self._tree.query(point):
            idx = int(idx)
            if self._prepared[idx].contains(point) or self.polygons[idx].touches(point):
                return True
        return False


class LandMaskSource:
    """Load-once provider of the shared :class:`LandMask`.

    The raw GeoJSON is cached in the durable store so other processes can
    skip the file read.
    """

    CACHE_PREFIX = "land_mask:geojson"

    def __init__(self, path: str | Path | None = None, cache: DurableCache | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self.cache = cache
        self._mask: LandMask | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_mask(cls, mask: LandMask) -> LandMaskSource:
        source = cls()
        source._mask = mask
        return source

    @property
    def cache_key(self) -> str:
        return f"{self.CACHE_PREFIX}:{self.path}"

    @property
    def loaded(self) -> bool:
        return self._mask is not None

    def load(self) -> LandMask:
        with self._lock:
            if self._mask is not None:
                return self._mask
            geojson = self.cache.get(self.cache_key) if self.cache is not None else None
            if geojson is None:
                geojson = self._read()
                if self.cache is not None:
                    self.cache.put(self.cache_key, geojson)
            self._mask = LandMask.from_geojson(geojson)
            logger.info("Land mask loaded: %d polygons", len(self._mask))
            return self._mask

    def get(self) -> LandMask:
        return self._mask if self._mask is not None else self.load()

    def _read(self) -> dict[str, Any]:
        if self.path is None:
            raise SourceLoadError("No land geometry path configured")
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SourceLoadError(f"Cannot read land geometry {self.path}: {exc}") from exc
