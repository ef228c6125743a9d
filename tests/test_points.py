"""Tests for the offset-to-coordinate mapping and bounded placement search."""

import math

import pytest

from nodeforge.core.config import SpawnConfig
from nodeforge.core.digits import DigitCursor
from nodeforge.core.grid import WORLD_BOUNDS, Bounds
from nodeforge.core.hex_index import HexIndex
from nodeforge.core.points import (
    GeoPoint,
    generate_point_in_cell,
    generate_point_in_hex,
    generate_with_retry,
    point_from_offset,
    point_in_bounds_from_offset,
)
from nodeforge.metrics.collector import PlacementTelemetry


class TestPointFromOffset:
    def test_deterministic(self, stream):
        assert point_from_offset(1234, stream) == point_from_offset(1234, stream)

    def test_offsets_differ(self, stream):
        assert point_from_offset(1, stream) != point_from_offset(2, stream)

    def test_in_world_range(self, stream):
        for offset in range(200):
            p = point_from_offset(offset, stream)
            assert -90.0 <= p.lat <= 90.0
            assert -180.0 <= p.lng < 180.0

    def test_negative_offset_matches_absolute(self, stream):
        assert point_from_offset(-77, stream) == point_from_offset(77, stream)

    def test_unhashed_offset_reads_digits_directly(self, stream):
        config = SpawnConfig(hash_offsets=False)
        p = point_from_offset(0, stream, config)
        f_lng = int(stream.digits_at(0, 10)) / 1e10
        f_lat = int(stream.digits_at(10, 10)) / 1e10
        assert p.lng == pytest.approx(f_lng * 360.0 - 180.0)
        assert p.lat == pytest.approx(math.degrees(math.asin(f_lat * 2.0 - 1.0)))

    def test_latitude_is_area_uniform(self, stream):
        # Half the sphere's area lies within 30 degrees of the equator.
        lats = [point_from_offset(i, stream).lat for i in range(2000)]
        tropical = sum(1 for lat in lats if abs(lat) < 30.0) / len(lats)
        assert 0.44 < tropical < 0.56

    def test_bounds_respected(self, stream):
        bounds = Bounds(10.0, 20.0, -40.0, -30.0)
        for offset in range(100):
            p = point_in_bounds_from_offset(offset, stream, bounds)
            assert bounds.contains(p.lat, p.lng)


class TestGenerateWithRetry:
    def test_first_accepted(self):
        result = generate_with_retry(5, lambda i: i, lambda v: v == 0, lambda: -1)
        assert (result.value, result.attempts, result.fallback) == (0, 1, False)

    def test_later_accepted(self):
        result = generate_with_retry(5, lambda i: i, lambda v: v == 3, lambda: -1)
        assert result.value == 3
        assert result.attempts == 4
        assert not result.fallback

    def test_exhausted_uses_fallback(self):
        calls = []

        def candidate(i):
            calls.append(i)
            return i

        result = generate_with_retry(5, candidate, lambda v: False, lambda: -1)
        assert result.value == -1
        assert result.attempts == 5
        assert result.fallback
        assert calls == [0, 1, 2, 3, 4]


class TestGeneratePointInCell:
    def test_world_mask_accepts_first_candidate(self, stream, world_mask):
        bounds = Bounds(0.0, 10.0, 0.0, 10.0)
        placement = generate_point_in_cell(bounds, DigitCursor(42), stream, world_mask)
        assert placement.attempts == 1
        assert not placement.fallback
        assert placement.offset == 42
        assert placement.next_offset == 43
        assert bounds.contains(placement.point.lat, placement.point.lng)

    def test_no_land_falls_back_to_centroid(self, stream, unit_square):
        bounds = Bounds(40.0, 50.0, 100.0, 110.0)
        placement = generate_point_in_cell(bounds, DigitCursor(0), stream, unit_square)
        assert placement.fallback
        assert placement.attempts == 50
        assert placement.point == GeoPoint(45.0, 105.0)
        assert placement.next_offset == 50

    def test_attempt_cap_from_config(self, stream, unit_square):
        config = SpawnConfig(max_placement_attempts=7)
        placement = generate_point_in_cell(
            Bounds(40.0, 50.0, 100.0, 110.0), DigitCursor(0), stream, unit_square, config,
        )
        assert placement.attempts == 7

    def test_accepted_points_are_on_land(self, stream, unit_square):
        bounds = Bounds(-1.0, 2.0, -1.0, 2.0)
        for start in range(0, 200, 10):
            placement = generate_point_in_cell(bounds, DigitCursor(start), stream, unit_square)
            if not placement.fallback:
                assert unit_square.is_on_land(placement.point.lng, placement.point.lat)

    def test_deterministic(self, stream, unit_square):
        bounds = Bounds(-1.0, 2.0, -1.0, 2.0)
        a = generate_point_in_cell(bounds, DigitCursor(9), stream, unit_square)
        b = generate_point_in_cell(bounds, DigitCursor(9), stream, unit_square)
        assert a == b

    def test_telemetry_records_fallback(self, stream, unit_square):
        telemetry = PlacementTelemetry()
        generate_point_in_cell(
            Bounds(40.0, 50.0, 100.0, 110.0), DigitCursor(0), stream, unit_square,
            region_id="13_28", telemetry=telemetry,
        )
        assert telemetry.fallbacks == 1
        assert telemetry.fallback_regions == ["cell 13_28"]


class TestGeneratePointInHex:
    def test_point_inside_hex(self, stream, world_mask):
        index = HexIndex(4)
        hex_id = index.latlng_to_hex(48.85, 2.35)
        placement = generate_point_in_hex(hex_id, DigitCursor(5), stream, world_mask, index)
        assert not placement.fallback
        assert index.latlng_to_hex(placement.point.lat, placement.point.lng) == hex_id

    def test_ocean_hex_falls_back_to_centroid(self, stream, unit_square):
        index = HexIndex(4)
        hex_id = index.latlng_to_hex(-40.0, -120.0)
        placement = generate_point_in_hex(hex_id, DigitCursor(0), stream, unit_square, index)
        assert placement.fallback
        lat, lng = index.hex_to_latlng(hex_id)
        assert placement.point == GeoPoint(lat, lng)


def test_world_bounds():
    assert WORLD_BOUNDS.centroid == (0.0, 0.0)
