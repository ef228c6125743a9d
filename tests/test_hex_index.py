"""Tests for the global hexagonal index."""

import pytest

from nodeforge.core.hex_index import HexCell, HexIndex, hex_size, parse_hex_id


class TestHexCell:
    def test_hex_id(self):
        assert HexCell(3, -2, 7).hex_id == "7:3:-2"

    def test_cube_coords_sum_to_zero(self):
        assert sum(HexCell(5, -9, 7).cube_coords) == 0

    def test_parse(self):
        assert parse_hex_id("7:3:-2") == HexCell(3, -2, 7)

    def test_parse_malformed(self):
        with pytest.raises(ValueError):
            parse_hex_id("7:3")
        with pytest.raises(ValueError):
            parse_hex_id("a:b:c")


class TestHexIndex:
    def test_size_halves_per_resolution(self):
        assert hex_size(1) == pytest.approx(hex_size(0) / 2)

    def test_negative_resolution(self):
        with pytest.raises(ValueError):
            HexIndex(-1)

    def test_origin(self):
        assert HexIndex(7).latlng_to_hex(0.0, 0.0) == "7:0:0"

    def test_roundtrip_centroid(self):
        index = HexIndex(7)
        hex_id = index.latlng_to_hex(40.71, -74.0)
        lat, lng = index.hex_to_latlng(hex_id)
        assert index.latlng_to_hex(lat, lng) == hex_id
        assert abs(lat - 40.71) < index.size
        assert abs(lng + 74.0) < index.size

    def test_nearby_points_share_hex(self):
        index = HexIndex(7)
        assert index.latlng_to_hex(51.5000, -0.1300) == index.latlng_to_hex(51.5001, -0.1301)

    def test_longitude_normalized(self):
        index = HexIndex(5)
        assert index.latlng_to_hex(10.0, 190.0) == index.latlng_to_hex(10.0, -170.0)

    def test_boundary_has_six_corners(self):
        index = HexIndex(3)
        assert len(index.hex_boundary("3:1:1")) == 6

    def test_polygon_contains_centroid(self):
        from shapely.geometry import Point

        index = HexIndex(3)
        lat, lng = index.hex_to_latlng("3:2:-1")
        assert index.hex_polygon("3:2:-1").contains(Point(lng, lat))

    def test_bounds_contain_centroid(self):
        index = HexIndex(3)
        lat, lng = index.hex_to_latlng("3:2:-1")
        assert index.hex_bounds("3:2:-1").contains(lat, lng)

    def test_wrong_resolution(self):
        with pytest.raises(ValueError):
            HexIndex(7).hex_to_latlng("6:0:0")


class TestNeighbors:
    def test_six_neighbors(self):
        index = HexIndex(7)
        neighbors = index.neighbors("7:0:0")
        assert len(set(neighbors)) == 6
        assert all(index.distance("7:0:0", n) == 1 for n in neighbors)

    def test_hex_distance(self):
        assert HexIndex.hex_distance((0, 0), (3, -1)) == 3
        assert HexIndex.hex_distance((2, 2), (2, 2)) == 0

    def test_neighbor_centroids_map_back(self):
        index = HexIndex(6)
        for n in index.neighbors("6:4:4"):
            lat, lng = index.hex_to_latlng(n)
            assert index.latlng_to_hex(lat, lng) == n
