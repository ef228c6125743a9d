"""Tests for placement telemetry."""

from nodeforge.core.points import GeoPoint, Placement
from nodeforge.metrics.collector import PlacementTelemetry


def _placement(attempts, fallback=False):
    return Placement(GeoPoint(0.0, 0.0), attempts, fallback, attempts - 1, attempts)


class TestPlacementTelemetry:
    def test_empty(self):
        t = PlacementTelemetry()
        assert t.mean_attempts == 0.0
        assert t.fallback_rate == 0.0

    def test_record(self):
        t = PlacementTelemetry()
        t.record(_placement(1), "a")
        t.record(_placement(3), "a")
        t.record(_placement(50, fallback=True), "b")
        assert t.placements == 3
        assert t.fallbacks == 1
        assert t.max_attempts_seen == 50
        assert t.mean_attempts == 18.0
        assert t.attempt_histogram == {1: 1, 3: 1, 50: 1}
        assert t.fallback_regions == ["b"]

    def test_merge(self):
        a = PlacementTelemetry()
        a.record(_placement(2), "x")
        b = PlacementTelemetry()
        b.record(_placement(2), "y")
        b.record(_placement(50, fallback=True), "y")
        a.merge(b)
        assert a.placements == 3
        assert a.attempt_histogram == {2: 2, 50: 1}
        assert a.fallback_rate == 1 / 3

    def test_to_dict(self):
        t = PlacementTelemetry()
        t.record(_placement(50, fallback=True), "r1")
        t.record(_placement(50, fallback=True), "r1")
        d = t.to_dict()
        assert d["fallbacks"] == 2
        assert d["attempt_histogram"] == {"50": 2}
        assert d["fallback_regions"] == ["r1"]
