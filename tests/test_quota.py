"""Tests for rarity quotas and phase budgets."""

import pytest

from nodeforge.core.errors import InvalidInputError
from nodeforge.core.grid import Bounds, WorldGrid
from nodeforge.core.quota import (
    RARITY_ORDER,
    Rarity,
    allocate_quotas,
    effective_pioneers_for_phase,
    normalize_probabilities,
    phase_threshold,
    quota_totals,
    split_count,
)
from nodeforge.core.region_metrics import RegionMetric, RegionMetricsGenerator


def _metric(cell_id, count):
    return RegionMetric(cell_id, Bounds(0.0, 1.0, 0.0, 1.0), count, 1.0)


class TestRarity:
    def test_rank(self):
        assert [r.rank for r in RARITY_ORDER] == [1, 2, 3, 4, 5]

    def test_value(self):
        assert Rarity("Legendary") is Rarity.LEGENDARY


class TestSplitCount:
    def test_fifty_pioneers(self):
        table = normalize_probabilities({"Common": 0.5, "Uncommon": 0.25, "Rare": 0.15,
                                         "Epic": 0.09, "Legendary": 0.01})
        counts = split_count(50, table)
        assert [counts[r] for r in RARITY_ORDER] == [25, 13, 8, 4, 0]

    def test_hundred_pioneers_exact(self):
        counts = split_count(100, normalize_probabilities({"Common": 0.5, "Uncommon": 0.25,
                                                           "Rare": 0.15, "Epic": 0.09,
                                                           "Legendary": 0.01}))
        assert [counts[r] for r in RARITY_ORDER] == [50, 25, 15, 9, 1]

    def test_zero(self):
        counts = split_count(0, normalize_probabilities({"Common": 1.0}))
        assert sum(counts.values()) == 0

    def test_sum_conserved(self):
        table = normalize_probabilities({"Rare": 0.8, "Epic": 0.15, "Legendary": 0.05})
        for n in range(1, 60):
            assert sum(split_count(n, table).values()) == n


class TestNormalize:
    def test_missing_tiers_are_zero(self):
        table = normalize_probabilities({"Rare": 1.0})
        assert list(table) == RARITY_ORDER
        assert table[Rarity.COMMON] == 0.0

    def test_unknown_tier(self):
        with pytest.raises(InvalidInputError):
            normalize_probabilities({"Mythic": 1.0})


class TestAllocateQuotas:
    def test_genesis_two_cells(self):
        quotas = allocate_quotas([_metric("0_0", 50), _metric("0_1", 50)])
        for quota in quotas:
            assert [quota.counts[r] for r in RARITY_ORDER] == [25, 13, 8, 4, 0]
            assert quota.total == 50
        assert quota_totals(quotas) == {
            Rarity.COMMON: 50, Rarity.UNCOMMON: 26, Rarity.RARE: 16,
            Rarity.EPIC: 8, Rarity.LEGENDARY: 0,
        }

    def test_entries_skip_zero_tiers(self):
        quota = allocate_quotas([_metric("0_0", 50)])[0]
        assert [r for r, _ in quota.entries()] == RARITY_ORDER[:4]

    def test_order_preserved(self):
        quotas = allocate_quotas([_metric("b", 1), _metric("a", 2)])
        assert [q.cell_id for q in quotas] == ["b", "a"]

    def test_to_dict(self):
        d = allocate_quotas([_metric("0_0", 4)])[0].to_dict()
        assert d["counts"]["Common"] == 2
        assert sum(d["counts"].values()) == 4

    def test_global_frequencies_at_scale(self):
        metrics = RegionMetricsGenerator(WorldGrid()).generate(100_000, phase=1)
        totals = quota_totals(allocate_quotas(metrics))
        assert sum(totals.values()) == 100_000
        expected = {
            Rarity.COMMON: 0.50, Rarity.UNCOMMON: 0.25, Rarity.RARE: 0.15,
            Rarity.EPIC: 0.09, Rarity.LEGENDARY: 0.01,
        }
        for rarity, p in expected.items():
            assert totals[rarity] / 100_000 == pytest.approx(p, abs=0.01)
        assert totals[Rarity.LEGENDARY] > 0


class TestPhaseBudget:
    def test_effective_pioneers_halves(self):
        assert effective_pioneers_for_phase(1, 12_000_000) == 6_000_000
        assert effective_pioneers_for_phase(2, 12_000_000) == 3_000_000
        assert effective_pioneers_for_phase(3, 12_000_000) == 1_500_000

    def test_minimum_one(self):
        assert effective_pioneers_for_phase(6, 3) == 1

    def test_invalid(self):
        with pytest.raises(InvalidInputError):
            effective_pioneers_for_phase(0, 100)
        with pytest.raises(InvalidInputError):
            effective_pioneers_for_phase(1, 0)

    def test_threshold(self):
        assert phase_threshold(1) == 0
        assert phase_threshold(2) == 1000
        assert phase_threshold(3) == 2000
        assert phase_threshold(4, base=500, growth=3.0) == 4500
