"""Tests for the SQLite node store and activity store."""

import sqlite3
from datetime import date

import pytest

from nodeforge.api.persistence import NodeStore, SqliteActivityStore
from nodeforge.core.activity import ActivityBin
from nodeforge.core.errors import PersistenceError
from nodeforge.core.node_types import generate_node_types
from nodeforge.core.quota import Rarity
from nodeforge.core.spawner import NodeRecord, node_id
from nodeforge.core.surge import SURGE_EVENT, SurgeAuditRecord


def _phase_node(i, phase=1):
    return NodeRecord(
        id=node_id(phase, "0_0", "Common", i),
        name=f"Node {i}",
        latitude=1.0 + i,
        longitude=2.0,
        type_id="type",
        phase=phase,
        echo_intensity=0.5,
        lore="lore",
        rarity=Rarity.COMMON,
        cell_id="0_0",
    )


def _surge_node(cycle, rank):
    return NodeRecord(
        id=node_id("surge", cycle, rank),
        name=f"Surge {rank}",
        latitude=0.0,
        longitude=0.0,
        type_id="type",
        phase=None,
        echo_intensity=1.0,
        lore="lore",
        rarity=Rarity.RARE,
        gen_event=SURGE_EVENT,
        hex_id="7:0:0",
        spawn_cycle=cycle,
        hex_rank=rank,
    )


def _audit(cycle, total=2):
    return SurgeAuditRecord(
        spawn_cycle=cycle,
        total_spawned=total,
        hexes_considered=1,
        zero_activity_fallback=False,
        diversity_penalty_hex_count=0,
        top_hexes=[{"hex_id": "7:0:0", "score": 5.0, "rank": 1, "nodes_spawned": total}],
        hexes_used=1,
    )


class FailingAuditStore(NodeStore):
    def _insert_audit(self, cur, audit, created_at):
        raise sqlite3.OperationalError("disk I/O error")


class TestNodeTypes:
    def test_insert_and_skip_duplicates(self, store):
        types = generate_node_types(1)
        assert store.insert_node_types(types) == 5
        assert store.insert_node_types(types) == 0
        assert store.count_node_types() == 5
        assert store.count_node_types(phase=2) == 0


class TestNodes:
    def test_insert(self, store):
        assert store.insert_nodes([_phase_node(i) for i in range(3)]) == 3
        assert store.count_nodes(phase=1) == 3

    def test_duplicate_ids_skipped(self, store):
        store.insert_nodes([_phase_node(0), _phase_node(1)])
        assert store.insert_nodes([_phase_node(1), _phase_node(2)]) == 1
        assert store.count_nodes() == 3

    def test_empty_insert(self, store):
        assert store.insert_nodes([]) == 0

    def test_list_nodes(self, store):
        store.insert_nodes([_phase_node(i) for i in range(3)])
        rows = store.list_nodes(phase=1, limit=2)
        assert len(rows) == 2
        assert rows[0]["name"] == "Node 0"
        assert rows[0]["rarity"] == "Common"
        assert rows[0]["fallback"] is False
        assert rows[0]["is_stabilized"] is False

    def test_filters(self, store):
        store.insert_nodes([_phase_node(0, phase=1), _phase_node(0, phase=2)])
        store.insert_surge_cycle([_surge_node("2025-01-15", 1)], _audit("2025-01-15", 1))
        assert store.count_nodes(phase=2) == 1
        assert store.count_nodes(gen_event=SURGE_EVENT) == 1
        assert store.count_nodes(spawn_cycle="2025-01-15") == 1
        assert store.count_nodes() == 3


class TestPhases:
    def test_latest_phase_before_genesis(self, store):
        assert store.latest_phase() == 0
        assert store.get_phase(1) is None

    def test_record_phase(self, store):
        store.record_phase(1, 100, 100, "Genesis", "It begins.")
        store.record_phase(2, 50, 50, "Threshold")
        assert store.latest_phase() == 2
        phase = store.get_phase(1)
        assert phase["nodes_spawned"] == 100
        assert phase["narrative"] == "It begins."

    def test_record_phase_updates(self, store):
        store.record_phase(1, 100, 10, "Genesis")
        store.record_phase(1, 100, 20, "Genesis", "again")
        assert store.get_phase(1)["nodes_spawned"] == 20


class TestSurgeCycle:
    def test_nodes_and_audit_together(self, store):
        cycle = "2025-01-15"
        inserted = store.insert_surge_cycle(
            [_surge_node(cycle, 1), _surge_node(cycle, 2)], _audit(cycle),
        )
        assert inserted == 2
        log = store.get_surge_log(cycle)
        assert log == _audit(cycle)

    def test_replay_is_idempotent(self, store):
        cycle = "2025-01-15"
        nodes = [_surge_node(cycle, 1), _surge_node(cycle, 2)]
        store.insert_surge_cycle(nodes, _audit(cycle))
        assert store.insert_surge_cycle(nodes, _audit(cycle)) == 0
        assert store.count_nodes(spawn_cycle=cycle) == 2

    def test_missing_log(self, store):
        assert store.get_surge_log("2025-01-01") is None

    def test_failure_rolls_back_nodes(self):
        store = FailingAuditStore(":memory:")
        cycle = "2025-01-15"
        with pytest.raises(PersistenceError):
            store.insert_surge_cycle([_surge_node(cycle, 1)], _audit(cycle, 1))
        assert store.count_nodes() == 0
        assert store.get_surge_log(cycle) is None
        store.close()

    def test_numpy_values_in_top_hexes(self, store):
        import numpy as np

        audit = _audit("2025-01-15")
        audit.top_hexes = [{"hex_id": "7:0:0", "score": np.float64(2.5), "nodes_spawned": np.int64(2)}]
        store.insert_surge_cycle([], audit)
        assert store.get_surge_log("2025-01-15").top_hexes[0]["score"] == 2.5


class TestCleanup:
    def test_expired_unstabilized_removed(self, store):
        store.insert_surge_cycle([_surge_node("2025-01-14", 1), _surge_node("2025-01-14", 2)],
                                 _audit("2025-01-14"))
        store.insert_surge_cycle([_surge_node("2025-01-15", 1)], _audit("2025-01-15", 1))
        store.connection.execute(
            "UPDATE nodes SET is_stabilized = 1 WHERE id = ?", (node_id("surge", "2025-01-14", 2),),
        )
        store.connection.commit()

        counts = store.cleanup_expired_surges(date(2025, 1, 15))
        assert counts["nodes_deleted"] == 1
        assert store.count_nodes(spawn_cycle="2025-01-14") == 1
        assert store.count_nodes(spawn_cycle="2025-01-15") == 1

    def test_phase_nodes_untouched(self, store):
        store.insert_nodes([_phase_node(0)])
        store.cleanup_expired_surges(date(2030, 1, 1))
        assert store.count_nodes() == 1

    def test_old_logs_and_snapshots(self, store):
        activity = SqliteActivityStore(store)
        activity.record_hex_scores("2024-12-01", {"7:0:0": 1.0})
        activity.record_hex_scores("2025-01-14", {"7:0:0": 1.0})
        store.insert_surge_cycle([], _audit("2024-12-01"))
        counts = store.cleanup_expired_surges(date(2025, 1, 15))
        assert counts["snapshots_deleted"] == 1
        assert counts["logs_deleted"] == 1
        assert activity.hex_scores("2025-01-14") == {"7:0:0": 1.0}


class TestClosedStore:
    def test_closed_store_raises(self):
        store = NodeStore(":memory:")
        store.close()
        with pytest.raises(PersistenceError):
            store.insert_nodes([_phase_node(0)])
        with pytest.raises(PersistenceError):
            store.latest_phase()

    def test_bad_path(self, tmp_path):
        with pytest.raises(PersistenceError):
            NodeStore(str(tmp_path / "no-such-dir" / "db.sqlite"))


class TestSqliteActivityStore:
    def test_bins_accumulate(self, store):
        activity = SqliteActivityStore(store)
        activity.add_bin_activity([ActivityBin(1, 2, 3.0)])
        activity.add_bin_activity([ActivityBin(1, 2, 4.0), ActivityBin(0, 0, 1.0)])
        assert activity.bin_activity() == [ActivityBin(0, 0, 1.0), ActivityBin(1, 2, 7.0)]

    def test_hex_scores_per_cycle(self, store):
        activity = SqliteActivityStore(store)
        activity.record_hex_scores("2025-01-15", {"7:0:0": 10.0, "7:1:0": 2.0})
        activity.record_hex_scores("2025-01-15", {"7:0:0": 12.0})
        assert activity.hex_scores("2025-01-15") == {"7:0:0": 12.0, "7:1:0": 2.0}
        assert activity.hex_scores("2025-01-16") == {}

    def test_sessions(self, store):
        activity = SqliteActivityStore(store)
        assert activity.completed_session_count() == 0
        activity.record_completed_sessions(3)
        assert activity.completed_session_count() == 3

    def test_territories(self, store):
        activity = SqliteActivityStore(store)
        activity.set_territory("7:0:0", "guild-a")
        activity.set_territory("7:0:0", "guild-b")
        assert activity.controlled_territories() == {"7:0:0": "guild-b"}
