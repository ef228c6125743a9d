"""
SQLite-backed persistence for spawned nodes, phases and surge audit logs.

Node and node-type inserts are bulk ``INSERT OR IGNORE`` statements keyed
by deterministic ids, so replaying a step after a partial failure is safe.
Every write runs in one transaction; on failure the transaction is rolled
back and :class:`PersistenceError` is raised for the job runner to retry.

The same database also holds the activity tables read through
:class:`SqliteActivityStore`.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable

import numpy as np

from nodeforge.core.activity import ActivityBin, ActivityStore
from nodeforge.core.errors import PersistenceError
from nodeforge.core.node_types import NodeTypeRecord
from nodeforge.core.spawner import NodeRecord
from nodeforge.core.surge import SurgeAuditRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

def _json_fallback(obj: Any) -> Any:
    """Handle numpy scalars and arrays in audit payloads."""
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS node_types (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    rarity TEXT NOT NULL,
    phase INTEGER NOT NULL,
    base_yield_per_minute REAL NOT NULL,
    lock_in_minutes INTEGER NOT NULL,
    max_miners INTEGER NOT NULL,
    description TEXT NOT NULL,
    extended_lore TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS nodes (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    type_id TEXT NOT NULL,
    phase INTEGER,
    echo_intensity REAL NOT NULL,
    lore TEXT NOT NULL,
    rarity TEXT NOT NULL,
    cell_id TEXT,
    fallback INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 1,
    gen_event TEXT NOT NULL,
    hex_id TEXT,
    spawn_cycle TEXT,
    activity_score REAL,
    hex_rank INTEGER,
    expires_at TEXT,
    base_multiplier REAL,
    territory_id TEXT,
    is_stabilized INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_nodes_phase ON nodes(phase);
CREATE INDEX IF NOT EXISTS idx_nodes_spawn_cycle ON nodes(spawn_cycle);

CREATE TABLE IF NOT EXISTS phases (
    phase INTEGER PRIMARY KEY,
    total_pioneers INTEGER NOT NULL,
    nodes_spawned INTEGER NOT NULL,
    game_event_type TEXT NOT NULL,
    narrative TEXT,
    started_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS surge_logs (
    spawn_cycle TEXT PRIMARY KEY,
    total_spawned INTEGER NOT NULL,
    hexes_considered INTEGER NOT NULL,
    zero_activity_fallback INTEGER NOT NULL,
    diversity_penalty_hex_count INTEGER NOT NULL,
    hexes_used INTEGER NOT NULL DEFAULT 0,
    top_hexes_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activity_bins (
    lat_bin INTEGER NOT NULL,
    lng_bin INTEGER NOT NULL,
    activity REAL NOT NULL,
    PRIMARY KEY (lat_bin, lng_bin)
);

CREATE TABLE IF NOT EXISTS activity_snapshots (
    snapshot_date TEXT NOT NULL,
    hex_id TEXT NOT NULL,
    score REAL NOT NULL,
    PRIMARY KEY (snapshot_date, hex_id)
);

CREATE TABLE IF NOT EXISTS mining_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    status TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS territories (
    hex_id TEXT PRIMARY KEY,
    guild_id TEXT NOT NULL
);
"""

_NODE_COLUMNS = (
    "id", "name", "latitude", "longitude", "type_id", "phase", "echo_intensity",
    "lore", "rarity", "cell_id", "fallback", "attempts", "gen_event", "hex_id",
    "spawn_cycle", "activity_score", "hex_rank", "expires_at", "base_multiplier",
    "territory_id", "created_at",
)

_NODE_TYPE_COLUMNS = (
    "id", "name", "rarity", "phase", "base_yield_per_minute", "lock_in_minutes",
    "max_miners", "description", "extended_lore", "created_at",
)


def _node_row(node: NodeRecord, created_at: str) -> tuple[Any, ...]:
    d = node.to_dict()
    d["fallback"] = int(node.fallback)
    d["created_at"] = created_at
    return tuple(d[c] for c in _NODE_COLUMNS)


def _node_type_row(node_type: NodeTypeRecord, created_at: str) -> tuple[Any, ...]:
    d = node_type.to_dict()
    d["created_at"] = created_at
    return tuple(d[c] for c in _NODE_TYPE_COLUMNS)


# ---------------------------------------------------------------------------
# NodeStore
# ---------------------------------------------------------------------------

class NodeStore:
    """SQLite store for node types, nodes, phases and surge logs.

    Thread-safety: uses ``check_same_thread=False`` so the job thread pool
    and FastAPI's worker threads can share it; statements are serialized
    by a connection lock.
    """

    def __init__(self, db_path: str = "data/nodeforge.db") -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            if db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to open database at {db_path}: {exc}") from exc

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    # ---- Write operations ----

    def insert_node_types(self, node_types: Iterable[NodeTypeRecord]) -> int:
        """Bulk insert; existing ids are skipped. Returns rows inserted."""
        now = _now()
        rows = [_node_type_row(t, now) for t in node_types]
        return self.transaction(
            "insert node types",
            lambda cur: self._insert_many(cur, "node_types", _NODE_TYPE_COLUMNS, rows),
        )

    def insert_nodes(self, nodes: Iterable[NodeRecord]) -> int:
        """Bulk insert in one transaction; existing ids are skipped."""
        now = _now()
        rows = [_node_row(n, now) for n in nodes]
        return self.transaction(
            "insert nodes",
            lambda cur: self._insert_many(cur, "nodes", _NODE_COLUMNS, rows),
        )

    def insert_surge_cycle(self, nodes: Iterable[NodeRecord], audit: SurgeAuditRecord) -> int:
        """Write surge nodes and the cycle's audit record atomically."""
        now = _now()
        rows = [_node_row(n, now) for n in nodes]

        def work(cur: sqlite3.Cursor) -> int:
            inserted = self._insert_many(cur, "nodes", _NODE_COLUMNS, rows)
            self._insert_audit(cur, audit, now)
            return inserted

        inserted = self.transaction(f"persist surge cycle {audit.spawn_cycle}", work)
        logger.info(
            "Persisted surge cycle %s: %d new nodes", audit.spawn_cycle, inserted,
        )
        return inserted

    def record_phase(
        self,
        phase: int,
        total_pioneers: int,
        nodes_spawned: int,
        game_event_type: str,
        narrative: str | None = None,
    ) -> None:
        def work(cur: sqlite3.Cursor) -> int:
            cur.execute(
                """
                INSERT INTO phases
                    (phase, total_pioneers, nodes_spawned, game_event_type, narrative, started_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(phase) DO UPDATE SET
                    total_pioneers = excluded.total_pioneers,
                    nodes_spawned = excluded.nodes_spawned,
                    game_event_type = excluded.game_event_type,
                    narrative = excluded.narrative
                """,
                (phase, total_pioneers, nodes_spawned, game_event_type, narrative, _now()),
            )
            return cur.rowcount

        self.transaction(f"record phase {phase}", work)

    def cleanup_expired_surges(
        self,
        today: date,
        log_retention_days: int = 30,
        snapshot_retention_days: int = 14,
    ) -> dict[str, int]:
        """Delete expired unstabilized surge nodes and stale snapshots/logs."""
        cycle = today.isoformat()
        snapshot_cutoff = (today - timedelta(days=snapshot_retention_days)).isoformat()
        log_cutoff = (today - timedelta(days=log_retention_days)).isoformat()
        counts: dict[str, int] = {}

        def work(cur: sqlite3.Cursor) -> int:
            cur.execute(
                "DELETE FROM nodes WHERE spawn_cycle IS NOT NULL AND spawn_cycle < ? AND is_stabilized = 0",
                (cycle,),
            )
            counts["nodes_deleted"] = cur.rowcount
            cur.execute(
                "DELETE FROM activity_snapshots WHERE snapshot_date < ?", (snapshot_cutoff,),
            )
            counts["snapshots_deleted"] = cur.rowcount
            cur.execute("DELETE FROM surge_logs WHERE spawn_cycle < ?", (log_cutoff,))
            counts["logs_deleted"] = cur.rowcount
            return sum(counts.values())

        self.transaction("clean up expired surges", work)
        logger.info(
            "Surge cleanup for %s: %d nodes, %d snapshots, %d logs removed",
            cycle, counts["nodes_deleted"], counts["snapshots_deleted"], counts["logs_deleted"],
        )
        return counts

    # ---- Read operations ----

    def get_phase(self, phase: int) -> dict[str, Any] | None:
        rows = self.fetch_all(
            """
            SELECT phase, total_pioneers, nodes_spawned, game_event_type, narrative, started_at
            FROM phases WHERE phase = ?
            """,
            (phase,),
        )
        if not rows:
            return None
        row = rows[0]
        return {
            "phase": row[0],
            "total_pioneers": row[1],
            "nodes_spawned": row[2],
            "game_event_type": row[3],
            "narrative": row[4],
            "started_at": row[5],
        }

    def latest_phase(self) -> int:
        """Highest recorded phase, or 0 before genesis."""
        value = self.fetch_all("SELECT MAX(phase) FROM phases")[0][0]
        return int(value) if value is not None else 0

    def get_surge_log(self, spawn_cycle: str) -> SurgeAuditRecord | None:
        rows = self.fetch_all(
            """
            SELECT spawn_cycle, total_spawned, hexes_considered, zero_activity_fallback,
                   diversity_penalty_hex_count, hexes_used, top_hexes_json
            FROM surge_logs WHERE spawn_cycle = ?
            """,
            (spawn_cycle,),
        )
        if not rows:
            return None
        row = rows[0]
        return SurgeAuditRecord(
            spawn_cycle=row[0],
            total_spawned=row[1],
            hexes_considered=row[2],
            zero_activity_fallback=bool(row[3]),
            diversity_penalty_hex_count=row[4],
            hexes_used=row[5],
            top_hexes=json.loads(row[6]),
        )

    def count_nodes(
        self,
        phase: int | None = None,
        spawn_cycle: str | None = None,
        gen_event: str | None = None,
    ) -> int:
        where, params = self._filters(phase, spawn_cycle, gen_event)
        return int(self.fetch_all(f"SELECT COUNT(*) FROM nodes{where}", params)[0][0])

    def count_node_types(self, phase: int | None = None) -> int:
        if phase is None:
            return int(self.fetch_all("SELECT COUNT(*) FROM node_types")[0][0])
        return int(self.fetch_all("SELECT COUNT(*) FROM node_types WHERE phase = ?", (phase,))[0][0])

    def list_nodes(
        self,
        phase: int | None = None,
        spawn_cycle: str | None = None,
        gen_event: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        where, params = self._filters(phase, spawn_cycle, gen_event)
        columns = _NODE_COLUMNS[:-1] + ("is_stabilized",)
        sql = f"SELECT {', '.join(columns)} FROM nodes{where} ORDER BY rowid"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (int(limit),)
        rows = self.fetch_all(sql, params)
        result = []
        for r in rows:
            d = dict(zip(columns, r))
            d["fallback"] = bool(d["fallback"])
            d["is_stabilized"] = bool(d["is_stabilized"])
            result.append(d)
        return result

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ---- Transactions ----

    def transaction(self, label: str, work: Callable[[sqlite3.Cursor], int]) -> int:
        """Run ``work(cursor)`` in one transaction. Rolls back on failure."""
        if self._conn is None:
            raise PersistenceError(f"Cannot {label}: database is closed")
        with self._lock:
            try:
                cur = self._conn.cursor()
                result = work(cur)
                self._conn.commit()
                return result
            except sqlite3.Error as exc:
                self._conn.rollback()
                logger.error("Failed to %s, transaction rolled back", label, exc_info=True)
                raise PersistenceError(f"Failed to {label}: {exc}") from exc

    def fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        if self._conn is None:
            raise PersistenceError("Database is closed")
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(f"Database read failed: {exc}") from exc

    def _insert_many(
        self,
        cur: sqlite3.Cursor,
        table: str,
        columns: tuple[str, ...],
        rows: list[tuple[Any, ...]],
    ) -> int:
        if not rows:
            return 0
        before = self._conn.total_changes
        placeholders = ", ".join("?" for _ in columns)
        cur.executemany(
            f"INSERT OR IGNORE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            rows,
        )
        return self._conn.total_changes - before

    def _insert_audit(self, cur: sqlite3.Cursor, audit: SurgeAuditRecord, created_at: str) -> None:
        cur.execute(
            """
            INSERT INTO surge_logs
                (spawn_cycle, total_spawned, hexes_considered, zero_activity_fallback,
                 diversity_penalty_hex_count, hexes_used, top_hexes_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(spawn_cycle) DO UPDATE SET
                total_spawned = excluded.total_spawned,
                hexes_considered = excluded.hexes_considered,
                zero_activity_fallback = excluded.zero_activity_fallback,
                diversity_penalty_hex_count = excluded.diversity_penalty_hex_count,
                hexes_used = excluded.hexes_used,
                top_hexes_json = excluded.top_hexes_json
            """,
            (
                audit.spawn_cycle,
                int(audit.total_spawned),
                int(audit.hexes_considered),
                int(audit.zero_activity_fallback),
                int(audit.diversity_penalty_hex_count),
                int(audit.hexes_used),
                json.dumps(audit.top_hexes, default=_json_fallback),
                created_at,
            ),
        )

    @staticmethod
    def _filters(
        phase: int | None, spawn_cycle: str | None, gen_event: str | None,
    ) -> tuple[str, tuple[Any, ...]]:
        clauses: list[str] = []
        params: list[Any] = []
        if phase is not None:
            clauses.append("phase = ?")
            params.append(phase)
        if spawn_cycle is not None:
            clauses.append("spawn_cycle = ?")
            params.append(spawn_cycle)
        if gen_event is not None:
            clauses.append("gen_event = ?")
            params.append(gen_event)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, tuple(params)


# ---------------------------------------------------------------------------
# SqliteActivityStore
# ---------------------------------------------------------------------------

class SqliteActivityStore(ActivityStore):
    """Activity aggregates read from the node store's database."""

    def __init__(self, store: NodeStore) -> None:
        self.store = store

    # ---- ActivityStore ----

    def bin_activity(self) -> list[ActivityBin]:
        rows = self.store.fetch_all(
            "SELECT lat_bin, lng_bin, activity FROM activity_bins ORDER BY lat_bin, lng_bin",
        )
        return [ActivityBin(int(r[0]), int(r[1]), float(r[2])) for r in rows]

    def hex_scores(self, cycle: str) -> dict[str, float]:
        rows = self.store.fetch_all(
            "SELECT hex_id, score FROM activity_snapshots WHERE snapshot_date = ?", (cycle,),
        )
        return {r[0]: float(r[1]) for r in rows}

    def completed_session_count(self) -> int:
        row = self.store.fetch_all(
            "SELECT COUNT(*) FROM mining_sessions WHERE status = 'COMPLETED'",
        )[0]
        return int(row[0])

    def controlled_territories(self) -> dict[str, str]:
        rows = self.store.fetch_all("SELECT hex_id, guild_id FROM territories")
        return {r[0]: r[1] for r in rows}

    # ---- Ingest (fed by the game backend) ----

    def add_bin_activity(self, bins: Iterable[ActivityBin]) -> None:
        rows = [(b.lat_bin, b.lng_bin, float(b.activity)) for b in bins]

        def work(cur: sqlite3.Cursor) -> int:
            cur.executemany(
                """
                INSERT INTO activity_bins (lat_bin, lng_bin, activity) VALUES (?, ?, ?)
                ON CONFLICT(lat_bin, lng_bin) DO UPDATE SET activity = activity + excluded.activity
                """,
                rows,
            )
            return len(rows)

        self.store.transaction("add bin activity", work)

    def record_hex_scores(self, cycle: str, scores: dict[str, float]) -> None:
        rows = [(cycle, h, float(s)) for h, s in scores.items()]

        def work(cur: sqlite3.Cursor) -> int:
            cur.executemany(
                """
                INSERT INTO activity_snapshots (snapshot_date, hex_id, score) VALUES (?, ?, ?)
                ON CONFLICT(snapshot_date, hex_id) DO UPDATE SET score = excluded.score
                """,
                rows,
            )
            return len(rows)

        self.store.transaction(f"record activity snapshot {cycle}", work)

    def record_completed_sessions(self, count: int) -> None:
        now = _now()

        def work(cur: sqlite3.Cursor) -> int:
            cur.executemany(
                "INSERT INTO mining_sessions (status, completed_at) VALUES ('COMPLETED', ?)",
                [(now,)] * count,
            )
            return count

        self.store.transaction("record completed sessions", work)

    def set_territory(self, hex_id: str, guild_id: str) -> None:
        def work(cur: sqlite3.Cursor) -> int:
            cur.execute(
                """
                INSERT INTO territories (hex_id, guild_id) VALUES (?, ?)
                ON CONFLICT(hex_id) DO UPDATE SET guild_id = excluded.guild_id
                """,
                (hex_id, guild_id),
            )
            return 1

        self.store.transaction(f"set territory {hex_id}", work)
