"""Data persistence layer for fleet state.

SQLite holds node records, user traffic counters, the online-session table
and the three snapshot series. All data is stored in ~/.nodefleet/ to
survive restarts.
"""

from __future__ import annotations

import json
import os
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .models import (
    Node,
    NodeStat,
    NodeStatus,
    OnlineSession,
    SnapshotSeries,
    StatsSnapshot,
    parse_datetime,
    utcnow,
)


def get_data_dir() -> Path:
    """Get user-persistent data directory.

    Returns ~/.nodefleet/ by default, or NODEFLEET_DATA_DIR env var.
    """
    data_dir = Path(os.environ.get("NODEFLEET_DATA_DIR", Path.home() / ".nodefleet"))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def _iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return parse_datetime(ts).isoformat()


class DataStore:
    """Persistent storage for nodes, users and snapshots.

    Each call opens its own connection, so the store can be shared by worker
    threads.
    """

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir) if data_dir else get_data_dir()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_dir / "fleet.db"
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create database tables if they don't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS nodes (
                    id TEXT PRIMARY KEY,
                    definition JSON NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    status TEXT NOT NULL DEFAULT 'offline',
                    last_error TEXT NOT NULL DEFAULT '',
                    last_sync TEXT,
                    traffic_tx INTEGER NOT NULL DEFAULT 0,
                    traffic_rx INTEGER NOT NULL DEFAULT 0,
                    traffic_updated TEXT,
                    online_users INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    traffic_tx INTEGER NOT NULL DEFAULT 0,
                    traffic_rx INTEGER NOT NULL DEFAULT 0,
                    last_update TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS online_sessions (
                    node_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    connections INTEGER NOT NULL DEFAULT 1,
                    seen_at TEXT NOT NULL,
                    PRIMARY KEY (node_id, user_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    series TEXT NOT NULL,
                    ts TEXT NOT NULL,
                    online INTEGER NOT NULL DEFAULT 0,
                    users INTEGER NOT NULL DEFAULT 0,
                    active_users INTEGER NOT NULL DEFAULT 0,
                    tx INTEGER NOT NULL DEFAULT 0,
                    rx INTEGER NOT NULL DEFAULT 0,
                    nodes_on INTEGER NOT NULL DEFAULT 0,
                    nodes_total INTEGER NOT NULL DEFAULT 0,
                    nodes JSON NOT NULL DEFAULT '[]',
                    UNIQUE (series, ts)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_snapshots_series_ts
                ON snapshots(series, ts DESC)
            """)

    # --- Nodes ---

    def upsert_node(self, node: Node) -> None:
        """Insert or update a node's definition, keeping its runtime state."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO nodes (id, definition, active) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    definition = excluded.definition,
                    active = excluded.active
                """,
                (node.id, json.dumps(node.definition()), int(node.active)),
            )

    def delete_node(self, node_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM nodes WHERE id = ?", (node_id,))
            conn.execute("DELETE FROM online_sessions WHERE node_id = ?", (node_id,))

    def _row_to_node(self, row: sqlite3.Row) -> Node:
        data = json.loads(row["definition"])
        data.update({
            "status": row["status"],
            "last_error": row["last_error"],
            "last_sync": row["last_sync"],
            "traffic_tx": row["traffic_tx"],
            "traffic_rx": row["traffic_rx"],
            "online_users": row["online_users"],
        })
        return Node.from_dict(data)

    def get_node(self, node_id: str) -> Optional[Node]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()
        return self._row_to_node(row) if row else None

    def list_nodes(self, active_only: bool = True) -> List[Node]:
        query = "SELECT * FROM nodes"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_node(row) for row in rows]

    def set_node_status(
        self,
        node_id: str,
        status: NodeStatus,
        last_error: Optional[str] = None,
        last_sync: Optional[datetime] = None,
    ) -> None:
        """Record a status transition (sync orchestrator only)."""
        sets = ["status = ?"]
        params: List[Any] = [NodeStatus(status).value]
        if last_error is not None:
            sets.append("last_error = ?")
            params.append(last_error)
        if last_sync is not None:
            sets.append("last_sync = ?")
            params.append(_iso(last_sync))
        params.append(node_id)
        with self._connect() as conn:
            conn.execute(f"UPDATE nodes SET {', '.join(sets)} WHERE id = ?", params)

    def set_last_error(self, node_id: str, message: str) -> None:
        """Record a soft error note without touching status."""
        with self._connect() as conn:
            conn.execute("UPDATE nodes SET last_error = ? WHERE id = ?", (message, node_id))

    def add_node_traffic(self, node_id: str, tx: int, rx: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE nodes SET
                    traffic_tx = traffic_tx + ?,
                    traffic_rx = traffic_rx + ?,
                    traffic_updated = ?
                WHERE id = ?
                """,
                (int(tx), int(rx), utcnow().isoformat(), node_id),
            )

    def set_online(self, node_id: str, count: int) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE nodes SET online_users = ? WHERE id = ?", (int(count), node_id))

    # --- Online sessions ---

    def replace_sessions(self, node_id: str, sessions: Iterable[OnlineSession]) -> None:
        """Replace the set of connected users for one node."""
        now = utcnow().isoformat()
        with self._connect() as conn:
            conn.execute("DELETE FROM online_sessions WHERE node_id = ?", (node_id,))
            conn.executemany(
                "INSERT INTO online_sessions (node_id, user_id, connections, seen_at) VALUES (?, ?, ?, ?)",
                [(node_id, s.user_id, int(s.connections), now) for s in sessions],
            )

    def list_sessions(self, node_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            if node_id:
                rows = conn.execute(
                    "SELECT * FROM online_sessions WHERE node_id = ? ORDER BY user_id", (node_id,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM online_sessions ORDER BY node_id, user_id").fetchall()
        return [dict(row) for row in rows]

    def nodes_for_user(self, user_id: str) -> List[str]:
        """Ids of nodes the user is currently connected to."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT node_id FROM online_sessions WHERE user_id = ? ORDER BY node_id", (user_id,)
            ).fetchall()
        return [row["node_id"] for row in rows]

    # --- Users ---

    def upsert_user(self, user_id: str, enabled: bool = True) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (user_id, enabled) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET enabled = excluded.enabled
                """,
                (user_id, int(enabled)),
            )

    def add_user_traffic(self, increments: Dict[str, Dict[str, int]]) -> None:
        """Increment per-user counters. Unknown users are created enabled."""
        now = utcnow().isoformat()
        rows = [
            (user_id, int(t.get("tx", 0)), int(t.get("rx", 0)), now)
            for user_id, t in increments.items()
        ]
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO users (user_id, traffic_tx, traffic_rx, last_update) VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    traffic_tx = traffic_tx + excluded.traffic_tx,
                    traffic_rx = traffic_rx + excluded.traffic_rx,
                    last_update = excluded.last_update
                """,
                rows,
            )

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return dict(row) if row else None

    def count_users(self) -> Dict[str, int]:
        """Total and enabled user counts."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(enabled), 0) AS active FROM users"
            ).fetchone()
        return {"total": int(row["total"]), "active": int(row["active"])}

    # --- Snapshots ---

    def upsert_snapshot(self, snapshot: StatsSnapshot) -> None:
        """Write a snapshot; a second write for the same (series, ts) overwrites."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO snapshots
                    (series, ts, online, users, active_users, tx, rx, nodes_on, nodes_total, nodes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(series, ts) DO UPDATE SET
                    online = excluded.online,
                    users = excluded.users,
                    active_users = excluded.active_users,
                    tx = excluded.tx,
                    rx = excluded.rx,
                    nodes_on = excluded.nodes_on,
                    nodes_total = excluded.nodes_total,
                    nodes = excluded.nodes
                """,
                (
                    SnapshotSeries(snapshot.series).value,
                    _iso(snapshot.ts),
                    snapshot.online,
                    snapshot.users,
                    snapshot.active_users,
                    snapshot.tx,
                    snapshot.rx,
                    snapshot.nodes_on,
                    snapshot.nodes_total,
                    json.dumps([n.to_compact() for n in snapshot.nodes]),
                ),
            )

    def _row_to_snapshot(self, row: sqlite3.Row, include_nodes: bool = True) -> StatsSnapshot:
        nodes = []
        if include_nodes:
            nodes = [NodeStat.from_compact(n) for n in json.loads(row["nodes"] or "[]")]
        return StatsSnapshot(
            series=SnapshotSeries(row["series"]),
            ts=parse_datetime(row["ts"]),
            online=row["online"],
            users=row["users"],
            active_users=row["active_users"],
            tx=row["tx"],
            rx=row["rx"],
            nodes_on=row["nodes_on"],
            nodes_total=row["nodes_total"],
            nodes=nodes,
        )

    def get_snapshots(
        self,
        series: SnapshotSeries,
        start: datetime,
        end: datetime,
        include_nodes: bool = False,
        end_inclusive: bool = True,
    ) -> List[StatsSnapshot]:
        """Snapshots of one series in [start, end], oldest first."""
        op = "<=" if end_inclusive else "<"
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM snapshots
                WHERE series = ? AND ts >= ? AND ts {op} ?
                ORDER BY ts ASC
                """,
                (SnapshotSeries(series).value, _iso(start), _iso(end)),
            ).fetchall()
        return [self._row_to_snapshot(row, include_nodes) for row in rows]

    def get_latest_snapshot(
        self, series: SnapshotSeries, before: Optional[datetime] = None
    ) -> Optional[StatsSnapshot]:
        """Most recent snapshot of a series, optionally at or before a time."""
        with self._connect() as conn:
            if before is not None:
                row = conn.execute(
                    "SELECT * FROM snapshots WHERE series = ? AND ts <= ? ORDER BY ts DESC LIMIT 1",
                    (SnapshotSeries(series).value, _iso(before)),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM snapshots WHERE series = ? ORDER BY ts DESC LIMIT 1",
                    (SnapshotSeries(series).value,),
                ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def count_snapshots(self, series: SnapshotSeries) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM snapshots WHERE series = ?", (SnapshotSeries(series).value,)
            ).fetchone()
        return int(row[0])

    def delete_snapshots_before(self, series: SnapshotSeries, cutoff: datetime) -> int:
        """Remove snapshots of a series older than cutoff.

        Returns number of rows deleted.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM snapshots WHERE series = ? AND ts < ?",
                (SnapshotSeries(series).value, _iso(cutoff)),
            )
            return cursor.rowcount
