"""Tests for data persistence layer."""

from datetime import datetime, timedelta, timezone

from nodefleet.data.models import (
    NodeStat,
    NodeStatus,
    OnlineSession,
    SnapshotSeries,
    StatsSnapshot,
)
from nodefleet.data.persistence import DataStore, get_data_dir

T0 = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _snap(series=SnapshotSeries.FINE, ts=T0, **kwargs):
    return StatsSnapshot(series=series, ts=ts, **kwargs)


class TestDataStore:
    def test_init_creates_database(self, temp_data_dir):
        store = DataStore(temp_data_dir)
        assert (temp_data_dir / "fleet.db").exists()
        assert store.data_dir == temp_data_dir

    def test_get_data_dir_from_env(self, temp_data_dir, monkeypatch):
        target = temp_data_dir / "custom"
        monkeypatch.setenv("NODEFLEET_DATA_DIR", str(target))
        assert get_data_dir() == target


class TestNodes:
    def test_upsert_and_get(self, store, make_node):
        node = make_node("a", domain="a.example.com")
        store.upsert_node(node)

        loaded = store.get_node("a")
        assert loaded.name == "node-a"
        assert loaded.domain == "a.example.com"
        assert loaded.ssh.password == "pw"
        assert loaded.status == NodeStatus.OFFLINE

    def test_upsert_keeps_runtime_state(self, store, make_node):
        store.upsert_node(make_node("a"))
        store.set_node_status("a", NodeStatus.ONLINE, last_error="", last_sync=T0)
        store.add_node_traffic("a", 10, 20)

        store.upsert_node(make_node("a", name="renamed"))

        loaded = store.get_node("a")
        assert loaded.name == "renamed"
        assert loaded.status == NodeStatus.ONLINE
        assert loaded.last_sync == T0
        assert (loaded.traffic_tx, loaded.traffic_rx) == (10, 20)

    def test_list_nodes_active_only(self, store, make_node):
        store.upsert_node(make_node("a"))
        store.upsert_node(make_node("b", active=False))

        assert [n.id for n in store.list_nodes()] == ["a"]
        assert [n.id for n in store.list_nodes(active_only=False)] == ["a", "b"]

    def test_set_node_status_partial(self, store, make_node):
        store.upsert_node(make_node("a"))
        store.set_node_status("a", NodeStatus.ERROR, last_error="broken")
        store.set_node_status("a", NodeStatus.SYNCING)

        loaded = store.get_node("a")
        assert loaded.status == NodeStatus.SYNCING
        assert loaded.last_error == "broken"
        assert loaded.last_sync is None

    def test_set_last_error_keeps_status(self, store, make_node):
        store.upsert_node(make_node("a"))
        store.set_node_status("a", NodeStatus.ONLINE)
        store.set_last_error("a", "Stats: timeout")

        loaded = store.get_node("a")
        assert loaded.status == NodeStatus.ONLINE
        assert loaded.last_error == "Stats: timeout"

    def test_add_node_traffic_accumulates(self, store, make_node):
        store.upsert_node(make_node("a"))
        store.add_node_traffic("a", 5, 7)
        store.add_node_traffic("a", 1, 1)

        loaded = store.get_node("a")
        assert (loaded.traffic_tx, loaded.traffic_rx) == (6, 8)

    def test_delete_node_removes_sessions(self, store, make_node):
        store.upsert_node(make_node("a"))
        store.replace_sessions("a", [OnlineSession("u1", 2)])
        store.delete_node("a")

        assert store.get_node("a") is None
        assert store.list_sessions() == []


class TestSessionsAndUsers:
    def test_replace_sessions(self, store):
        store.replace_sessions("a", [OnlineSession("u1", 2), OnlineSession("u2", 1)])
        store.replace_sessions("a", [OnlineSession("u3", 1)])
        store.replace_sessions("b", [OnlineSession("u1", 1)])

        assert [s["user_id"] for s in store.list_sessions("a")] == ["u3"]
        assert len(store.list_sessions()) == 2
        assert store.nodes_for_user("u1") == ["b"]

    def test_add_user_traffic_creates_unknown_users(self, store):
        store.upsert_user("u1", enabled=False)
        store.add_user_traffic({"u1": {"tx": 10, "rx": 5}, "u2": {"tx": 1, "rx": 2}})
        store.add_user_traffic({"u1": {"tx": 1, "rx": 1}})

        u1 = store.get_user("u1")
        assert (u1["traffic_tx"], u1["traffic_rx"]) == (11, 6)
        assert u1["enabled"] == 0
        assert store.get_user("u2")["enabled"] == 1

    def test_count_users(self, store):
        assert store.count_users() == {"total": 0, "active": 0}
        store.upsert_user("u1")
        store.upsert_user("u2", enabled=False)
        assert store.count_users() == {"total": 2, "active": 1}


class TestSnapshots:
    def test_upsert_is_idempotent(self, store):
        store.upsert_snapshot(_snap(online=1, tx=10))
        store.upsert_snapshot(_snap(online=5, tx=3))

        assert store.count_snapshots(SnapshotSeries.FINE) == 1
        stored = store.get_latest_snapshot(SnapshotSeries.FINE)
        assert stored.online == 5
        assert stored.tx == 3

    def test_series_are_independent(self, store):
        store.upsert_snapshot(_snap(SnapshotSeries.FINE))
        store.upsert_snapshot(_snap(SnapshotSeries.HOURLY))

        assert store.count_snapshots(SnapshotSeries.FINE) == 1
        assert store.count_snapshots(SnapshotSeries.HOURLY) == 1

    def test_get_snapshots_range(self, store):
        for minutes in (0, 5, 10, 15):
            store.upsert_snapshot(_snap(ts=T0 + timedelta(minutes=minutes), online=minutes))

        points = store.get_snapshots(SnapshotSeries.FINE, T0 + timedelta(minutes=5), T0 + timedelta(minutes=15))
        assert [p.online for p in points] == [5, 10, 15]

        points = store.get_snapshots(
            SnapshotSeries.FINE, T0, T0 + timedelta(minutes=15), end_inclusive=False
        )
        assert [p.online for p in points] == [0, 5, 10]

    def test_nodes_only_when_requested(self, store):
        store.upsert_snapshot(_snap(nodes=[NodeStat("a", "Alpha", 3, "online")]))

        without = store.get_snapshots(SnapshotSeries.FINE, T0, T0)
        with_nodes = store.get_snapshots(SnapshotSeries.FINE, T0, T0, include_nodes=True)
        assert without[0].nodes == []
        assert with_nodes[0].nodes == [NodeStat("a", "Alpha", 3, "online")]

    def test_get_latest_before(self, store):
        store.upsert_snapshot(_snap(ts=T0, online=1))
        store.upsert_snapshot(_snap(ts=T0 + timedelta(hours=1), online=2))

        assert store.get_latest_snapshot(SnapshotSeries.FINE).online == 2
        assert store.get_latest_snapshot(SnapshotSeries.FINE, before=T0 + timedelta(minutes=30)).online == 1
        assert store.get_latest_snapshot(SnapshotSeries.FINE, before=T0 - timedelta(minutes=1)) is None

    def test_delete_snapshots_before(self, store):
        store.upsert_snapshot(_snap(ts=T0 - timedelta(hours=50)))
        store.upsert_snapshot(_snap(ts=T0))
        store.upsert_snapshot(_snap(SnapshotSeries.HOURLY, ts=T0 - timedelta(hours=50)))

        removed = store.delete_snapshots_before(SnapshotSeries.FINE, T0 - timedelta(hours=48))

        assert removed == 1
        assert store.count_snapshots(SnapshotSeries.FINE) == 1
        assert store.count_snapshots(SnapshotSeries.HOURLY) == 1
