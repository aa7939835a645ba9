"""Tests for node stats polling."""

import pytest

from nodefleet.data.models import NodeStatus, OnlineSession
from nodefleet.errors import TelemetryError
from nodefleet.telemetry.collector import STATS_ERROR_PREFIX, TelemetryCollector


class FakeStatsClient:
    """Stats client answering from per-node dicts."""

    def __init__(self, traffic=None, online=None, failures=None):
        self.traffic = traffic or {}
        self.online = online or {}
        self.failures = failures or {}
        self.calls = []
        self.kicked = []

    def _maybe_fail(self, node, call):
        self.calls.append((node.id, call))
        if (node.id, call) in self.failures:
            raise TelemetryError(node.name, self.failures[(node.id, call)])

    def fetch_traffic(self, node, clear=True):
        self._maybe_fail(node, "traffic")
        return self.traffic.get(node.id, {})

    def fetch_online(self, node):
        self._maybe_fail(node, "online")
        return [OnlineSession(user_id=u, connections=c) for u, c in self.online.get(node.id, {}).items()]

    def kick(self, node, user_ids):
        self._maybe_fail(node, "kick")
        self.kicked.append((node.id, list(user_ids)))


@pytest.fixture
def seeded(store, make_node):
    store.upsert_node(make_node("a"))
    store.upsert_node(make_node("b"))
    store.set_node_status("a", NodeStatus.ONLINE)
    store.set_node_status("b", NodeStatus.ONLINE)
    return store


class TestPollNode:
    def test_traffic_and_online_recorded(self, seeded):
        client = FakeStatsClient(
            traffic={"a": {"u1": {"tx": 100, "rx": 50}, "u2": {"tx": 10, "rx": 5}}},
            online={"a": {"u1": 2}},
        )
        collector = TelemetryCollector(client, seeded)

        result = collector.poll_node(seeded.get_node("a"))

        assert result.ok
        assert (result.tx, result.rx, result.users_reported, result.online) == (110, 55, 2, 1)
        node = seeded.get_node("a")
        assert (node.traffic_tx, node.traffic_rx, node.online_users) == (110, 55, 1)
        assert seeded.get_user("u1")["traffic_tx"] == 100
        assert seeded.nodes_for_user("u1") == ["a"]

    def test_traffic_accumulates(self, seeded):
        client = FakeStatsClient(traffic={"a": {"u1": {"tx": 100, "rx": 50}}})
        collector = TelemetryCollector(client, seeded)

        collector.poll_node(seeded.get_node("a"))
        collector.poll_node(seeded.get_node("a"))

        assert seeded.get_user("u1")["traffic_tx"] == 200
        assert seeded.get_node("a").traffic_rx == 100

    def test_failure_is_soft(self, seeded):
        client = FakeStatsClient(failures={("a", "traffic"): "connection refused"})
        collector = TelemetryCollector(client, seeded)

        result = collector.poll_node(seeded.get_node("a"))

        assert not result.ok
        node = seeded.get_node("a")
        assert node.status == NodeStatus.ONLINE
        assert node.last_error == STATS_ERROR_PREFIX + "connection refused"
        # online still polled after the traffic failure
        assert ("a", "online") in client.calls

    def test_stale_stats_error_cleared(self, seeded):
        seeded.set_last_error("a", STATS_ERROR_PREFIX + "timeout")
        collector = TelemetryCollector(FakeStatsClient(), seeded)

        collector.poll_node(seeded.get_node("a"))

        assert seeded.get_node("a").last_error == ""

    def test_sync_error_kept(self, seeded):
        seeded.set_node_status("a", NodeStatus.ERROR, last_error="config rejected")
        collector = TelemetryCollector(FakeStatsClient(), seeded)

        collector.poll_node(seeded.get_node("a"))

        node = seeded.get_node("a")
        assert node.status == NodeStatus.ERROR
        assert node.last_error == "config rejected"

    def test_node_without_endpoint_skipped(self, store, make_node):
        store.upsert_node(make_node("c", stats_secret=""))
        client = FakeStatsClient()
        collector = TelemetryCollector(client, store)

        result = collector.poll_node(store.get_node("c"))

        assert result.skipped
        assert client.calls == []


class TestPollAll:
    def test_poll_all_stats(self, seeded):
        client = FakeStatsClient(
            traffic={"a": {"u1": {"tx": 1, "rx": 1}}},
            failures={("b", "online"): "timeout"},
        )
        collector = TelemetryCollector(client, seeded, batch_size=1)

        polls = collector.poll_all_stats()

        assert sorted(p.node_id for p in polls) == ["a", "b"]
        assert [p.node_id for p in polls if not p.ok] == ["b"]

    def test_health_check_skips_traffic(self, seeded):
        client = FakeStatsClient(online={"a": {"u1": 1}})
        collector = TelemetryCollector(client, seeded)

        collector.health_check()

        assert all(call == "online" for _, call in client.calls)
        assert seeded.get_node("a").online_users == 1

    def test_inactive_nodes_ignored(self, store, make_node):
        store.upsert_node(make_node("a"))
        store.upsert_node(make_node("z", active=False))
        client = FakeStatsClient()

        TelemetryCollector(client, store).poll_all_stats()

        assert {node_id for node_id, _ in client.calls} == {"a"}


class TestKickUser:
    def test_kicks_nodes_user_is_on(self, seeded):
        seeded.replace_sessions("b", [OnlineSession("u9", 1)])
        client = FakeStatsClient(failures={})
        collector = TelemetryCollector(client, seeded)

        assert collector.kick_user("u9") == {"b": True}
        assert client.kicked == [("b", ["u9"])]

    def test_kick_failure_reported(self, seeded):
        client = FakeStatsClient(failures={("a", "kick"): "refused"})
        collector = TelemetryCollector(client, seeded)

        result = collector.kick_user("u1", nodes=seeded.list_nodes())

        assert result == {"a": False, "b": True}
