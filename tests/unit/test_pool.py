"""Tests for the SSH connection pool."""

import threading
import time

import paramiko
import pytest

from nodefleet.data.models import CommandResult
from nodefleet.errors import CommandTimeout, NodeConnectionError, PoolDisabledError
from nodefleet.pool.pool import ConnectionPool, DirectShell, PooledShell
from nodefleet.server.config import PoolConfig


class TestAcquire:
    def test_lazy_connect_and_reuse(self, make_pool, make_node):
        pool, connect_calls, _ = make_pool()
        node = make_node("a")

        assert len(pool) == 0
        first = pool.acquire(node)
        second = pool.acquire(node)

        assert first is second
        assert connect_calls == ["a"]
        assert second.use_count == 2
        assert pool.has_connection("a")

    def test_one_connection_per_node(self, make_pool, make_node):
        pool, connect_calls, _ = make_pool()
        pool.acquire(make_node("a"))
        pool.acquire(make_node("b", ip="10.0.0.2"))

        assert sorted(connect_calls) == ["a", "b"]
        assert len(pool) == 2

    def test_concurrent_acquire_single_attempt(self, make_node, session_factory):
        calls = []
        calls_lock = threading.Lock()

        def slow_connect(node, timeout, keepalive_interval):
            with calls_lock:
                calls.append(node.id)
            time.sleep(0.05)
            return session_factory()

        pool = ConnectionPool(PoolConfig(), connect_fn=slow_connect)
        node = make_node("a")
        results = []

        def worker():
            results.append(pool.acquire(node))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert calls == ["a"]
        assert len(results) == 8
        assert all(r is results[0] for r in results)

    def test_retry_with_exponential_backoff(self, make_pool, make_node):
        error = NodeConnectionError("node-a", "refused")
        pool, connect_calls, sleeps = make_pool(sessions={"a": error}, max_retries=2, backoff_base=0.5)

        with pytest.raises(NodeConnectionError):
            pool.acquire(make_node("a"))

        assert connect_calls == ["a", "a", "a"]
        assert sleeps == [0.5, 1.0]
        assert len(pool) == 0

    def test_transport_error_wrapped(self, make_pool, make_node):
        pool, _, _ = make_pool(sessions={"a": paramiko.SSHException("banner")}, max_retries=0)

        with pytest.raises(NodeConnectionError) as exc_info:
            pool.acquire(make_node("a"))
        assert "banner" in str(exc_info.value)

    def test_dead_connection_replaced(self, make_pool, make_node, session_factory):
        pool, connect_calls, _ = make_pool()
        node = make_node("a")
        conn = pool.acquire(node)
        conn.session.alive = False

        fresh = pool.acquire(node)

        assert fresh is not conn
        assert conn.session.closed is True
        assert connect_calls == ["a", "a"]

    def test_disabled_pool_fails_fast(self, make_pool, make_node):
        pool, connect_calls, _ = make_pool(enabled=False)

        with pytest.raises(PoolDisabledError):
            pool.acquire(make_node("a"))
        assert connect_calls == []


class TestOperations:
    def test_exec(self, make_pool, make_node, session_factory):
        session = session_factory(responses=[("uptime", CommandResult(0, "up 3 days"))])
        pool, _, _ = make_pool(sessions={"a": session})

        result = pool.exec(make_node("a"), "uptime")

        assert result.stdout == "up 3 days"
        assert session.commands == ["uptime"]

    def test_exec_timeout_evicts(self, make_pool, make_node, session_factory):
        session = session_factory(responses=[("sleep", CommandTimeout("node-a", "exec timeout"))])
        pool, _, _ = make_pool(sessions={"a": session})
        node = make_node("a")

        with pytest.raises(CommandTimeout):
            pool.exec(node, "sleep 100", timeout=1)

        assert not pool.has_connection("a")
        assert session.closed is True

    def test_transport_error_evicts(self, make_pool, make_node, session_factory):
        session = session_factory(responses=[("ls", EOFError("gone"))])
        pool, _, _ = make_pool(sessions={"a": session})

        with pytest.raises(NodeConnectionError):
            pool.exec(make_node("a"), "ls")
        assert len(pool) == 0

    def test_missing_file_keeps_connection(self, make_pool, make_node):
        pool, _, _ = make_pool()
        node = make_node("a")

        with pytest.raises(FileNotFoundError):
            pool.read_file(node, "/nope")
        assert pool.has_connection("a")

    def test_file_roundtrip(self, make_pool, make_node):
        pool, _, _ = make_pool()
        node = make_node("a")

        pool.write_file(node, "/etc/x", "hello")
        assert pool.read_file(node, "/etc/x") == b"hello"
        pool.remove_file(node, "/etc/x")
        with pytest.raises(FileNotFoundError):
            pool.read_file(node, "/etc/x")

    def test_shell_pooled(self, make_pool, make_node):
        pool, _, _ = make_pool()
        node = make_node("a")

        with pool.shell(node) as shell:
            assert isinstance(shell, PooledShell)
            shell.write_file("/tmp/f", b"x")

        assert pool.has_connection("a")

    def test_shell_direct_when_disabled(self, make_pool, make_node, session_factory):
        session = session_factory(responses=[("id", CommandResult(0, "root"))])
        pool, connect_calls, _ = make_pool(sessions={"a": session}, enabled=False)

        with pool.shell(make_node("a")) as shell:
            assert isinstance(shell, DirectShell)
            assert shell.exec("id").stdout == "root"

        assert connect_calls == ["a"]
        assert session.closed is True
        assert len(pool) == 0

    def test_shell_direct_closes_on_error(self, make_pool, make_node, session_factory):
        session = session_factory()
        pool, _, _ = make_pool(sessions={"a": session}, enabled=False)

        with pytest.raises(RuntimeError):
            with pool.shell(make_node("a")):
                raise RuntimeError("boom")
        assert session.closed is True


class TestMaintenance:
    def test_idle_eviction_then_reconnect(self, make_pool, make_node, fake_clock):
        pool, connect_calls, _ = make_pool(clock=fake_clock, max_idle_time=120)
        node = make_node("a")
        first = pool.acquire(node)

        fake_clock.advance(121)
        removed = pool.sweep()

        assert removed == 1
        assert first.session.closed is True
        assert not pool.has_connection("a")

        second = pool.acquire(node)
        assert second is not first
        assert connect_calls == ["a", "a"]

    def test_active_connection_survives_sweep(self, make_pool, make_node, fake_clock):
        pool, _, _ = make_pool(clock=fake_clock, max_idle_time=120)
        node = make_node("a")
        conn = pool.acquire(node)

        fake_clock.advance(100)
        pool.acquire(node)
        fake_clock.advance(100)

        assert pool.sweep() == 0
        assert conn.session.probes == 1

    def test_keepalive_failures_evict(self, make_pool, make_node, fake_clock):
        pool, _, _ = make_pool(clock=fake_clock, keepalive_count_max=3)
        conn = pool.acquire(make_node("a"))
        conn.session.probe_error = NodeConnectionError("node-a", "keepalive failed")

        assert pool.sweep() == 0
        assert pool.sweep() == 0
        assert conn.keepalive_failures == 2
        assert pool.sweep() == 1
        assert len(pool) == 0

    def test_keepalive_success_resets_count(self, make_pool, make_node, fake_clock):
        pool, _, _ = make_pool(clock=fake_clock, keepalive_count_max=3)
        conn = pool.acquire(make_node("a"))
        conn.session.probe_error = OSError("reset")
        pool.sweep()
        conn.session.probe_error = None
        pool.sweep()

        assert conn.keepalive_failures == 0

    def test_close_and_evict(self, make_pool, make_node):
        pool, _, _ = make_pool()
        pool.acquire(make_node("a"))

        assert pool.close("a") is True
        assert pool.close("a") is False

    def test_reload_settings_disable_closes_all(self, make_pool, make_node):
        pool, _, _ = make_pool()
        conn = pool.acquire(make_node("a"))

        pool.reload_settings(PoolConfig(enabled=False))

        assert conn.session.closed is True
        assert pool.enabled is False

    def test_close_all(self, make_pool, make_node):
        pool, _, _ = make_pool()
        conns = [pool.acquire(make_node(i)) for i in ("a", "b")]

        pool.close_all()

        assert len(pool) == 0
        assert all(c.session.closed for c in conns)

    def test_get_stats(self, make_pool, make_node, fake_clock):
        pool, _, _ = make_pool(clock=fake_clock)
        pool.acquire(make_node("a"))
        fake_clock.advance(10)

        stats = pool.get_stats()

        assert stats["enabled"] is True
        assert stats["total"] == 1
        assert stats["connections"][0]["idle_seconds"] == 10
        assert stats["connections"][0]["alive"] is True
        assert stats["config"]["max_retries"] == 2
