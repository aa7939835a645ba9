"""Pytest configuration and shared fixtures."""

import pytest
from pathlib import Path
from tempfile import TemporaryDirectory

from nodefleet.data.models import CommandResult, Node, SshCredentials
from nodefleet.data.persistence import DataStore
from nodefleet.pool.pool import ConnectionPool
from nodefleet.server.config import PoolConfig


class FakeSession:
    """In-memory stand-in for an SSH session.

    ``responses`` is a list of (substring, result) pairs; the first pair
    whose substring occurs in a command decides its result. A result may be
    a CommandResult, an exception instance (raised) or a callable.
    """

    def __init__(self, files=None, responses=None):
        self.files = dict(files or {})
        self.responses = list(responses or [])
        self.commands = []
        self.closed = False
        self.alive = True
        self.probe_error = None
        self.probes = 0

    def run(self, command, timeout):
        self.commands.append(command)
        for needle, result in self.responses:
            if needle in command:
                if isinstance(result, Exception):
                    raise result
                if callable(result):
                    return result(command)
                return result
        return CommandResult(exit_code=0)

    def write_file(self, path, content):
        self.files[path] = content.encode("utf-8") if isinstance(content, str) else content

    def read_file(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def remove_file(self, path):
        self.files.pop(path, None)

    def probe(self):
        self.probes += 1
        if self.probe_error is not None:
            raise self.probe_error

    def is_alive(self):
        return self.alive and not self.closed

    def close(self):
        self.closed = True


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def temp_data_dir():
    """Create a temporary data directory for tests."""
    with TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_data_dir):
    return DataStore(temp_data_dir)


@pytest.fixture
def make_node():
    """Factory for nodes with sensible test defaults."""

    def _make(node_id="n1", **kwargs):
        defaults = {
            "id": node_id,
            "name": f"node-{node_id}",
            "ip": "10.0.0.1",
            "stats_secret": "s3cret",
            "ssh": SshCredentials(password="pw"),
        }
        defaults.update(kwargs)
        return Node(**defaults)

    return _make


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def make_pool():
    """Factory for a pool whose connections are FakeSessions.

    Returns (pool, connect_calls, sleeps). ``sessions`` maps node id to the
    session (or exception) handed out for it; other ids get a fresh
    FakeSession per connection.
    """

    def _make(sessions=None, clock=None, **config_overrides):
        sessions = sessions if sessions is not None else {}
        connect_calls = []
        sleeps = []

        def connect(node, timeout, keepalive_interval):
            connect_calls.append(node.id)
            session = sessions.get(node.id)
            if session is None:
                return FakeSession()
            if isinstance(session, Exception):
                raise session
            return session

        kwargs = {"connect_fn": connect, "sleep_fn": sleeps.append}
        if clock is not None:
            kwargs["clock"] = clock
        pool = ConnectionPool(PoolConfig(**config_overrides), **kwargs)
        return pool, connect_calls, sleeps

    return _make


@pytest.fixture
def session_factory():
    return FakeSession


@pytest.fixture
def fake_clock():
    return FakeClock()
