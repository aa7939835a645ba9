"""SSH connection pool.

Keeps at most one live session per node id:

- Lazy connection (created on first request), single-flight per node
- Exponential backoff between connection attempts
- Idle eviction and keepalive probing from a maintenance thread
- Eviction on any transport error or abandoned command
- Disabled mode: ``acquire`` fails fast and callers use a direct,
  single-use session with the same retry policy
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

import paramiko

from ..data.models import CommandResult, Node, PooledConnection
from ..errors import NodeConnectionError, PoolDisabledError
from ..log import debug, log
from ..server.config import PoolConfig
from .session import SshSession

ConnectFn = Callable[[Node, float, int], Any]

_TRANSPORT_ERRORS = (paramiko.SSHException, EOFError, OSError)


def _default_connect(node: Node, timeout: float, keepalive_interval: int) -> SshSession:
    return SshSession.open(node, timeout=timeout, keepalive_interval=keepalive_interval)


class ConnectionPool:
    """Pool of remote shell sessions keyed by node id.

    Sessions must provide ``run``, ``write_file``, ``read_file``,
    ``remove_file``, ``probe``, ``is_alive`` and ``close``.
    """

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        connect_fn: Optional[ConnectFn] = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or PoolConfig()
        self._connect_fn = connect_fn or _default_connect
        self._sleep = sleep_fn
        self._clock = clock
        self._connections: Dict[str, PooledConnection] = {}
        self._node_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        self._worker: Optional[PoolMaintenanceWorker] = None
        self._closed = False

    # --- Settings ---

    @property
    def enabled(self) -> bool:
        return self.config.enabled and not self._closed

    def reload_settings(self, config: PoolConfig) -> None:
        """Apply new settings. Disabling the pool closes every connection."""
        self.config = config
        log(f"[pool] Settings loaded: enabled={config.enabled}, idle={config.max_idle_time}s")
        if not config.enabled:
            self._evict_all("pool disabled")

    # --- Acquisition ---

    def _node_lock(self, node_id: str) -> threading.Lock:
        with self._lock:
            lock = self._node_locks.get(node_id)
            if lock is None:
                lock = threading.Lock()
                self._node_locks[node_id] = lock
            return lock

    def acquire(self, node: Node) -> PooledConnection:
        """Return the live connection for a node, creating it if needed.

        Concurrent callers for the same node wait for a single connection
        attempt and then share its result.

        Raises:
            PoolDisabledError: if the pool is switched off.
            NodeConnectionError: if every connection attempt failed.
        """
        if not self.enabled:
            raise PoolDisabledError(node.name, "SSH pool disabled")

        with self._node_lock(node.id):
            with self._lock:
                existing = self._connections.get(node.id)
            if existing is not None:
                if existing.session.is_alive():
                    existing.touch(self._clock())
                    return existing
                self.evict(node.id, "dead")

            session = self._establish(node)
            conn = PooledConnection(
                node_id=node.id,
                node_name=node.name,
                host=node.ip,
                session=session,
                created_at=self._clock(),
                last_used=self._clock(),
                use_count=1,
            )
            with self._lock:
                self._connections[node.id] = conn
                size = len(self._connections)
            log(f"[pool] Connected: {node.name} ({node.ip}) [pool: {size}]")
            return conn

    def _establish(self, node: Node) -> Any:
        """Connect with up to ``max_retries`` retries and exponential backoff."""
        attempts = max(0, int(self.config.max_retries)) + 1
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                return self._connect_fn(node, self.config.connect_timeout, self.config.keepalive_interval)
            except NodeConnectionError as exc:
                last_error = exc
            except _TRANSPORT_ERRORS as exc:
                last_error = NodeConnectionError(node.name, str(exc), exc)
            if attempt + 1 < attempts:
                delay = self.config.backoff_base * (2 ** attempt)
                log(f"[pool] {node.name}: retry {attempt + 1}/{attempts - 1} in {delay:.1f}s ({last_error})")
                self._sleep(delay)
        log(f"[pool] Failed: {node.name} - {last_error}")
        if isinstance(last_error, NodeConnectionError):
            raise last_error
        raise NodeConnectionError(node.name, "connection failed", last_error)

    def connect_direct(self, node: Node) -> Any:
        """Open an unpooled session with the same retry policy.

        The caller owns the session and must close it.
        """
        return self._establish(node)

    # --- Operations ---

    def _call(self, node: Node, op: str, fn: Callable[[Any], Any]) -> Any:
        conn = self.acquire(node)
        try:
            return fn(conn.session)
        except (FileNotFoundError, PermissionError):
            raise
        except NodeConnectionError:
            self.evict(node.id, f"{op} error")
            raise
        except _TRANSPORT_ERRORS as exc:
            self.evict(node.id, f"{op} error")
            raise NodeConnectionError(node.name, f"{op} failed: {exc}", exc)

    def exec(self, node: Node, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a command on the node's pooled connection.

        A timeout abandons the command and evicts the connection.
        """
        timeout = timeout or 30
        return self._call(node, "exec", lambda s: s.run(command, timeout))

    def write_file(self, node: Node, path: str, content: Union[str, bytes]) -> None:
        self._call(node, "sftp", lambda s: s.write_file(path, content))
        debug(f"[pool] Written: {path} on {node.name}")

    def read_file(self, node: Node, path: str) -> bytes:
        return self._call(node, "sftp", lambda s: s.read_file(path))

    def remove_file(self, node: Node, path: str) -> None:
        self._call(node, "sftp", lambda s: s.remove_file(path))

    @contextmanager
    def shell(self, node: Node) -> Iterator["PooledShell"]:
        """Yield a shell for a node: pooled when enabled, direct otherwise."""
        session = None
        try:
            self.acquire(node)
        except PoolDisabledError:
            session = self.connect_direct(node)
        if session is None:
            yield PooledShell(self, node)
            return
        try:
            yield DirectShell(node, session)
        finally:
            session.close()

    # --- Eviction ---

    def evict(self, node_id: str, reason: str = "unknown") -> bool:
        """Remove a connection from the pool and close it."""
        with self._lock:
            conn = self._connections.pop(node_id, None)
        if conn is None:
            return False
        try:
            conn.session.close()
        except Exception as exc:
            debug(f"[pool] Close error for {conn.node_name}: {exc}")
        debug(f"[pool] Removed: {conn.node_name} ({reason})")
        return True

    def close(self, node_id: str) -> bool:
        return self.evict(node_id, "manual")

    def has_connection(self, node_id: str) -> bool:
        with self._lock:
            conn = self._connections.get(node_id)
        return conn is not None and conn.session.is_alive()

    def _evict_all(self, reason: str) -> None:
        with self._lock:
            node_ids = list(self._connections)
        for node_id in node_ids:
            self.evict(node_id, reason)

    def sweep(self, now: Optional[float] = None) -> int:
        """Evict idle connections and probe the rest.

        Returns number of connections removed.
        """
        now = now if now is not None else self._clock()
        with self._lock:
            snapshot = list(self._connections.values())

        removed = 0
        for conn in snapshot:
            idle = conn.idle_seconds(now)
            if idle > self.config.max_idle_time:
                if self.evict(conn.node_id, f"idle {round(idle)}s"):
                    removed += 1
                continue
            try:
                conn.session.probe()
                conn.keepalive_failures = 0
            except Exception as exc:
                conn.keepalive_failures += 1
                debug(
                    f"[pool] Keepalive failed for {conn.node_name} "
                    f"({conn.keepalive_failures}/{self.config.keepalive_count_max}): {exc}"
                )
                if conn.keepalive_failures >= self.config.keepalive_count_max:
                    if self.evict(conn.node_id, "keepalive"):
                        removed += 1

        if removed:
            log(f"[pool] Cleanup: {removed} connections removed [pool: {len(self)}]")
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    # --- Lifecycle ---

    def start(self) -> None:
        """Start the background maintenance thread."""
        if self._worker is None or not self._worker.is_alive():
            self._worker = PoolMaintenanceWorker(self, self.config.cleanup_interval)
            self._closed = False
            self._worker.start()
            log("[pool] Initialized")

    def close_all(self, timeout: float = 5.0) -> None:
        """Stop maintenance and close every connection."""
        log(f"[pool] Shutting down ({len(self)} connections)")
        self._closed = True
        if self._worker is not None:
            self._worker.stop()
            self._worker.join(timeout=timeout)
            self._worker = None
        self._evict_all("shutdown")

    def get_stats(self) -> Dict[str, Any]:
        """Pool statistics."""
        now = self._clock()
        with self._lock:
            snapshot = list(self._connections.values())
        connections: List[Dict[str, Any]] = [
            {
                "node_id": conn.node_id,
                "name": conn.node_name,
                "host": conn.host,
                "alive": conn.session.is_alive(),
                "idle_seconds": round(conn.idle_seconds(now), 1),
                "use_count": conn.use_count,
                "uptime_seconds": round(now - conn.created_at, 1),
            }
            for conn in snapshot
        ]
        return {
            "enabled": self.enabled,
            "total": len(connections),
            "config": {
                "max_idle_time": self.config.max_idle_time,
                "keepalive_interval": self.config.keepalive_interval,
                "keepalive_count_max": self.config.keepalive_count_max,
                "connect_timeout": self.config.connect_timeout,
                "max_retries": self.config.max_retries,
            },
            "connections": connections,
        }


class PooledShell:
    """Shell operations for one node routed through the pool."""

    def __init__(self, pool: ConnectionPool, node: Node):
        self.pool = pool
        self.node = node

    def exec(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        return self.pool.exec(self.node, command, timeout)

    def write_file(self, path: str, content: Union[str, bytes]) -> None:
        self.pool.write_file(self.node, path, content)

    def read_file(self, path: str) -> bytes:
        return self.pool.read_file(self.node, path)

    def remove_file(self, path: str) -> None:
        self.pool.remove_file(self.node, path)


class DirectShell:
    """Shell operations on a single-use session owned by the caller."""

    def __init__(self, node: Node, session: Any):
        self.node = node
        self.session = session

    def exec(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        return self.session.run(command, timeout or 30)

    def write_file(self, path: str, content: Union[str, bytes]) -> None:
        self.session.write_file(path, content)

    def read_file(self, path: str) -> bytes:
        return self.session.read_file(path)

    def remove_file(self, path: str) -> None:
        self.session.remove_file(path)


class PoolMaintenanceWorker(threading.Thread):
    """Background worker for idle eviction and keepalive probes."""

    def __init__(self, pool: ConnectionPool, interval_seconds: float):
        super().__init__(name="ssh-pool-maintenance", daemon=True)
        self.pool = pool
        self.interval = max(1, interval_seconds)
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.pool.sweep()
            except Exception as exc:
                log(f"[pool] Sweep failed: {exc}")

    def stop(self) -> None:
        self._stop_event.set()
