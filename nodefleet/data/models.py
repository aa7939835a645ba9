"""Data models for fleet management.

This module defines the core data structures shared by the connection pool,
the sync orchestrator and the telemetry collector:

1. NODE DEFINITION
   - A Node is a snapshot handed in by the caller; the core never owns it
   - Credentials arrive already decrypted

2. EXPLICIT UNITS
   - Traffic: bytes (integers)
   - Time: datetimes in UTC; durations in seconds

3. SINGLE STATUS AUTHORITY
   - Node status: offline, syncing, online, error
   - Only the sync orchestrator moves a node between statuses; telemetry
     writes ``last_error`` notes and never touches status
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass a datetime through) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# =============================================================================
# Status Enumerations
# =============================================================================


class NodeStatus(str, Enum):
    """Lifecycle status of a managed node."""

    OFFLINE = "offline"  # Never synced, or deliberately taken out
    SYNCING = "syncing"  # A configuration push is in progress
    ONLINE = "online"  # Last sync verified the service running
    ERROR = "error"  # Last sync failed; needs operator action


class SnapshotSeries(str, Enum):
    """Time-series resolution of a stored snapshot."""

    FINE = "fine"  # every 5 minutes
    HOURLY = "hourly"
    DAILY = "daily"

    @property
    def bucket(self) -> timedelta:
        return _SERIES_BUCKETS[self]

    def floor(self, ts: datetime) -> datetime:
        """Floor a timestamp to the start of this series' bucket."""
        ts = parse_datetime(ts)
        seconds = int(self.bucket.total_seconds())
        epoch = int(ts.timestamp())
        return datetime.fromtimestamp(epoch - epoch % seconds, tz=timezone.utc)


_SERIES_BUCKETS = {
    SnapshotSeries.FINE: timedelta(minutes=5),
    SnapshotSeries.HOURLY: timedelta(hours=1),
    SnapshotSeries.DAILY: timedelta(days=1),
}


# =============================================================================
# Node Model
# =============================================================================


@dataclass
class SshCredentials:
    """Remote shell login. Password or key text is already decrypted."""

    port: int = 22
    username: str = "root"
    password: str = ""
    private_key: str = ""

    @property
    def has_secret(self) -> bool:
        return bool(self.password or self.private_key)


@dataclass
class NodePaths:
    """Remote file locations for the proxy service."""

    config: str = "/etc/hysteria/config.yaml"
    cert: str = "/etc/hysteria/cert.pem"
    key: str = "/etc/hysteria/key.pem"

    @property
    def backup(self) -> str:
        return f"{self.config}.bak"


@dataclass
class Node:
    """One managed remote host and the parameters of its proxy service."""

    id: str
    name: str
    ip: str
    domain: str = ""
    port: int = 443
    port_range: str = "20000-50000"
    stats_port: int = 9999
    stats_secret: str = ""
    ssh: SshCredentials = field(default_factory=SshCredentials)
    paths: NodePaths = field(default_factory=NodePaths)
    active: bool = True
    use_custom_config: bool = False
    custom_config: str = ""
    auth_url: str = ""  # Per-node override of the auth callback URL

    # Runtime state, persisted by the store
    status: NodeStatus = NodeStatus.OFFLINE
    last_error: str = ""
    last_sync: Optional[datetime] = None
    traffic_tx: int = 0  # bytes, cumulative
    traffic_rx: int = 0  # bytes, cumulative
    online_users: int = 0

    @property
    def display_host(self) -> str:
        return self.domain or self.ip

    @property
    def has_stats_endpoint(self) -> bool:
        return bool(self.stats_port and self.stats_secret)

    @property
    def stats_base_url(self) -> str:
        return f"http://{self.ip}:{self.stats_port}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        """Build a node from an inventory entry or a stored row."""
        ssh_data = data.get("ssh") or {}
        paths_data = data.get("paths") or {}
        node_id = str(data.get("id") or data.get("ip") or data.get("name"))
        return cls(
            id=node_id,
            name=data.get("name") or node_id,
            ip=data.get("ip", ""),
            domain=data.get("domain", "") or "",
            port=int(data.get("port", 443)),
            port_range=str(data.get("port_range", "20000-50000") or ""),
            stats_port=int(data.get("stats_port", 9999) or 0),
            stats_secret=data.get("stats_secret", "") or "",
            ssh=SshCredentials(
                port=int(ssh_data.get("port", 22)),
                username=ssh_data.get("username", "root"),
                password=ssh_data.get("password", "") or "",
                private_key=ssh_data.get("private_key", "") or "",
            ),
            paths=NodePaths(
                config=paths_data.get("config", NodePaths.config),
                cert=paths_data.get("cert", NodePaths.cert),
                key=paths_data.get("key", NodePaths.key),
            ),
            active=bool(data.get("active", True)),
            use_custom_config=bool(data.get("use_custom_config", False)),
            custom_config=data.get("custom_config", "") or "",
            auth_url=data.get("auth_url", "") or "",
            status=NodeStatus(data.get("status") or NodeStatus.OFFLINE.value),
            last_error=data.get("last_error", "") or "",
            last_sync=parse_datetime(data.get("last_sync")),
            traffic_tx=int(data.get("traffic_tx", 0) or 0),
            traffic_rx=int(data.get("traffic_rx", 0) or 0),
            online_users=int(data.get("online_users", 0) or 0),
        )

    def definition(self) -> Dict[str, Any]:
        """The caller-owned part of the node (everything but runtime state)."""
        return {
            "id": self.id,
            "name": self.name,
            "ip": self.ip,
            "domain": self.domain,
            "port": self.port,
            "port_range": self.port_range,
            "stats_port": self.stats_port,
            "stats_secret": self.stats_secret,
            "ssh": {
                "port": self.ssh.port,
                "username": self.ssh.username,
                "password": self.ssh.password,
                "private_key": self.ssh.private_key,
            },
            "paths": {
                "config": self.paths.config,
                "cert": self.paths.cert,
                "key": self.paths.key,
            },
            "active": self.active,
            "use_custom_config": self.use_custom_config,
            "custom_config": self.custom_config,
            "auth_url": self.auth_url,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the node; credentials are left out."""
        data = self.definition()
        data.pop("ssh")
        data.pop("stats_secret")
        data.update({
            "status": self.status.value,
            "last_error": self.last_error,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "traffic_tx": self.traffic_tx,
            "traffic_rx": self.traffic_rx,
            "online_users": self.online_users,
        })
        return data


# =============================================================================
# Remote Shell Models
# =============================================================================


@dataclass
class CommandResult:
    """Outcome of one remote command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


@dataclass
class PooledConnection:
    """A live remote shell session plus pool bookkeeping.

    Timestamps come from ``time.monotonic()``.
    """

    node_id: str
    node_name: str
    host: str
    session: Any
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    use_count: int = 0
    keepalive_failures: int = 0

    def touch(self, now: Optional[float] = None) -> None:
        self.last_used = now if now is not None else time.monotonic()
        self.use_count += 1

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_used


# =============================================================================
# Sync Outcome
# =============================================================================


@dataclass
class SyncOutcome:
    """Result of one node's sync (or provisioning) attempt."""

    node_id: str
    node_name: str
    success: bool = False
    status: Optional[NodeStatus] = None
    logs: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def log(self, line: str) -> None:
        self.logs.append(line)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_name": self.node_name,
            "success": self.success,
            "status": self.status.value if self.status else None,
            "logs": list(self.logs),
            "error": self.error,
        }


# =============================================================================
# Telemetry Models
# =============================================================================


@dataclass
class TrafficSample:
    """Cumulative node counters at one poll instant (bytes)."""

    tx: int
    rx: int
    observed_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TrafficDelta:
    """Traffic accrued between two samples (bytes)."""

    tx: int = 0
    rx: int = 0

    @property
    def total(self) -> int:
        return self.tx + self.rx


@dataclass
class OnlineSession:
    """One connected end-user on a node."""

    user_id: str
    connections: int = 1


@dataclass
class PollResult:
    """What a single node poll produced."""

    node_id: str
    tx: int = 0
    rx: int = 0
    users_reported: int = 0
    online: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class NodeStat:
    """Compact per-node entry stored inside a snapshot."""

    id: str
    name: str
    online: int = 0
    status: str = NodeStatus.OFFLINE.value

    def to_compact(self) -> Dict[str, Any]:
        return {"i": self.id, "n": self.name, "o": self.online, "s": self.status}

    @classmethod
    def from_compact(cls, data: Dict[str, Any]) -> "NodeStat":
        return cls(
            id=str(data.get("i", "")),
            name=data.get("n", ""),
            online=int(data.get("o", 0) or 0),
            status=data.get("s", NodeStatus.OFFLINE.value),
        )


@dataclass
class StatsSnapshot:
    """One aggregated point of a snapshot series.

    ``tx``/``rx`` are byte deltas for the bucket; ``online`` and ``nodes_on``
    are point-in-time counts (averaged when rolled up).
    """

    series: SnapshotSeries
    ts: datetime
    online: int = 0
    users: int = 0
    active_users: int = 0
    tx: int = 0
    rx: int = 0
    nodes_on: int = 0
    nodes_total: int = 0
    nodes: List[NodeStat] = field(default_factory=list)

    def to_dict(self, include_nodes: bool = True) -> Dict[str, Any]:
        data = {
            "series": self.series.value,
            "ts": self.ts.isoformat(),
            "online": self.online,
            "users": self.users,
            "active_users": self.active_users,
            "tx": self.tx,
            "rx": self.rx,
            "nodes_on": self.nodes_on,
            "nodes_total": self.nodes_total,
        }
        if include_nodes:
            data["nodes"] = [n.to_compact() for n in self.nodes]
        return data


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative averages (6.5 -> 7)."""
    return int(math.floor(value + 0.5))
