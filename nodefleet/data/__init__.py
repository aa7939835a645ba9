"""Data layer - models and persistence."""

from .persistence import DataStore, get_data_dir
from .models import (
    Node,
    NodeStatus,
    NodePaths,
    SshCredentials,
    CommandResult,
    PooledConnection,
    SyncOutcome,
    TrafficSample,
    TrafficDelta,
    OnlineSession,
    PollResult,
    NodeStat,
    StatsSnapshot,
    SnapshotSeries,
)

__all__ = [
    "DataStore",
    "get_data_dir",
    "Node",
    "NodeStatus",
    "NodePaths",
    "SshCredentials",
    "CommandResult",
    "PooledConnection",
    "SyncOutcome",
    "TrafficSample",
    "TrafficDelta",
    "OnlineSession",
    "PollResult",
    "NodeStat",
    "StatsSnapshot",
    "SnapshotSeries",
]
