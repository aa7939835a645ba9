"""Stats polling, traffic reconciliation and snapshot series."""

from .client import StatsClient
from .collector import TelemetryCollector
from .reconcile import TrafficReconciler, counter_delta
from .snapshots import SnapshotService

__all__ = [
    "StatsClient",
    "TelemetryCollector",
    "TrafficReconciler",
    "counter_delta",
    "SnapshotService",
]
