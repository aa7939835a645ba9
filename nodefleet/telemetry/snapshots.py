"""Snapshot series: collection, rollups, retention and queries.

Three resolutions are stored:

- ``fine``: one point per 5 minutes, collected from node counters
- ``hourly``: rolled up from the fine points of the previous complete hour
- ``daily``: rolled up from the hourly points of the previous UTC day

Rollup rules: ``online`` and ``nodes_on`` are averaged (rounded half up),
traffic is summed, and user counts, ``nodes_total`` and the per-node
breakdown are taken from the latest finer point.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..data.models import (
    NodeStat,
    NodeStatus,
    SnapshotSeries,
    StatsSnapshot,
    parse_datetime,
    round_half_up,
    utcnow,
)
from ..data.persistence import DataStore
from ..log import debug, log
from ..server.config import RetentionConfig
from .reconcile import TrafficReconciler

# period -> (series, lookback)
PERIODS: Dict[str, Tuple[SnapshotSeries, timedelta]] = {
    "1h": (SnapshotSeries.FINE, timedelta(hours=1)),
    "6h": (SnapshotSeries.FINE, timedelta(hours=6)),
    "24h": (SnapshotSeries.FINE, timedelta(hours=24)),
    "7d": (SnapshotSeries.HOURLY, timedelta(days=7)),
    "30d": (SnapshotSeries.HOURLY, timedelta(days=30)),
    "90d": (SnapshotSeries.DAILY, timedelta(days=90)),
}
DEFAULT_PERIOD = "24h"


def _display_names(nodes) -> Dict[str, str]:
    """Node names, suffixed with the domain's first label when duplicated."""
    counts = Counter(n.name for n in nodes)
    names = {}
    for node in nodes:
        if counts[node.name] > 1 and node.domain:
            names[node.id] = f"{node.name} ({node.domain.split('.')[0]})"
        else:
            names[node.id] = node.name
    return names


class SnapshotService:
    """Writes and reads the snapshot series.

    Args:
        store: Persistence layer for nodes, users and snapshots
        reconciler: Previous-sample map for node traffic deltas
        retention: Retention windows per series
        live_poll: Called before collecting when a rollup window is empty
        clock: Returns the current aware UTC time
    """

    def __init__(
        self,
        store: DataStore,
        reconciler: Optional[TrafficReconciler] = None,
        retention: Optional[RetentionConfig] = None,
        live_poll: Optional[Callable[[], Any]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.reconciler = reconciler or TrafficReconciler()
        self.retention = retention or RetentionConfig()
        self.live_poll = live_poll
        self._clock = clock

    def _now(self, now: Optional[datetime]) -> datetime:
        return parse_datetime(now) if now is not None else self._clock()

    # --- Collection ---

    def collect_snapshot(self, now: Optional[datetime] = None, advance: bool = True) -> StatsSnapshot:
        """Build a fine snapshot from the current node and user state.

        Traffic is the reconciled delta of each node's cumulative counters
        since the previous collection. With ``advance=False`` the baseline is
        only read, so the same traffic still reaches the next fine point.
        """
        now = self._now(now)
        nodes = self.store.list_nodes(active_only=True)
        users = self.store.count_users()
        names = _display_names(nodes)

        snapshot = StatsSnapshot(
            series=SnapshotSeries.FINE,
            ts=SnapshotSeries.FINE.floor(now),
            users=users["total"],
            active_users=users["active"],
            nodes_total=len(nodes),
        )
        for node in nodes:
            if advance:
                delta = self.reconciler.observe(node.id, node.traffic_tx, node.traffic_rx, now)
            else:
                delta = self.reconciler.peek(node.id, node.traffic_tx, node.traffic_rx)
            snapshot.tx += delta.tx
            snapshot.rx += delta.rx
            snapshot.online += node.online_users
            if node.status == NodeStatus.ONLINE:
                snapshot.nodes_on += 1
            snapshot.nodes.append(NodeStat(
                id=node.id,
                name=names[node.id],
                online=node.online_users,
                status=node.status.value,
            ))
        return snapshot

    def save_fine_snapshot(self, now: Optional[datetime] = None) -> StatsSnapshot:
        """Collect and store the fine point for the current 5-minute bucket.

        Only the first trigger in a bucket writes; later ones return the
        stored point without collecting, so the traffic baseline stays put
        and their traffic lands in the next bucket.
        """
        now = self._now(now)
        ts = SnapshotSeries.FINE.floor(now)
        existing = self.store.get_latest_snapshot(SnapshotSeries.FINE, before=ts)
        if existing is not None and existing.ts == ts:
            debug(f"[snapshots] fine {ts.isoformat()} already written, skipping")
            return existing
        snapshot = self.collect_snapshot(now)
        self.store.upsert_snapshot(snapshot)
        debug(
            f"[snapshots] fine {snapshot.ts.isoformat()}: online={snapshot.online}, "
            f"traffic={(snapshot.tx + snapshot.rx) / 1024 / 1024:.1f}MB"
        )
        return snapshot

    # --- Rollups ---

    def rollup(
        self,
        source: SnapshotSeries,
        target: SnapshotSeries,
        start: datetime,
        end: datetime,
    ) -> Optional[StatsSnapshot]:
        """Aggregate ``source`` points in [start, end) into one ``target`` point.

        Returns None if the window holds no points.
        """
        points = self.store.get_snapshots(source, start, end, include_nodes=True, end_inclusive=False)
        if not points:
            return None
        latest = points[-1]
        count = len(points)
        return StatsSnapshot(
            series=target,
            ts=start,
            online=round_half_up(sum(p.online for p in points) / count),
            users=latest.users,
            active_users=latest.active_users,
            tx=sum(p.tx for p in points),
            rx=sum(p.rx for p in points),
            nodes_on=round_half_up(sum(p.nodes_on for p in points) / count),
            nodes_total=latest.nodes_total,
            nodes=list(latest.nodes),
        )

    def _live_snapshot(self, target: SnapshotSeries, ts: datetime, now: datetime) -> StatsSnapshot:
        if self.live_poll is not None:
            try:
                self.live_poll()
            except Exception as exc:
                log(f"[snapshots] Live poll failed: {exc}")
        snapshot = self.collect_snapshot(now, advance=False)
        snapshot.series = target
        snapshot.ts = ts
        return snapshot

    def _save_rollup(
        self,
        source: SnapshotSeries,
        target: SnapshotSeries,
        now: Optional[datetime],
    ) -> StatsSnapshot:
        now = self._now(now)
        end = target.floor(now)
        start = end - target.bucket
        snapshot = self.rollup(source, target, start, end)
        if snapshot is None:
            log(f"[snapshots] No {source.value} data for {start.isoformat()}; using live values")
            snapshot = self._live_snapshot(target, start, now)
        self.store.upsert_snapshot(snapshot)
        log(f"[snapshots] {target.value.capitalize()} snapshot saved: {start.isoformat()}")
        return snapshot

    def save_hourly_snapshot(self, now: Optional[datetime] = None) -> StatsSnapshot:
        """Roll the previous complete hour of fine points into an hourly point."""
        return self._save_rollup(SnapshotSeries.FINE, SnapshotSeries.HOURLY, now)

    def save_daily_snapshot(self, now: Optional[datetime] = None) -> StatsSnapshot:
        """Roll the previous UTC day of hourly points into a daily point."""
        return self._save_rollup(SnapshotSeries.HOURLY, SnapshotSeries.DAILY, now)

    # --- Retention ---

    def retention_window(self, series: SnapshotSeries) -> timedelta:
        return {
            SnapshotSeries.FINE: timedelta(hours=self.retention.fine_hours),
            SnapshotSeries.HOURLY: timedelta(days=self.retention.hourly_days),
            SnapshotSeries.DAILY: timedelta(days=self.retention.daily_days),
        }[SnapshotSeries(series)]

    def cleanup_snapshots(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete points older than each series' retention window."""
        now = self._now(now)
        removed = {}
        for series in SnapshotSeries:
            cutoff = now - self.retention_window(series)
            removed[series.value] = self.store.delete_snapshots_before(series, cutoff)
        log(
            f"[snapshots] Cleanup: fine={removed['fine']}, "
            f"hourly={removed['hourly']}, daily={removed['daily']}"
        )
        return removed

    # --- Queries ---

    def series_for_period(
        self, period: str, now: Optional[datetime] = None
    ) -> Tuple[SnapshotSeries, datetime, datetime]:
        """Map a chart period (``1h`` .. ``90d``) to (series, start, end).

        Unknown periods fall back to ``24h``.
        """
        series, lookback = PERIODS.get(period, PERIODS[DEFAULT_PERIOD])
        end = self._now(now)
        return series, end - lookback, end

    def get_series(
        self,
        series: SnapshotSeries,
        start: datetime,
        end: datetime,
        include_nodes: bool = False,
    ) -> List[Dict[str, Any]]:
        """Points of a series in [start, end], oldest first."""
        points = self.store.get_snapshots(SnapshotSeries(series), start, end, include_nodes=include_nodes)
        return [p.to_dict(include_nodes=include_nodes) for p in points]

    def get_node_series(self, series: SnapshotSeries, start: datetime, end: datetime) -> Dict[str, Any]:
        """Per-node online/status history for charting."""
        points = self.store.get_snapshots(SnapshotSeries(series), start, end, include_nodes=True)
        labels = []
        by_node: Dict[str, Dict[str, Any]] = {}
        for point in points:
            ts = point.ts.isoformat()
            labels.append(ts)
            for stat in point.nodes:
                key = stat.id or stat.name
                entry = by_node.setdefault(key, {"id": key, "name": stat.name, "data": []})
                entry["data"].append({"ts": ts, "online": stat.online, "status": stat.status})
        return {"series": SnapshotSeries(series).value, "labels": labels, "nodes": list(by_node.values())}

    def get_summary(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Current counts, hourly trend and 24h traffic/peak."""
        now = self._now(now)
        latest = self.store.get_latest_snapshot(SnapshotSeries.FINE, before=now)
        hour_ago = self.store.get_latest_snapshot(SnapshotSeries.FINE, before=now - timedelta(hours=1))
        day = self.store.get_snapshots(SnapshotSeries.FINE, now - timedelta(hours=24), now)

        current_online = latest.online if latest else 0
        previous_online = hour_ago.online if hour_ago else 0
        trend = (
            round((current_online - previous_online) / previous_online * 100, 1)
            if previous_online > 0
            else 0.0
        )
        tx = sum(p.tx for p in day)
        rx = sum(p.rx for p in day)
        return {
            "current": {
                "online": current_online,
                "nodes_online": latest.nodes_on if latest else 0,
                "nodes_total": latest.nodes_total if latest else 0,
                "users": latest.users if latest else 0,
                "active_users": latest.active_users if latest else 0,
            },
            "trends": {"hourly": trend},
            "traffic_24h": {"tx": tx, "rx": rx, "total": tx + rx},
            "peak_24h": max((p.online for p in day), default=0),
            "last_update": latest.ts.isoformat() if latest else None,
        }
