#!/usr/bin/env python3
"""
nodefleet - Main entry point.

Runs the fleet scheduler (stats polling, snapshot rollups, retention) or a
single one-off operation against the configured node inventory.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from dataclasses import asdict
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from ..data.models import SnapshotSeries, utcnow
from ..data.persistence import DataStore
from ..log import log, set_verbose
from ..pool.pool import ConnectionPool
from ..sync.orchestrator import SyncOrchestrator
from ..telemetry.client import StatsClient
from ..telemetry.collector import TelemetryCollector
from ..telemetry.reconcile import TrafficReconciler
from ..telemetry.snapshots import SnapshotService
from .config import Config
from .workers import FleetScheduler


class Fleet:
    """The wired-up components for one configuration."""

    def __init__(self, config: Config, store: Optional[DataStore] = None):
        self.config = config
        self.store = store or DataStore(Path(config.data_dir) if config.data_dir else None)
        self.pool = ConnectionPool(config.pool)
        self.orchestrator = SyncOrchestrator(
            self.pool,
            self.store,
            config.sync,
            auth_url=config.auth_url,
        )
        self.client = StatsClient(
            traffic_timeout=config.telemetry.traffic_timeout,
            online_timeout=config.telemetry.online_timeout,
        )
        self.collector = TelemetryCollector(
            self.client,
            self.store,
            batch_size=config.telemetry.batch_size,
        )
        self.reconciler = TrafficReconciler()
        self.snapshots = SnapshotService(
            self.store,
            self.reconciler,
            config.retention,
            live_poll=self.collector.poll_all_stats,
        )

    def seed(self) -> int:
        """Copy the inventory and users from config into the store."""
        for node in self.config.nodes:
            self.store.upsert_node(node)
        for user in self.config.users:
            user_id = user.get("user_id") or user.get("id")
            if user_id:
                self.store.upsert_user(str(user_id), enabled=bool(user.get("enabled", True)))
        return len(self.config.nodes)

    def scheduler(self) -> FleetScheduler:
        scheduler = FleetScheduler(
            self.config, self.pool, self.orchestrator, self.collector, self.snapshots
        )
        scheduler.register_defaults()
        return scheduler

    def close(self) -> None:
        self.pool.close_all()
        self.client.close()


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _node_or_exit(fleet: Fleet, node_id: str):
    node = fleet.store.get_node(node_id)
    if node is None:
        log(f"[nodefleet] Unknown node: {node_id}")
        sys.exit(2)
    return node


def run_once(args, fleet: Fleet) -> Optional[int]:
    """Run a one-off command.

    Returns the process exit code, or None if no one-off command was given.
    """
    if args.sync_node:
        outcome = fleet.orchestrator.sync_node(_node_or_exit(fleet, args.sync_node))
        _print_json(outcome.to_dict())
        return 0 if outcome.success else 1

    if args.sync_now:
        outcomes = fleet.orchestrator.sync_all()
        _print_json([o.to_dict() for o in outcomes])
        return 0 if all(o.success for o in outcomes) else 1

    if args.port_hopping:
        outcome = fleet.orchestrator.setup_port_hopping(_node_or_exit(fleet, args.port_hopping))
        _print_json(outcome.to_dict())
        return 0 if outcome.success else 1

    if args.poll_now:
        polls = fleet.collector.poll_all_stats()
        fleet.snapshots.save_fine_snapshot()
        _print_json([asdict(p) for p in polls])
        return 0

    if args.summary:
        _print_json(fleet.snapshots.get_summary())
        return 0

    if args.series:
        end = utcnow()
        start = end - timedelta(hours=args.hours)
        _print_json(fleet.snapshots.get_series(SnapshotSeries(args.series), start, end))
        return 0

    return None


def run_scheduler(fleet: Fleet) -> None:
    """Run the periodic workers until SIGINT/SIGTERM."""
    scheduler = fleet.scheduler()
    stop = threading.Event()

    def _handle_signal(signum, frame):
        log(f"\n[nodefleet] Received signal {signum}, shutting down...")
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start_all()
    log(f"[nodefleet] Running with {len(fleet.store.list_nodes())} active nodes")
    log(f"[nodefleet] Data directory: {fleet.store.data_dir}")
    try:
        while not stop.wait(1):
            pass
    finally:
        scheduler.stop_all()
        fleet.client.close()


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="Remote proxy node fleet manager",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("--config", type=str, help="Path to config YAML file")
    parser.add_argument("--data-dir", type=str, help="Override the data directory")
    parser.add_argument("--verbose", action="store_true", help="Enable debug output")

    # One-off operations
    parser.add_argument("--sync-now", action="store_true", help="Sync every active node and exit")
    parser.add_argument("--sync-node", metavar="ID", help="Sync one node and exit")
    parser.add_argument("--poll-now", action="store_true", help="Poll stats, save a fine snapshot and exit")
    parser.add_argument("--port-hopping", metavar="ID", help="Install port hopping rules on a node and exit")
    parser.add_argument("--summary", action="store_true", help="Print the stats summary and exit")
    parser.add_argument(
        "--series",
        choices=[s.value for s in SnapshotSeries],
        help="Print a snapshot series and exit",
    )
    parser.add_argument("--hours", type=int, default=24, help="Lookback for --series")

    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Seed the store and exit without starting workers",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    """Entry point for the nodefleet command."""
    args = parse_args(argv)

    config = Config.load(args.config)
    if args.data_dir:
        config.data_dir = args.data_dir
    set_verbose(args.verbose or config.verbose)
    log(f"[config] Loaded: deployment={config.deployment_name!r}, nodes={len(config.nodes)}")

    fleet = Fleet(config)
    fleet.seed()

    code = run_once(args, fleet)
    if code is not None:
        fleet.close()
        sys.exit(code)

    if args.no_scheduler:
        fleet.close()
        return

    run_scheduler(fleet)


if __name__ == "__main__":
    main()
