"""Polling of node stats endpoints.

Failures here are soft: a node whose stats endpoint is down gets a
``Stats: ...`` note in ``last_error`` and keeps its status.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Sequence

from ..batching import run_in_batches
from ..data.models import Node, PollResult
from ..data.persistence import DataStore
from ..errors import TelemetryError
from ..log import debug, log
from .client import StatsClient

STATS_ERROR_PREFIX = "Stats: "


class TelemetryCollector:
    """Collects traffic and online sessions from every node.

    Args:
        client: Stats endpoint client
        store: Store receiving counters and sessions
        batch_size: Nodes polled concurrently
    """

    def __init__(
        self,
        client: StatsClient,
        store: DataStore,
        batch_size: int = 5,
        stop_event: Optional[threading.Event] = None,
    ):
        self.client = client
        self.store = store
        self.batch_size = batch_size
        self.stop_event = stop_event

    def _targets(self, nodes: Optional[Sequence[Node]]) -> List[Node]:
        if nodes is None:
            return self.store.list_nodes(active_only=True)
        return [n for n in nodes if n.active]

    def _collect_traffic(self, node: Node, result: PollResult) -> None:
        traffic = self.client.fetch_traffic(node, clear=True)
        result.users_reported = len(traffic)
        result.tx = sum(t["tx"] for t in traffic.values())
        result.rx = sum(t["rx"] for t in traffic.values())
        if traffic:
            self.store.add_user_traffic(traffic)
            self.store.add_node_traffic(node.id, result.tx, result.rx)
        debug(f"[stats] {node.name}: {len(traffic)} users, tx={result.tx} rx={result.rx}")

    def _collect_online(self, node: Node, result: PollResult) -> None:
        sessions = self.client.fetch_online(node)
        self.store.replace_sessions(node.id, sessions)
        self.store.set_online(node.id, len(sessions))
        result.online = len(sessions)
        if sessions:
            debug(f"[stats] {node.name}: {len(sessions)} online")

    def _finish(self, node: Node, result: PollResult) -> PollResult:
        if result.errors:
            message = STATS_ERROR_PREFIX + "; ".join(result.errors)
            self.store.set_last_error(node.id, message)
            log(f"[stats] {node.name}: stats unavailable - {'; '.join(result.errors)}")
        elif node.last_error.startswith(STATS_ERROR_PREFIX):
            self.store.set_last_error(node.id, "")
        return result

    def poll_node(self, node: Node, traffic: bool = True) -> PollResult:
        """Poll one node's traffic (optional) and online sessions.

        Nodes without a stats port and secret are skipped untouched.
        """
        result = PollResult(node_id=node.id)
        if not node.has_stats_endpoint:
            debug(f"[stats] {node.name}: stats API not configured, skipping")
            result.skipped = True
            return result

        steps = [self._collect_online]
        if traffic:
            steps.insert(0, self._collect_traffic)
        for step in steps:
            try:
                step(node, result)
            except TelemetryError as exc:
                result.errors.append(exc.detail)
        return self._finish(node, result)

    def _poll_all(self, nodes: Optional[Sequence[Node]], traffic: bool, name: str) -> List[PollResult]:
        targets = self._targets(nodes)
        results = run_in_batches(
            targets,
            lambda node: self.poll_node(node, traffic=traffic),
            batch_size=self.batch_size,
            stop_event=self.stop_event,
            name=name,
        )
        polls = []
        for r in results:
            if r.ok:
                polls.append(r.value)
            else:
                log(f"[stats] {r.item.name}: poll crashed - {r.error}")
                polls.append(PollResult(node_id=r.item.id, errors=[str(r.error)]))
        return polls

    def poll_all_stats(self, nodes: Optional[Sequence[Node]] = None) -> List[PollResult]:
        """Traffic and online poll of every active node, in batches."""
        polls = self._poll_all(nodes, traffic=True, name="stats")
        failed = sum(1 for p in polls if not p.ok)
        log(f"[stats] Polled {len(polls)} nodes ({failed} with errors)")
        return polls

    def health_check(self, nodes: Optional[Sequence[Node]] = None) -> List[PollResult]:
        """Online-only poll of every active node; traffic counters are left alone."""
        return self._poll_all(nodes, traffic=False, name="health")

    def kick_user(self, user_id: str, nodes: Optional[Sequence[Node]] = None) -> Dict[str, bool]:
        """Disconnect a user from the nodes they are connected to.

        Returns:
            ``{node_id: kicked}`` for every node attempted.
        """
        if nodes is None:
            nodes = [n for n in (self.store.get_node(i) for i in self.store.nodes_for_user(user_id)) if n]

        kicked: Dict[str, bool] = {}
        for node in nodes:
            if not node.has_stats_endpoint:
                continue
            try:
                self.client.kick(node, [user_id])
                kicked[node.id] = True
                log(f"[stats] Kicked {user_id} from {node.name}")
            except TelemetryError as exc:
                kicked[node.id] = False
                log(f"[stats] Kick of {user_id} on {node.name} failed: {exc.detail}")
        return kicked
